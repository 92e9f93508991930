"""Which fields of each finance entity are encrypted.

Entity types are resolved from the storage path of a record. Record layout:

    users/{userId}                               User (opaque)
    users/{userId}/incomes/{id}                  Income
    users/{userId}/expenses/{id}                 Expense
    users/{userId}/budgets/{id}                  Budget
    users/{userId}/loans/{id}                    Loan
    users/{userId}/loans/{loanId}/repayments/{id} Repayment
    users/{userId}/recurringTransactions/{id}    RecurringTransaction
    debts/{id}                                   Debt
    groups/{groupId}/sharedExpenses/{id}         SharedExpense
"""

from typing import Any, Mapping

UNKNOWN_ENTITY = "Unknown"
SPLITS_FIELD = "splits"

FIELD_MAPS: dict[str, tuple[str, ...]] = {
    "Income": ("amount", "description"),
    "Expense": ("amount", "description"),
    "Budget": ("amount",),
    "Loan": ("initialAmount", "amountRemaining", "interestRate", "lender"),
    "Repayment": ("amount", "notes"),
    "Debt": ("amount", "description", "fromUserName", "toUserName"),
    "RecurringTransaction": ("amount", "description"),
    "SharedExpense": ("amount", "description", SPLITS_FIELD),
    "User": (),
}

# Parsed back to numbers after decryption
NUMERIC_FIELDS = frozenset({"amount", "initialAmount", "amountRemaining", "interestRate"})

# Collection segment -> entity type. Order matters: more specific first.
COLLECTION_TYPES: tuple[tuple[str, str], ...] = (
    ("incomes", "Income"),
    ("expenses", "Expense"),
    ("repayments", "Repayment"),
    ("loans", "Loan"),
    ("budgets", "Budget"),
    ("recurringTransactions", "RecurringTransaction"),
    ("sharedExpenses", "SharedExpense"),
    ("debts", "Debt"),
)

USER_SUBCOLLECTIONS = ("incomes", "expenses", "budgets", "loans", "recurringTransactions")


def get_field_map(entity_type: str) -> tuple[str, ...]:
    """Get the encrypted fields for an entity type (empty if unknown)."""
    return FIELD_MAPS.get(entity_type, ())


def collection_of(path: str) -> str:
    """
    Get the collection path that holds a record or is itself a collection.

    Collection paths have an odd number of segments, record paths an even
    number.
    """
    segments = [s for s in path.strip().strip("/").split("/") if s]
    if len(segments) % 2 == 0:
        segments = segments[:-1]
    return "/".join(segments)


def detect_entity_type(record: Mapping[str, Any], path: str) -> str:
    """
    Detect the entity type of a record.

    The storage path is authoritative; structural hints are only used for
    records stored outside the known collections.

    Args:
        record: Record data
        path: Record path or collection path

    Returns:
        Entity type name, or "Unknown"
    """
    segments = [s for s in path.strip().strip("/").split("/") if s]

    if len(segments) == 2 and segments[0] == "users":
        return "User"

    collection = collection_of(path)
    collection_segments = collection.split("/") if collection else []
    if collection_segments:
        last = collection_segments[-1]
        for name, entity_type in COLLECTION_TYPES:
            if last == name:
                return entity_type

    # Structural fallback for legacy records
    if "type" in record and ("amount" in record or "description" in record):
        if record["type"] == "income":
            return "Income"
        if record["type"] == "expense":
            return "Expense"
    if "month" in record and "amount" in record:
        return "Budget"
    if "lender" in record and "initialAmount" in record:
        return "Loan"
    if "loanId" in record and "amount" in record:
        return "Repayment"
    if "fromUserId" in record and "toUserId" in record:
        return "Debt"
    if "frequency" in record and "nextDueDate" in record:
        return "RecurringTransaction"
    if "groupId" in record and SPLITS_FIELD in record:
        return "SharedExpense"
    if "email" in record and "isEncrypted" in record:
        return "User"

    return UNKNOWN_ENTITY
