"""Batch engines that move a user's records between encryption states.

Provides:
- MigrationEngine: encrypt records that are still plaintext
- UnencryptionEngine: decrypt records back to plaintext
- BatchEngine: shared pagination, batching and progress accounting

Every engine walks the same set of collections a page at a time, commits
each page with one atomic batch write, and advances its cursor past every
record it has seen, processed or not. Runs are idempotent: records already
in the target state are counted as skipped.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Mapping, Optional

from .config import VaultConfig, get_vault_config
from .detection import has_any_encrypted_field, has_fully_encrypted_fields
from .exceptions import EncryptionVerificationFailed, StorageError, VaultError
from .field_maps import USER_SUBCOLLECTIONS, detect_entity_type, get_field_map
from .fields import decrypt_document, encrypt_document
from .storage import DocumentStore, DocumentUpdate, StoredDocument

logger = logging.getLogger(__name__)


class EngineStatus(str, Enum):
    """Lifecycle of an engine run."""

    PENDING = "pending"
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class EngineProgress:
    """
    Running totals for an engine run.

    ``processed`` counts every record that was evaluated; at the end of a
    run it equals ``succeeded + failed + skipped``.
    """

    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    last_processed_id: Optional[str] = None
    current_collection: Optional[str] = None
    status: EngineStatus = EngineStatus.PENDING
    errors: list[tuple[str, str]] = field(default_factory=list)

    def record_error(self, document_id: str, error: str) -> None:
        self.errors.append((document_id, error))

    @property
    def is_consistent(self) -> bool:
        return self.processed == self.succeeded + self.failed + self.skipped

    def to_dict(self) -> dict[str, Any]:
        return {
            "processed": self.processed,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "skipped": self.skipped,
            "last_processed_id": self.last_processed_id,
            "current_collection": self.current_collection,
            "status": self.status.value,
            "errors": [{"document_id": d, "error": e} for d, e in self.errors],
        }


@dataclass
class EngineResult:
    """Outcome of an engine run."""

    success: bool
    progress: EngineProgress
    message: str


@dataclass
class CollectionTarget:
    """A collection to walk, optionally limited to records owned by the user."""

    path: str
    owner_field: Optional[str] = None


@dataclass
class ResumePoint:
    """Where an interrupted run left off."""

    collection_path: str
    cursor: Optional[str] = None


ProgressCallback = Callable[[EngineProgress], None]


async def list_all(store: DocumentStore, collection_path: str, page_size: int = 50) -> list[StoredDocument]:
    """Read a whole collection page by page."""
    documents: list[StoredDocument] = []
    cursor: Optional[str] = None
    while True:
        page = await store.list(collection_path, cursor, page_size)
        documents.extend(page)
        if len(page) < page_size:
            return documents
        cursor = page[-1].id


async def user_collections(store: DocumentStore, user_id: str) -> list[CollectionTarget]:
    """
    Resolve every collection holding a user's encrypted records.

    Includes the user's own subcollections, the repayments of each of the
    user's loans, debts created by the user, and shared expenses paid by the
    user in groups the user belongs to.
    """
    base = f"users/{user_id}"
    targets = [CollectionTarget(f"{base}/{name}") for name in USER_SUBCOLLECTIONS]

    for loan in await list_all(store, f"{base}/loans"):
        targets.append(CollectionTarget(f"{base}/loans/{loan.id}/repayments"))

    targets.append(CollectionTarget("debts", owner_field="createdBy"))

    for group in await store.query("groups", "members", "array-contains", user_id):
        targets.append(CollectionTarget(f"groups/{group.id}/sharedExpenses", owner_field="paidBy"))

    return targets


class BatchEngine:
    """
    Paginated, batched walk over a user's collections.

    Subclasses implement ``transform`` (compute the fields to write for one
    record, or None to skip it) and ``verify_stored`` (check a record after
    it was written).
    """

    name = "batch"

    def __init__(
        self,
        store: DocumentStore,
        user_id: str,
        config: Optional[VaultConfig] = None,
        progress_callback: Optional[ProgressCallback] = None,
    ):
        self.store = store
        self.user_id = user_id
        self.config = config or get_vault_config()
        self.progress_callback = progress_callback
        self.progress = EngineProgress()
        self.written = 0  # Records committed, including ones that later failed verification
        self._running = False

    def transform(self, document: StoredDocument, entity_type: str) -> Optional[dict[str, Any]]:
        raise NotImplementedError

    def verify_stored(self, data: Mapping[str, Any], entity_type: str) -> bool:
        raise NotImplementedError

    def _report(self) -> None:
        if self.progress_callback:
            self.progress_callback(self.progress)

    async def run(self, resume_from: Optional[ResumePoint] = None) -> EngineResult:
        """
        Walk every collection of the user.

        Args:
            resume_from: Continue an interrupted run at this collection and cursor

        Returns:
            EngineResult; per-record failures are in ``progress.errors``
        """
        if self._running:
            raise RuntimeError(f"{self.name} engine is already running")
        self._running = True
        self.progress.status = EngineStatus.IN_PROGRESS

        try:
            targets = await user_collections(self.store, self.user_id)

            if resume_from is not None:
                paths = [t.path for t in targets]
                if resume_from.collection_path in paths:
                    targets = targets[paths.index(resume_from.collection_path):]

            for target in targets:
                cursor = None
                if resume_from is not None and target.path == resume_from.collection_path:
                    cursor = resume_from.cursor
                await self._run_collection(target, cursor)

        except StorageError as e:
            self.progress.status = EngineStatus.FAILED
            logger.error("%s run for user %s failed: %s", self.name, self.user_id, e)
            self._report()
            return EngineResult(False, self.progress, f"{self.name.capitalize()} failed: {e}")
        finally:
            self._running = False

        self.progress.status = EngineStatus.COMPLETED
        self._report()
        logger.info(
            "%s summary for user %s: processed=%d succeeded=%d skipped=%d failed=%d",
            self.name,
            self.user_id,
            self.progress.processed,
            self.progress.succeeded,
            self.progress.skipped,
            self.progress.failed,
        )
        if self.progress.errors:
            logger.warning("%s completed with %d errors", self.name, len(self.progress.errors))

        return EngineResult(True, self.progress, self.summary())

    def summary(self) -> str:
        p = self.progress
        return (
            f"{self.name.capitalize()} completed. {p.succeeded} records updated, "
            f"{p.skipped} already in target state, {p.failed} failed."
        )

    async def _run_collection(self, target: CollectionTarget, cursor: Optional[str]) -> None:
        batch_size = self.config.batch_size
        self.progress.current_collection = target.path

        while True:
            page = await self.store.list(target.path, cursor, batch_size)
            if not page:
                break

            await self._process_page(target, page)
            # Always move past the whole page, processed or skipped
            cursor = page[-1].id
            self.progress.last_processed_id = cursor
            self._report()

            if len(page) < batch_size:
                break

            # Let other tasks (progress UIs) run between batches
            await asyncio.sleep(0)

    async def _process_page(self, target: CollectionTarget, page: list[StoredDocument]) -> None:
        progress = self.progress
        updates: list[DocumentUpdate] = []
        written: list[tuple[StoredDocument, str]] = []

        for document in page:
            if target.owner_field and document.data.get(target.owner_field) != self.user_id:
                continue

            entity_type = detect_entity_type(document.data, document.path)
            if not get_field_map(entity_type):
                continue

            progress.processed += 1
            try:
                fields = self.transform(document, entity_type)
            except VaultError as e:
                progress.failed += 1
                progress.record_error(document.id, str(e))
                logger.error("%s failed for %s: %s", self.name, document.path, e)
                continue

            if fields is None:
                progress.skipped += 1
                continue

            updates.append(DocumentUpdate(path=document.path, fields=fields))
            written.append((document, entity_type))

        if not updates:
            return

        try:
            await self.store.batch_write(updates)
        except StorageError as e:
            progress.failed += len(updates)
            progress.record_error(f"batch_commit:{target.path}", str(e))
            logger.error("Batch commit failed for %s: %s", target.path, e)
            return

        self.written += len(updates)
        progress.succeeded += len(updates)
        await self._verify_written(written[: self.config.verify_sample_size])

    async def _verify_written(self, sample: list[tuple[StoredDocument, str]]) -> None:
        """Re-read a sample of written records and re-check them."""
        for document, entity_type in sample:
            data = await self.store.get(document.path)
            if data is not None and self.verify_stored(data, entity_type):
                continue
            self.progress.succeeded -= 1
            self.progress.failed += 1
            self.progress.record_error(
                document.id,
                f"{self.name} verification failed - record not in target state after batch commit",
            )
            logger.error("Post-write verification failed for %s", document.path)


def mapped_fields(record: Mapping[str, Any], entity_type: str) -> dict[str, Any]:
    return {name: record[name] for name in get_field_map(entity_type) if name in record}


class MigrationEngine(BatchEngine):
    """
    Encrypts a user's plaintext records.

    Usage:
        engine = MigrationEngine(store, user_id, session.require_key())
        result = await engine.run()
    """

    name = "migration"

    def __init__(self, store: DocumentStore, user_id: str, key: bytes, **kwargs):
        super().__init__(store, user_id, **kwargs)
        self.key = key

    def transform(self, document: StoredDocument, entity_type: str) -> Optional[dict[str, Any]]:
        if has_fully_encrypted_fields(document.data, entity_type):
            return None

        encrypted = encrypt_document(document.data, entity_type, self.key)
        if encrypted == document.data:
            # Only missing fields are unencrypted; nothing to write
            return None

        if not has_fully_encrypted_fields(encrypted, entity_type, present_only=True):
            raise EncryptionVerificationFailed(
                "Encryption verification failed - record was not fully encrypted"
            )
        return mapped_fields(encrypted, entity_type)

    def verify_stored(self, data: Mapping[str, Any], entity_type: str) -> bool:
        return has_fully_encrypted_fields(data, entity_type, present_only=True)


class UnencryptionEngine(BatchEngine):
    """
    Decrypts a user's records and writes plaintext back.

    Leaves encryption metadata and the enabled flag alone.
    """

    name = "unencryption"

    def __init__(self, store: DocumentStore, user_id: str, key: bytes, **kwargs):
        super().__init__(store, user_id, **kwargs)
        self.key = key

    def transform(self, document: StoredDocument, entity_type: str) -> Optional[dict[str, Any]]:
        if not has_any_encrypted_field(document.data, entity_type):
            return None

        decrypted = decrypt_document(document.data, entity_type, self.key, strict=True)
        return mapped_fields(decrypted, entity_type)

    def verify_stored(self, data: Mapping[str, Any], entity_type: str) -> bool:
        return not has_any_encrypted_field(data, entity_type)


async def migrate_user_data(
    store: DocumentStore,
    user_id: str,
    key: bytes,
    progress_callback: Optional[ProgressCallback] = None,
) -> EngineResult:
    """Encrypt all of a user's plaintext records."""
    engine = MigrationEngine(store, user_id, key, progress_callback=progress_callback)
    return await engine.run()


async def unencrypt_user_data(
    store: DocumentStore,
    user_id: str,
    key: bytes,
    progress_callback: Optional[ProgressCallback] = None,
) -> EngineResult:
    """Decrypt all of a user's records back to plaintext."""
    engine = UnencryptionEngine(store, user_id, key, progress_callback=progress_callback)
    return await engine.run()
