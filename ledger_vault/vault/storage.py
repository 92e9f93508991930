"""
Document store abstractions.

This module provides:
- DocumentStore: Abstract async interface to the record store
- InMemoryDocumentStore: In-memory implementation for tests and tooling
- JsonDocumentStore: File-backed store used by the command line
- Supporting data structures: StoredDocument, DocumentUpdate

Paths alternate collection and record ids, e.g.
``users/{userId}/expenses/{expenseId}``. Collection paths have an odd number
of segments.
"""

from __future__ import annotations

import asyncio
import copy
import json
import os
import tempfile
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable, Optional

from .exceptions import StorageError
from .field_maps import collection_of


@dataclass
class StoredDocument:
    """A record read from the store."""

    id: str
    path: str
    data: dict[str, Any] = field(default_factory=dict)


@dataclass
class DocumentUpdate:
    """One write inside a batch. Fields are merged into the existing record."""

    path: str
    fields: dict[str, Any]
    merge: bool = True


def _segments(path: str) -> list[str]:
    return [s for s in path.strip().strip("/").split("/") if s]


def _is_record_path(path: str) -> bool:
    segments = _segments(path)
    return bool(segments) and len(segments) % 2 == 0


class DocumentStore(ABC):
    """
    Abstract storage interface for finance records.

    All methods are async to support both in-memory and remote backends.
    """

    @abstractmethod
    async def get(self, path: str) -> Optional[dict[str, Any]]:
        """Get a record by path, or None if it does not exist."""
        ...

    @abstractmethod
    async def list(
        self,
        collection_path: str,
        cursor: Optional[str] = None,
        limit: int = 50,
    ) -> list[StoredDocument]:
        """List up to ``limit`` records ordered by id, starting after ``cursor``."""
        ...

    @abstractmethod
    async def query(
        self,
        collection_path: str,
        field_name: str,
        op: str,
        value: Any,
    ) -> list[StoredDocument]:
        """Find records where ``field_name`` matches (ops: ``==``, ``array-contains``)."""
        ...

    @abstractmethod
    async def batch_write(self, updates: list[DocumentUpdate]) -> None:
        """
        Apply all updates atomically.

        Raises:
            StorageError: If the batch could not be committed (nothing is applied)
        """
        ...


class InMemoryDocumentStore(DocumentStore):
    """
    In-memory document store.

    Uses asyncio.Lock for safe concurrent access. Reads and writes copy
    record data so callers never share mutable state with the store.
    """

    def __init__(self, documents: Optional[dict[str, dict[str, Any]]] = None) -> None:
        self._documents: dict[str, dict[str, Any]] = {}
        self._lock = asyncio.Lock()
        self.batch_count = 0
        # Test hook: batches touching any of these paths fail without applying
        self.fail_writes_to: set[str] = set()
        for path, data in (documents or {}).items():
            self.put(path, data)

    def put(self, path: str, data: dict[str, Any]) -> None:
        """Seed a record directly, bypassing batches."""
        if not _is_record_path(path):
            raise StorageError(f"Not a record path: {path}")
        self._documents["/".join(_segments(path))] = copy.deepcopy(data)

    def peek(self, path: str) -> Optional[dict[str, Any]]:
        """Synchronous read, for inspection."""
        data = self._documents.get("/".join(_segments(path)))
        return copy.deepcopy(data) if data is not None else None

    @property
    def documents(self) -> dict[str, dict[str, Any]]:
        """Snapshot of all records keyed by path."""
        return copy.deepcopy(self._documents)

    async def get(self, path: str) -> Optional[dict[str, Any]]:
        async with self._lock:
            return self.peek(path)

    def _children(self, collection_path: str) -> list[StoredDocument]:
        collection = "/".join(_segments(collection_path))
        children = []
        for path, data in self._documents.items():
            if collection_of(path) == collection and len(_segments(path)) == len(_segments(collection)) + 1:
                children.append(StoredDocument(id=path.rsplit("/", 1)[-1], path=path, data=copy.deepcopy(data)))
        children.sort(key=lambda d: d.id)
        return children

    async def list(
        self,
        collection_path: str,
        cursor: Optional[str] = None,
        limit: int = 50,
    ) -> list[StoredDocument]:
        async with self._lock:
            children = self._children(collection_path)
            if cursor is not None:
                children = [d for d in children if d.id > cursor]
            return children[:limit]

    async def query(
        self,
        collection_path: str,
        field_name: str,
        op: str,
        value: Any,
    ) -> list[StoredDocument]:
        async with self._lock:
            children = self._children(collection_path)

        if op == "==":
            return [d for d in children if d.data.get(field_name) == value]
        if op == "array-contains":
            return [
                d for d in children
                if isinstance(d.data.get(field_name), list) and value in d.data[field_name]
            ]
        raise StorageError(f"Unsupported query operator: {op}")

    def _apply(self, documents: dict[str, dict[str, Any]], updates: Iterable[DocumentUpdate]) -> None:
        for update in updates:
            if not _is_record_path(update.path):
                raise StorageError(f"Not a record path: {update.path}")
            key = "/".join(_segments(update.path))
            fields = copy.deepcopy(update.fields)
            if update.merge and key in documents:
                documents[key] = {**documents[key], **fields}
            else:
                documents[key] = fields

    async def batch_write(self, updates: list[DocumentUpdate]) -> None:
        async with self._lock:
            for update in updates:
                if "/".join(_segments(update.path)) in self.fail_writes_to:
                    raise StorageError(f"Simulated write failure for {update.path}")
            staged = dict(self._documents)
            self._apply(staged, updates)
            self._commit(staged)
            self.batch_count += 1

    def _commit(self, staged: dict[str, dict[str, Any]]) -> None:
        self._documents = staged


class JsonDocumentStore(InMemoryDocumentStore):
    """
    Document store persisted to a single JSON file.

    Every committed batch rewrites the file through a temporary file and an
    atomic rename, so a crash leaves either the old or the new state.
    """

    def __init__(self, file_path: Path) -> None:
        super().__init__()
        self.file_path = Path(file_path)
        if self.file_path.exists():
            try:
                content = json.loads(self.file_path.read_text(encoding="utf-8"))
            except (OSError, json.JSONDecodeError) as e:
                raise StorageError(f"Failed to load store {self.file_path}: {e}")
            for path, data in content.items():
                self.put(path, data)

    def _commit(self, staged: dict[str, dict[str, Any]]) -> None:
        self.file_path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=self.file_path.parent, suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(staged, f, indent=2, ensure_ascii=False, sort_keys=True)
            os.replace(tmp_name, self.file_path)
        except OSError as e:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise StorageError(f"Failed to write store {self.file_path}: {e}")
        super()._commit(staged)
