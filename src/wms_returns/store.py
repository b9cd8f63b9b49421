"""Record store adapter backed by the master workbook.

Every collection lives on its own worksheet (see
:data:`data_manager.COLLECTION_COLUMNS`). Mutations go through
:meth:`WorkbookStore.run_atomic`, which hands the caller a
:class:`Transaction` whose writes are buffered and only applied when the
whole body has finished without raising.

Conflict detection is optimistic. The workbook carries a ``revision``
counter on its ``Meta`` sheet; a transaction remembers the revision it
started from and its commit is refused when another writer (in this process
or, for file-backed stores, another process) has committed in between. A
refused commit re-runs the body from scratch after an exponential backoff,
so transaction bodies must not have side effects outside the transaction.
"""

from __future__ import annotations

import copy
import threading
import time
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Protocol, Tuple, TypeVar

from openpyxl.workbook import Workbook

from . import data_manager, log
from .errors import MissingReferenceError, TransactionConflict


T = TypeVar("T")
Document = data_manager.Document
Predicate = Callable[[Document], bool]


class RecordStore(Protocol):
    """Capability consumed by the engine; any transactional document store fits."""

    def get(self, collection: str, record_id: str) -> Optional[Document]:
        ...

    def query(self, collection: str, predicate: Optional[Predicate] = None) -> List[Document]:
        ...

    def set(self, collection: str, document: Mapping[str, Any]) -> None:
        ...

    def update(self, collection: str, record_id: str, field_values: Mapping[str, Any]) -> None:
        ...

    def delete(self, collection: str, record_id: str) -> None:
        ...

    def run_atomic(self, fn: Callable[["Transaction"], T]) -> T:
        ...


class _CommitConflict(Exception):
    """Internal signal that the revision moved while a transaction was open."""


class Transaction:
    """Handle passed to a :meth:`WorkbookStore.run_atomic` body.

    Reads see committed state overlaid with this transaction's own pending
    writes. Writes are buffered per document; the last write to a document
    wins and ``None`` marks a pending delete.
    """

    def __init__(self, store: "WorkbookStore", base_revision: int) -> None:
        self._store = store
        self.base_revision = base_revision
        self._writes: Dict[Tuple[str, str], Optional[Document]] = {}

    @property
    def pending_writes(self) -> Mapping[Tuple[str, str], Optional[Document]]:
        return dict(self._writes)

    def read(self, collection: str, record_id: str) -> Optional[Document]:
        key = (collection, str(record_id))
        if key in self._writes:
            pending = self._writes[key]
            return copy.deepcopy(pending) if pending is not None else None
        return self._store.get(collection, str(record_id))

    def query(self, collection: str, predicate: Optional[Predicate] = None) -> List[Document]:
        results: List[Document] = []
        for document in self._store.query(collection):
            if (collection, document[data_manager.ID_COLUMN]) in self._writes:
                continue
            if predicate is None or predicate(document):
                results.append(document)
        for (pending_collection, _), pending in self._writes.items():
            if pending_collection != collection or pending is None:
                continue
            if predicate is None or predicate(pending):
                results.append(copy.deepcopy(pending))
        return results

    def set(self, collection: str, document: Mapping[str, Any]) -> None:
        record_id = document.get(data_manager.ID_COLUMN)
        if record_id is None or str(record_id) == "":
            raise ValueError(f"Document for '{collection}' has no id")
        staged = copy.deepcopy(dict(document))
        staged[data_manager.ID_COLUMN] = str(record_id)
        self._store.validate_fields(collection, staged)
        self._writes[(collection, str(record_id))] = staged

    def update(self, collection: str, record_id: str, field_values: Mapping[str, Any]) -> None:
        current = self.read(collection, record_id)
        if current is None:
            raise MissingReferenceError(f"{collection} not found: {record_id}")
        current.update(copy.deepcopy(dict(field_values)))
        self.set(collection, current)

    def delete(self, collection: str, record_id: str) -> None:
        self._writes[(collection, str(record_id))] = None


class WorkbookStore:
    """:class:`RecordStore` implementation persisting to an openpyxl workbook.

    When ``data_file`` is ``None`` the store works purely in memory, which is
    what unit tests use. Otherwise each commit is saved to disk before the
    in-memory revision advances.
    """

    def __init__(
        self,
        workbook: Workbook,
        *,
        data_file: Optional[Path] = None,
        max_attempts: int = data_manager.DEFAULT_MAX_ATTEMPTS,
        backoff_seconds: float = data_manager.DEFAULT_BACKOFF_SECONDS,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._workbook = workbook
        self.data_file = Path(data_file) if data_file is not None else None
        self.max_attempts = max_attempts
        self.backoff_seconds = backoff_seconds
        self._sleep = sleep
        self._lock = threading.RLock()
        self._revision = data_manager.read_revision(workbook)

    @classmethod
    def from_settings(cls, settings: data_manager.ConfigSettings) -> "WorkbookStore":
        workbook = data_manager.open_workbook(settings.data_file)
        return cls(
            workbook,
            data_file=settings.data_file,
            max_attempts=settings.max_attempts,
            backoff_seconds=settings.backoff_seconds,
        )

    @property
    def workbook(self) -> Workbook:
        return self._workbook

    @property
    def revision(self) -> int:
        return self._revision

    def get(self, collection: str, record_id: str) -> Optional[Document]:
        for document in self._scan(collection):
            if document[data_manager.ID_COLUMN] == str(record_id):
                return document
        return None

    def query(self, collection: str, predicate: Optional[Predicate] = None) -> List[Document]:
        return [
            document
            for document in self._scan(collection)
            if predicate is None or predicate(document)
        ]

    def set(self, collection: str, document: Mapping[str, Any]) -> None:
        self.run_atomic(lambda txn: txn.set(collection, document))

    def update(self, collection: str, record_id: str, field_values: Mapping[str, Any]) -> None:
        self.run_atomic(lambda txn: txn.update(collection, record_id, field_values))

    def delete(self, collection: str, record_id: str) -> None:
        self.run_atomic(lambda txn: txn.delete(collection, record_id))

    def validate_fields(self, collection: str, document: Mapping[str, Any]) -> None:
        """Reject documents the sheet cannot hold before anything is written."""

        with self._lock:
            headers = data_manager.header_map(self._workbook, collection)
        unknown = set(document) - set(headers)
        if unknown:
            raise KeyError(f"Unknown {collection} field(s): {', '.join(sorted(unknown))}")

    def run_atomic(
        self,
        fn: Callable[[Transaction], T],
        *,
        attempts: Optional[int] = None,
        backoff_base: Optional[float] = None,
    ) -> T:
        """Execute ``fn`` as one all-or-nothing unit, retrying on conflicts.

        Any exception raised by ``fn`` aborts the attempt with nothing
        written and propagates unchanged.

        Raises:
            TransactionConflict: If every attempt lost its commit to a
                concurrent writer.
        """

        attempts = attempts if attempts is not None else self.max_attempts
        backoff_base = backoff_base if backoff_base is not None else self.backoff_seconds
        for attempt in range(attempts):
            transaction = self._begin()
            result = fn(transaction)
            try:
                self._commit(transaction)
            except _CommitConflict:
                log.debug(
                    "Commit conflict on attempt %d/%d (base revision %d)",
                    attempt + 1,
                    attempts,
                    transaction.base_revision,
                )
                if attempt < attempts - 1:
                    self._sleep(backoff_base * (2 ** attempt))
                continue
            return result

        log.error("Transaction abandoned after %d conflicting attempts", attempts)
        raise TransactionConflict(f"Transaction abandoned after {attempts} conflicting attempts")

    def _scan(self, collection: str) -> Iterable[Document]:
        with self._lock:
            documents = list(data_manager.iter_documents(self._workbook, collection))
        for document in documents:
            document[data_manager.ID_COLUMN] = str(document.get(data_manager.ID_COLUMN))
        return documents

    def _begin(self) -> Transaction:
        with self._lock:
            self._sync_from_disk()
            return Transaction(self, self._revision)

    def _sync_from_disk(self) -> None:
        if self.data_file is None:
            return
        if data_manager.read_revision_from_file(self.data_file) != self._revision:
            self._workbook = data_manager.refresh_workbook(self.data_file)
            self._revision = data_manager.read_revision(self._workbook)
            log.debug("Reloaded workbook '%s' at revision %d", self.data_file, self._revision)

    def _commit(self, transaction: Transaction) -> None:
        writes = transaction.pending_writes
        with self._lock:
            if transaction.base_revision != self._revision:
                raise _CommitConflict()
            if not writes:
                return
            if self.data_file is not None and (
                data_manager.read_revision_from_file(self.data_file) != self._revision
            ):
                raise _CommitConflict()

            next_revision = self._revision + 1
            try:
                for (collection, record_id), document in writes.items():
                    if document is None:
                        data_manager.delete_document(self._workbook, collection, record_id)
                    else:
                        data_manager.write_document(self._workbook, collection, document)
                data_manager.write_revision(self._workbook, next_revision)
                if self.data_file is not None:
                    data_manager.save_workbook(self._workbook, self.data_file)
            except Exception:
                if self.data_file is not None:
                    self._workbook = data_manager.refresh_workbook(self.data_file)
                    self._revision = data_manager.read_revision(self._workbook)
                raise
            self._revision = next_revision
        log.debug("Committed %d write(s) at revision %d", len(writes), next_revision)
