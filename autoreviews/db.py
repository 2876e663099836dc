"""
Document store abstraction with in-memory and SQLAlchemy implementations.

The Firestore implementation lives in `autoreviews.firestore_db`. All stores
share the same contract: document paths look like `cars/<id>` and
`cars/<id>/ratings/<id>`, transactions are read-then-write and all-or-nothing,
and subscriptions deliver the full current result set on every change.
"""

from __future__ import annotations

import copy
import logging
import threading
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional, Protocol, TypeVar, Union

from sqlalchemy import JSON, Column, Float, Integer, String, create_engine, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from autoreviews.documents import (
    SERVER_TIMESTAMP,
    DocumentSnapshot,
    Subscription,
    split_path,
)
from autoreviews.errors import NotFound, TransactionFailed
from autoreviews.query import ListingQuery

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_MAX_ATTEMPTS = 5

QueryCallback = Callable[[list[DocumentSnapshot]], None]
DocumentCallback = Callable[[DocumentSnapshot], None]


class Transaction(Protocol):
    """Reads must happen before writes, as in Firestore."""

    def get(self, path: str) -> DocumentSnapshot:
        ...

    def set(self, path: str, data: dict, merge: bool = False) -> None:
        ...

    def update(self, path: str, data: dict) -> None:
        ...


class DocumentStore(Protocol):
    """Interface for document database access."""

    def new_document_id(self, collection_path: str) -> str:
        ...

    def get(self, path: str) -> DocumentSnapshot:
        ...

    def set(self, path: str, data: dict, merge: bool = False) -> None:
        ...

    def update(self, path: str, data: dict) -> None:
        ...

    def add(self, collection_path: str, data: dict) -> str:
        ...

    def query(self, query: ListingQuery) -> list[DocumentSnapshot]:
        ...

    def subscribe(self, query: ListingQuery, on_change: QueryCallback) -> Subscription:
        ...

    def subscribe_document(
        self, path: str, on_change: DocumentCallback
    ) -> Subscription:
        ...

    def run_transaction(self, fn: Callable[[Transaction], T]) -> T:
        ...


@dataclass
class _Write:
    op: str  # "set" or "update"
    path: str
    data: dict
    merge: bool = False


@dataclass
class _Change:
    path: str
    before: Optional[dict]
    after: Optional[dict]


class _Conflict(Exception):
    """A document read by the transaction changed before commit."""


def _resolve_server_timestamps(value: Any, now: datetime) -> Any:
    if value is SERVER_TIMESTAMP:
        return now
    if isinstance(value, dict):
        return {key: _resolve_server_timestamps(item, now) for key, item in value.items()}
    if isinstance(value, list):
        return [_resolve_server_timestamps(item, now) for item in value]
    return value


def _apply_write(current: Optional[dict], write: _Write, now: datetime) -> dict:
    data = copy.deepcopy(_resolve_server_timestamps(write.data, now))
    if write.op == "update":
        if current is None:
            raise NotFound(f"No document to update: {write.path}")
        return {**current, **data}
    if write.merge and current is not None:
        return {**current, **data}
    return data


class _LocalTransaction:
    """Buffers writes and remembers the version of every document read."""

    def __init__(self, store: "_LocalDocumentStore"):
        self._store = store
        self.reads: Dict[str, Optional[int]] = {}
        self.writes: list[_Write] = []

    def get(self, path: str) -> DocumentSnapshot:
        if self.writes:
            raise ValueError("Transactions require all reads to happen before writes.")
        snapshot, version = self._store._read(path)
        self.reads.setdefault(path, version)
        return snapshot

    def set(self, path: str, data: dict, merge: bool = False) -> None:
        split_path(path)
        self.writes.append(_Write("set", path, data, merge))

    def update(self, path: str, data: dict) -> None:
        split_path(path)
        self.writes.append(_Write("update", path, data))


class _LocalDocumentStore:
    """
    Shared transaction loop and subscription fan-out for stores that live in
    this process. Subclasses provide `_read`, `_scan` and `_commit`.
    """

    def __init__(self, max_attempts: int = DEFAULT_MAX_ATTEMPTS):
        self.max_attempts = max_attempts
        self._subscribers: Dict[int, tuple[Union[ListingQuery, str], Callable]] = {}
        self._subscribers_lock = threading.Lock()
        self._next_subscriber = 0

    # Subclass hooks.

    def _read(self, path: str) -> tuple[DocumentSnapshot, Optional[int]]:
        raise NotImplementedError

    def _scan(self, collection_path: str) -> list[DocumentSnapshot]:
        raise NotImplementedError

    def _commit(
        self, reads: Dict[str, Optional[int]], writes: list[_Write]
    ) -> list[_Change]:
        raise NotImplementedError

    # DocumentStore interface.

    def new_document_id(self, collection_path: str) -> str:
        return uuid.uuid4().hex[:20]

    def get(self, path: str) -> DocumentSnapshot:
        snapshot, _ = self._read(path)
        return snapshot

    def set(self, path: str, data: dict, merge: bool = False) -> None:
        self.run_transaction(lambda transaction: transaction.set(path, data, merge))

    def update(self, path: str, data: dict) -> None:
        self.run_transaction(lambda transaction: transaction.update(path, data))

    def add(self, collection_path: str, data: dict) -> str:
        doc_id = self.new_document_id(collection_path)
        self.set(f"{collection_path}/{doc_id}", data)
        return doc_id

    def query(self, query: ListingQuery) -> list[DocumentSnapshot]:
        return query.apply(self._scan(query.collection))

    def run_transaction(self, fn: Callable[[Transaction], T]) -> T:
        """
        Runs `fn` against a fresh transaction and commits its writes atomically.

        If a document read by `fn` changed before commit, the whole function is
        re-run, up to `max_attempts` times. Exceptions raised by `fn` abort the
        transaction without writing anything.
        """
        for attempt in range(1, self.max_attempts + 1):
            transaction = _LocalTransaction(self)
            result = fn(transaction)
            try:
                changes = self._commit(transaction.reads, transaction.writes)
            except _Conflict:
                logger.info(
                    "Transaction conflict on attempt %d/%d; retrying",
                    attempt,
                    self.max_attempts,
                )
                continue
            self._notify(changes)
            return result
        raise TransactionFailed(
            f"Failed to commit transaction in {self.max_attempts} attempts."
        )

    def subscribe(self, query: ListingQuery, on_change: QueryCallback) -> Subscription:
        key = self._add_subscriber(query, on_change)
        on_change(self.query(query))
        return Subscription(lambda: self._remove_subscriber(key))

    def subscribe_document(
        self, path: str, on_change: DocumentCallback
    ) -> Subscription:
        key = self._add_subscriber(path, on_change)
        on_change(self.get(path))
        return Subscription(lambda: self._remove_subscriber(key))

    def _add_subscriber(self, target: Union[ListingQuery, str], callback: Callable) -> int:
        with self._subscribers_lock:
            key = self._next_subscriber
            self._next_subscriber += 1
            self._subscribers[key] = (target, callback)
            return key

    def _remove_subscriber(self, key: int) -> None:
        with self._subscribers_lock:
            self._subscribers.pop(key, None)

    def _notify(self, changes: list[_Change]) -> None:
        if not changes:
            return
        with self._subscribers_lock:
            subscribers = list(self._subscribers.items())
        for key, (target, callback) in subscribers:
            if isinstance(target, str):
                if not any(change.path == target for change in changes):
                    continue
                payload = self.get(target)
            else:
                if not any(_query_affected(target, change) for change in changes):
                    continue
                payload = self.query(target)
            with self._subscribers_lock:
                if key not in self._subscribers:
                    continue
            try:
                callback(payload)
            except Exception:
                logger.exception("Snapshot listener failed for %s", target)


def _query_affected(query: ListingQuery, change: _Change) -> bool:
    before = DocumentSnapshot(change.path, change.before)
    after = DocumentSnapshot(change.path, change.after)
    return query.matches(before) or query.matches(after)


class InMemoryDocumentStore(_LocalDocumentStore):
    """Simple in-memory document store for development and tests."""

    def __init__(self, max_attempts: int = DEFAULT_MAX_ATTEMPTS):
        super().__init__(max_attempts=max_attempts)
        # path -> (data, version)
        self.documents: Dict[str, tuple[dict, int]] = {}
        self._lock = threading.RLock()
        self._version = 0

    def reset(self) -> None:
        """Clear all stored data (useful in tests)."""
        with self._lock:
            self.documents.clear()

    def _read(self, path: str) -> tuple[DocumentSnapshot, Optional[int]]:
        with self._lock:
            stored = self.documents.get(path)
            if stored is None:
                return DocumentSnapshot(path), None
            data, version = stored
            return DocumentSnapshot(path, copy.deepcopy(data)), version

    def _scan(self, collection_path: str) -> list[DocumentSnapshot]:
        with self._lock:
            return [
                DocumentSnapshot(path, copy.deepcopy(data))
                for path, (data, _) in self.documents.items()
                if path.rpartition("/")[0] == collection_path
            ]

    def _commit(
        self, reads: Dict[str, Optional[int]], writes: list[_Write]
    ) -> list[_Change]:
        now = datetime.now(timezone.utc)
        with self._lock:
            for path, version in reads.items():
                stored = self.documents.get(path)
                if (stored[1] if stored else None) != version:
                    raise _Conflict(path)

            # Stage everything first so a failing write leaves no partial state.
            staged: Dict[str, dict] = {}
            befores: Dict[str, Optional[dict]] = {}
            for write in writes:
                if write.path not in befores:
                    stored = self.documents.get(write.path)
                    befores[write.path] = stored[0] if stored else None
                current = staged.get(write.path, befores[write.path])
                staged[write.path] = _apply_write(current, write, now)

            changes = []
            for path, data in staged.items():
                self._version += 1
                self.documents[path] = (data, self._version)
                changes.append(
                    _Change(path, copy.deepcopy(befores[path]), copy.deepcopy(data))
                )
            return changes


Base = declarative_base()


class DocumentRow(Base):
    __tablename__ = "documents"

    path = Column(String, primary_key=True)
    parent = Column(String, nullable=False, index=True)
    data = Column(JSON, nullable=False)
    version = Column(Integer, nullable=False, default=1)
    updated_at = Column(Float, nullable=False)


_TIMESTAMP_TAG = "$timestamp"


def _encode_json(value: Any) -> Any:
    if isinstance(value, datetime):
        return {_TIMESTAMP_TAG: value.isoformat()}
    if isinstance(value, dict):
        return {key: _encode_json(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_encode_json(item) for item in value]
    return value


def _decode_json(value: Any) -> Any:
    if isinstance(value, dict):
        if set(value) == {_TIMESTAMP_TAG}:
            return datetime.fromisoformat(value[_TIMESTAMP_TAG])
        return {key: _decode_json(item) for key, item in value.items()}
    if isinstance(value, list):
        return [_decode_json(item) for item in value]
    return value


class SqlDocumentStore(_LocalDocumentStore):
    """
    SQLAlchemy-backed implementation storing each document as a JSON row.
    Accepts any SQLAlchemy URL (e.g., Postgres or SQLite for tests).

    Commits are optimistic: every row read by the transaction is rewritten
    with `UPDATE ... WHERE version = <version read>`, so a concurrent writer
    turns into a retry instead of a lost update. Change notifications only
    reach subscribers registered on this store instance.
    """

    def __init__(self, database_url: str, max_attempts: int = DEFAULT_MAX_ATTEMPTS):
        if not database_url:
            raise ValueError("DATABASE_URL is required for SqlDocumentStore")
        super().__init__(max_attempts=max_attempts)
        self.engine = create_engine(
            database_url,
            future=True,
            pool_pre_ping=True,
            pool_recycle=1800,
        )
        self.Session = sessionmaker(
            bind=self.engine, class_=Session, expire_on_commit=False, future=True
        )
        Base.metadata.create_all(self.engine)

    def _read(self, path: str) -> tuple[DocumentSnapshot, Optional[int]]:
        try:
            with self.Session() as session:
                row = session.get(DocumentRow, path)
                if not row:
                    return DocumentSnapshot(path), None
                return DocumentSnapshot(path, _decode_json(row.data)), row.version
        except SQLAlchemyError as exc:
            logger.error("SQL read of %s failed: %s", path, exc)
            raise TransactionFailed(f"Read rejected by the database: {exc}") from exc

    def _scan(self, collection_path: str) -> list[DocumentSnapshot]:
        try:
            with self.Session() as session:
                rows = session.execute(
                    select(DocumentRow).where(DocumentRow.parent == collection_path)
                ).scalars()
                return [
                    DocumentSnapshot(row.path, _decode_json(row.data)) for row in rows
                ]
        except SQLAlchemyError as exc:
            logger.error("SQL scan of %s failed: %s", collection_path, exc)
            raise TransactionFailed(f"Query rejected by the database: {exc}") from exc

    def _commit(
        self, reads: Dict[str, Optional[int]], writes: list[_Write]
    ) -> list[_Change]:
        now = datetime.now(timezone.utc)
        try:
            with self.Session() as session:
                changes = self._stage_and_write(session, reads, writes, now)
                session.commit()
                return changes
        except IntegrityError as exc:
            # A document we expected to be missing was created concurrently.
            raise _Conflict(str(exc)) from exc
        except SQLAlchemyError as exc:
            logger.error("SQL transaction commit failed: %s", exc)
            raise TransactionFailed(f"Commit rejected by the database: {exc}") from exc

    def _stage_and_write(
        self,
        session: Session,
        reads: Dict[str, Optional[int]],
        writes: list[_Write],
        now: datetime,
    ) -> list[_Change]:
        rows: Dict[str, Optional[DocumentRow]] = {}
        for path in list(reads) + [write.path for write in writes]:
            if path not in rows:
                rows[path] = session.get(DocumentRow, path, with_for_update=True)

        for path, version in reads.items():
            row = rows[path]
            if (row.version if row else None) != version:
                raise _Conflict(path)

        staged: Dict[str, dict] = {}
        for write in writes:
            row = rows[write.path]
            current = staged.get(
                write.path, _decode_json(row.data) if row else None
            )
            staged[write.path] = _apply_write(current, write, now)

        changes = []
        for path, data in staged.items():
            row = rows[path]
            if row is None:
                session.add(
                    DocumentRow(
                        path=path,
                        parent=split_path(path)[0],
                        data=_encode_json(data),
                        version=1,
                        updated_at=time.time(),
                    )
                )
                session.flush()
                changes.append(_Change(path, None, data))
                continue
            before = _decode_json(row.data)
            result = session.execute(
                update(DocumentRow)
                .where(DocumentRow.path == path, DocumentRow.version == row.version)
                .values(
                    data=_encode_json(data),
                    version=row.version + 1,
                    updated_at=time.time(),
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise _Conflict(path)
            changes.append(_Change(path, before, data))
        return changes
