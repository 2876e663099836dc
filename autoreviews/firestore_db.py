"""
Firestore implementation of the DocumentStore interface.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Optional, TypeVar

import firebase_admin
from firebase_admin import credentials
from firebase_admin import firestore as admin_firestore
from google.api_core import exceptions as google_exceptions
from google.cloud import firestore
from google.cloud.firestore_v1 import SERVER_TIMESTAMP as FIRESTORE_SERVER_TIMESTAMP
from google.cloud.firestore_v1.base_query import FieldFilter as FirestoreFieldFilter

from autoreviews.db import DEFAULT_MAX_ATTEMPTS, DocumentCallback, QueryCallback
from autoreviews.documents import SERVER_TIMESTAMP, DocumentSnapshot, Subscription
from autoreviews.errors import NotFound, ReviewsError, TransactionFailed
from autoreviews.query import ASCENDING, DESCENDING, ListingQuery

logger = logging.getLogger(__name__)

T = TypeVar("T")

_DIRECTIONS = {
    ASCENDING: firestore.Query.ASCENDING,
    DESCENDING: firestore.Query.DESCENDING,
}


def create_firestore_client(
    project_id: Optional[str] = None, credentials_path: Optional[str] = None
):
    """Returns a Firestore client from the default (or a new) Firebase app."""
    try:
        app = firebase_admin.get_app()
    except ValueError:
        cred = credentials.Certificate(credentials_path) if credentials_path else None
        options = {"projectId": project_id} if project_id else None
        app = firebase_admin.initialize_app(cred, options)
    return admin_firestore.client(app)


def _encode(value: Any) -> Any:
    if value is SERVER_TIMESTAMP:
        return FIRESTORE_SERVER_TIMESTAMP
    if isinstance(value, dict):
        return {key: _encode(item) for key, item in value.items()}
    if isinstance(value, list):
        return [_encode(item) for item in value]
    return value


def _to_snapshot(snapshot) -> DocumentSnapshot:
    return DocumentSnapshot(
        path=snapshot.reference.path,
        data=snapshot.to_dict() if snapshot.exists else None,
    )


class _FirestoreTransaction:
    def __init__(self, client, transaction):
        self._client = client
        self._transaction = transaction

    def get(self, path: str) -> DocumentSnapshot:
        snapshot = self._client.document(path).get(transaction=self._transaction)
        return _to_snapshot(snapshot)

    def set(self, path: str, data: dict, merge: bool = False) -> None:
        self._transaction.set(self._client.document(path), _encode(data), merge=merge)

    def update(self, path: str, data: dict) -> None:
        self._transaction.update(self._client.document(path), _encode(data))


class FirestoreDocumentStore:
    """DocumentStore backed by a google-cloud-firestore client."""

    def __init__(self, client, max_attempts: int = DEFAULT_MAX_ATTEMPTS):
        self._client = client
        self.max_attempts = max_attempts

    def new_document_id(self, collection_path: str) -> str:
        return self._client.collection(collection_path).document().id

    def get(self, path: str) -> DocumentSnapshot:
        return _to_snapshot(self._client.document(path).get())

    def set(self, path: str, data: dict, merge: bool = False) -> None:
        self._client.document(path).set(_encode(data), merge=merge)

    def update(self, path: str, data: dict) -> None:
        try:
            self._client.document(path).update(_encode(data))
        except google_exceptions.NotFound as exc:
            raise NotFound(f"No document to update: {path}") from exc

    def add(self, collection_path: str, data: dict) -> str:
        _, doc_ref = self._client.collection(collection_path).add(_encode(data))
        return doc_ref.id

    def _build_query(self, query: ListingQuery):
        native = self._client.collection(query.collection)
        for field_filter in query.filters:
            native = native.where(
                filter=FirestoreFieldFilter(
                    field_filter.field, field_filter.op, field_filter.value
                )
            )
        for order in query.order_by:
            native = native.order_by(order.field, direction=_DIRECTIONS[order.direction])
        if query.limit is not None:
            native = native.limit(query.limit)
        return native

    def query(self, query: ListingQuery) -> list[DocumentSnapshot]:
        return [_to_snapshot(snapshot) for snapshot in self._build_query(query).stream()]

    def subscribe(self, query: ListingQuery, on_change: QueryCallback) -> Subscription:
        def _on_snapshot(docs, changes, read_time):
            on_change([_to_snapshot(doc) for doc in docs])

        watch = self._build_query(query).on_snapshot(_on_snapshot)
        return Subscription(watch.unsubscribe)

    def subscribe_document(
        self, path: str, on_change: DocumentCallback
    ) -> Subscription:
        def _on_snapshot(docs, changes, read_time):
            for doc in docs:
                on_change(_to_snapshot(doc))

        watch = self._client.document(path).on_snapshot(_on_snapshot)
        return Subscription(watch.unsubscribe)

    def run_transaction(self, fn: Callable[[_FirestoreTransaction], T]) -> T:
        """
        Runs `fn` inside `firestore.transactional`, which retries on contention
        up to `max_attempts` and rolls back if `fn` raises.
        """
        transaction = self._client.transaction(max_attempts=self.max_attempts)

        @firestore.transactional
        def _run(transaction):
            return fn(_FirestoreTransaction(self._client, transaction))

        try:
            return _run(transaction)
        except ReviewsError:
            raise
        except google_exceptions.NotFound as exc:
            raise NotFound(str(exc)) from exc
        except (google_exceptions.GoogleAPICallError, google_exceptions.RetryError) as exc:
            logger.error("Firestore transaction failed: %s", exc)
            raise TransactionFailed(str(exc)) from exc
        except ValueError as exc:
            # Raised by the client once `max_attempts` commits have been aborted.
            logger.error("Firestore transaction gave up: %s", exc)
            raise TransactionFailed(str(exc)) from exc
