"""
Dependency wiring for the FastAPI app.
"""

from __future__ import annotations

from typing import Optional

from fastapi import Header

from autoreviews.config import get_settings
from autoreviews.db import DocumentStore, InMemoryDocumentStore, SqlDocumentStore
from autoreviews.firestore_db import FirestoreDocumentStore, create_firestore_client
from autoreviews.storage import InMemoryStorageClient, S3StorageClient, StorageClient

_store: DocumentStore | None = None
_storage_client: StorageClient | None = None


def get_store() -> DocumentStore:
    """
    Return a singleton document store so subscriptions and in-memory data are
    shared across requests.
    """
    global _store
    if _store:
        return _store

    settings = get_settings()
    if settings.use_in_memory_backends:
        _store = InMemoryDocumentStore(max_attempts=settings.transaction_max_attempts)
    elif settings.firestore_project_id:
        client = create_firestore_client(
            settings.firestore_project_id, settings.google_application_credentials
        )
        _store = FirestoreDocumentStore(
            client, max_attempts=settings.transaction_max_attempts
        )
    elif settings.database_url:
        _store = SqlDocumentStore(
            settings.database_url, max_attempts=settings.transaction_max_attempts
        )
    else:
        _store = InMemoryDocumentStore(max_attempts=settings.transaction_max_attempts)
    return _store


def get_storage_client() -> StorageClient:
    global _storage_client
    if _storage_client:
        return _storage_client

    settings = get_settings()
    if settings.use_in_memory_backends or not settings.s3_bucket:
        _storage_client = InMemoryStorageClient()
    else:
        _storage_client = S3StorageClient(
            bucket=settings.s3_bucket,
            region=settings.s3_region or "",
            endpoint=settings.s3_endpoint or "",
            access_key_id=settings.aws_access_key_id or "",
            secret_access_key=settings.aws_secret_access_key or "",
            public_base_url=settings.s3_public_base_url or "",
        )
    return _storage_client


def get_current_user_id(
    x_user_id: Optional[str] = Header(default=None),
) -> Optional[str]:
    """
    The authenticated user id, as forwarded by the identity proxy in front of
    the service. It is trusted as-is.
    """
    return x_user_id or None
