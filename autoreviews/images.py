"""
Entity image upload: store the file, then point the entity's photo at it.
"""

from __future__ import annotations

import logging
from pathlib import PurePosixPath
from typing import Optional

from autoreviews.errors import InvalidArgument, NotFound
from autoreviews.listings import EntityRepository
from autoreviews.storage import StorageClient

logger = logging.getLogger(__name__)


def image_path(entity_id: str, filename: str) -> str:
    return f"images/{entity_id}/{filename}"


def update_entity_image(
    repository: EntityRepository,
    storage: StorageClient,
    entity_id: str,
    filename: Optional[str],
    data: Optional[bytes],
    content_type: Optional[str] = None,
) -> str:
    """
    Uploads an image for an entity and persists its public URL.

    Returns:
        The public URL now stored in the entity's `photo` field.

    Raises:
        InvalidArgument: Missing entity id, filename or image bytes.
        NotFound: The entity does not exist.
    """
    if not entity_id:
        raise InvalidArgument("No entity ID has been provided.")
    name = PurePosixPath(filename or "").name
    if not name or not data:
        raise InvalidArgument("A valid image has not been provided.")

    # Fail before uploading anything for an unknown entity.
    repository.get_entity(entity_id)

    path = image_path(entity_id, name)
    try:
        storage.upload_bytes(path, data, content_type)
        public_url = storage.public_url(path)
        repository.update_photo(entity_id, public_url)
    except NotFound:
        raise
    except Exception:
        logger.exception("Error updating image for %s %s", repository.kind.name, entity_id)
        raise
    logger.info("Updated image for %s %s: %s", repository.kind.name, entity_id, path)
    return public_url
