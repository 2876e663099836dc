"""
Read side of the review backend: listings, entity pages and their ratings.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Mapping, Optional

from autoreviews.db import DocumentStore
from autoreviews.documents import SERVER_TIMESTAMP, Subscription
from autoreviews.errors import InvalidArgument, NotFound
from autoreviews.kinds import CAR, EntityKind
from autoreviews.models import Entity, Rating
from autoreviews.query import DESCENDING, ListingQuery, ListingQueryBuilder
from autoreviews.streams import SnapshotStream

logger = logging.getLogger(__name__)


def ratings_query(kind: EntityKind, entity_id: str) -> ListingQuery:
    """Ratings of one entity, newest first."""
    return ListingQuery(collection=kind.ratings_path(entity_id)).ordered_by(
        "timestamp", DESCENDING
    )


class EntityRepository:
    """Materializes and subscribes to entities and ratings of one kind."""

    def __init__(self, store: DocumentStore, kind: EntityKind = CAR):
        self.store = store
        self.kind = kind
        self.query_builder = ListingQueryBuilder(kind)

    def build_query(self, filters: Optional[Mapping[str, Any]] = None) -> ListingQuery:
        return self.query_builder.build(filters=filters)

    def _check_id(self, entity_id: str) -> None:
        if not entity_id or not isinstance(entity_id, str) or "/" in entity_id:
            raise InvalidArgument(f"Invalid {self.kind.name} ID: {entity_id!r}")

    def list_entities(self, query: Optional[ListingQuery] = None) -> list[Entity]:
        query = query or self.build_query()
        return [
            Entity.from_snapshot(self.kind, snapshot)
            for snapshot in self.store.query(query)
        ]

    def subscribe_entities(
        self, query: ListingQuery, on_change: Callable[[list[Entity]], None]
    ) -> Subscription:
        """Calls `on_change` with the full result list now and after every change."""
        return self.store.subscribe(
            query,
            lambda snapshots: on_change(
                [Entity.from_snapshot(self.kind, snapshot) for snapshot in snapshots]
            ),
        )

    def stream_entities(self, query: ListingQuery) -> SnapshotStream[list[Entity]]:
        return SnapshotStream(lambda emit: self.subscribe_entities(query, emit))

    def get_entity(self, entity_id: str) -> Entity:
        self._check_id(entity_id)
        snapshot = self.store.get(self.kind.entity_path(entity_id))
        if not snapshot.exists:
            raise NotFound(f"No {self.kind.name} with id {entity_id}")
        return Entity.from_snapshot(self.kind, snapshot)

    def subscribe_entity(
        self, entity_id: str, on_change: Callable[[Entity], None]
    ) -> Subscription:
        """Calls `on_change` whenever the entity document exists and changes."""
        self._check_id(entity_id)

        def _deliver(snapshot):
            if snapshot.exists:
                on_change(Entity.from_snapshot(self.kind, snapshot))

        return self.store.subscribe_document(self.kind.entity_path(entity_id), _deliver)

    def list_ratings(self, entity_id: str) -> list[Rating]:
        self._check_id(entity_id)
        return [
            Rating.from_snapshot(snapshot)
            for snapshot in self.store.query(ratings_query(self.kind, entity_id))
        ]

    def subscribe_ratings(
        self, entity_id: str, on_change: Callable[[list[Rating]], None]
    ) -> Subscription:
        self._check_id(entity_id)
        return self.store.subscribe(
            ratings_query(self.kind, entity_id),
            lambda snapshots: on_change(
                [Rating.from_snapshot(snapshot) for snapshot in snapshots]
            ),
        )

    def review_photos(self, entity_id: str) -> list[str]:
        """Distinct photo URLs attached to the entity's reviews, newest first."""
        photos = []
        for rating in self.list_ratings(entity_id):
            url = rating.photo_url
            if isinstance(url, str) and url and url not in photos:
                photos.append(url)
        return photos

    def create_entity(self, data: Mapping[str, Any]) -> str:
        """
        Inserts a new entity with zeroed aggregates and returns its id.

        Only `name`, `price`, `photo` and the kind's detail fields are kept.
        """
        if not data or not data.get("name"):
            raise InvalidArgument(f"A {self.kind.name} needs a name.")
        document = {key: data[key] for key in self.kind.detail_fields if key in data}
        document.update(
            {
                "name": data["name"],
                "price": data.get("price"),
                "photo": data.get("photo"),
                "numRatings": 0,
                "sumRating": 0,
                "avgRating": 0,
                "timestamp": SERVER_TIMESTAMP,
            }
        )
        entity_id = self.store.add(self.kind.collection, document)
        logger.info("Created %s %s", self.kind.name, entity_id)
        return entity_id

    def update_photo(self, entity_id: str, photo_url: str) -> None:
        """Points the entity's `photo` field at an uploaded image."""
        self._check_id(entity_id)
        self.store.update(self.kind.entity_path(entity_id), {"photo": photo_url})
