"""
Descriptions of the reviewed entity kinds.

Cars and restaurants share the rating and listing logic; an EntityKind
carries the parts that differ (collection name, filterable fields and the
kind-specific descriptive fields).
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

RATINGS_COLLECTION = "ratings"


@dataclass(frozen=True)
class EntityKind:
    name: str
    collection: str
    # Listing filter keys that become exact-match predicates on the same field.
    match_filters: tuple[str, ...]
    detail_fields: tuple[str, ...]

    def entity_path(self, entity_id: str) -> str:
        return f"{self.collection}/{entity_id}"

    def ratings_path(self, entity_id: str) -> str:
        return f"{self.collection}/{entity_id}/{RATINGS_COLLECTION}"


CAR = EntityKind(
    name="car",
    collection="cars",
    match_filters=("type", "make", "country"),
    detail_fields=("type", "make", "model", "year", "country"),
)

RESTAURANT = EntityKind(
    name="restaurant",
    collection="restaurants",
    match_filters=("category", "city"),
    detail_fields=("category", "city"),
)

ENTITY_KINDS: dict[str, EntityKind] = {
    kind.collection: kind for kind in (CAR, RESTAURANT)
}


def get_entity_kind(collection: str) -> Optional[EntityKind]:
    return ENTITY_KINDS.get(collection)
