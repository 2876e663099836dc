"""
Entity, rating and review records exchanged with callers.

Documents are stored with camelCase keys; these dataclasses use snake_case
and are built from snapshots with dacite.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Mapping, Optional

from dacite import Config, DaciteError, from_dict

from autoreviews.documents import SERVER_TIMESTAMP, DocumentSnapshot
from autoreviews.errors import InvalidArgument
from autoreviews.json_utils import convert_keys
from autoreviews.kinds import EntityKind

_DACITE_CONFIG = Config(check_types=False)


@dataclass
class Review:
    """A review as submitted by a user, before it is stored."""

    rating: Any
    text: str = ""
    user_id: Optional[str] = None
    photo_url: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Review":
        # Unknown keys, including any client-supplied timestamp, are dropped.
        try:
            return from_dict(
                data_class=cls,
                data=convert_keys(dict(data), "camel_to_snake"),
                config=_DACITE_CONFIG,
            )
        except (DaciteError, TypeError, ValueError) as exc:
            raise InvalidArgument(f"A valid review has not been provided: {exc}") from exc

    def to_document(self, rating: int) -> dict:
        document = {
            "rating": rating,
            "text": self.text,
            "userId": self.user_id,
            "timestamp": SERVER_TIMESTAMP,
        }
        if self.photo_url:
            document["photoUrl"] = self.photo_url
        return document


@dataclass
class Rating:
    """A stored review. Immutable once written."""

    id: str
    rating: int
    text: str = ""
    user_id: Optional[str] = None
    photo_url: Optional[str] = None
    timestamp: Optional[datetime] = None

    @classmethod
    def from_snapshot(cls, snapshot: DocumentSnapshot) -> "Rating":
        data = convert_keys(snapshot.to_dict() or {}, "camel_to_snake")
        data["id"] = snapshot.id
        return from_dict(data_class=cls, data=data, config=_DACITE_CONFIG)

    def as_dict(self) -> dict:
        return {
            "id": self.id,
            "rating": self.rating,
            "text": self.text,
            "userId": self.user_id,
            "photoUrl": self.photo_url,
            "timestamp": self.timestamp,
        }


@dataclass
class Entity:
    """A reviewed car or restaurant with its aggregate rating fields."""

    id: str
    name: str = ""
    price: Optional[int] = None
    num_ratings: int = 0
    sum_rating: float = 0
    avg_rating: float = 0.0
    last_review_user_id: Optional[str] = None
    photo: Optional[str] = None
    timestamp: Optional[datetime] = None
    # Kind-specific fields such as a car's make or a restaurant's city.
    details: dict = field(default_factory=dict)

    @classmethod
    def from_snapshot(cls, kind: EntityKind, snapshot: DocumentSnapshot) -> "Entity":
        raw = snapshot.to_dict() or {}
        details = {key: raw[key] for key in kind.detail_fields if key in raw}
        data = convert_keys(
            {key: value for key, value in raw.items() if key not in details},
            "camel_to_snake",
        )
        data["id"] = snapshot.id
        data["details"] = details
        entity = from_dict(data_class=cls, data=data, config=_DACITE_CONFIG)
        entity.num_ratings = entity.num_ratings or 0
        entity.sum_rating = entity.sum_rating or 0
        entity.avg_rating = (
            entity.sum_rating / entity.num_ratings if entity.num_ratings else 0.0
        )
        return entity

    def as_dict(self) -> dict:
        return {
            **self.details,
            "id": self.id,
            "name": self.name,
            "price": self.price,
            "numRatings": self.num_ratings,
            "sumRating": self.sum_rating,
            "avgRating": self.avg_rating,
            "lastReviewUserId": self.last_review_user_id,
            "photo": self.photo,
            "timestamp": self.timestamp,
        }
