"""
Review ingestion: appends a rating and recomputes the entity's aggregates.
"""

from __future__ import annotations

import logging
from typing import Any, Mapping, Optional, Union

from autoreviews.db import DocumentStore, Transaction
from autoreviews.errors import InvalidArgument, NotFound
from autoreviews.kinds import CAR, EntityKind
from autoreviews.models import Review

logger = logging.getLogger(__name__)

MIN_RATING = 1
MAX_RATING = 5


def coerce_rating(value: Any) -> int:
    """
    Returns the rating as an int in [MIN_RATING, MAX_RATING].

    Form posts deliver numbers as strings, so "4" is accepted.

    Raises:
        InvalidArgument: If the value is not a whole number in range.
    """
    if isinstance(value, bool):
        raise InvalidArgument(f"Invalid rating: {value!r}")
    if isinstance(value, str):
        value = value.strip()
        if not value.lstrip("-").isdigit():
            raise InvalidArgument(f"Invalid rating: {value!r}")
        value = int(value)
    elif isinstance(value, float):
        if not value.is_integer():
            raise InvalidArgument(f"Invalid rating: {value!r}")
        value = int(value)
    elif not isinstance(value, int):
        raise InvalidArgument(f"Invalid rating: {value!r}")
    if not MIN_RATING <= value <= MAX_RATING:
        raise InvalidArgument(
            f"Rating must be between {MIN_RATING} and {MAX_RATING}, got {value}"
        )
    return value


def next_aggregate(current: Optional[Mapping[str, Any]], rating: int) -> dict:
    """Aggregate fields after adding one rating to `current` (missing fields count as 0)."""
    current = current or {}
    num_ratings = (current.get("numRatings") or 0) + 1
    sum_rating = (current.get("sumRating") or 0) + rating
    return {
        "numRatings": num_ratings,
        "sumRating": sum_rating,
        "avgRating": sum_rating / num_ratings,
    }


class RatingAggregator:
    """Keeps numRatings/sumRating/avgRating consistent with the ratings collection."""

    def __init__(self, store: DocumentStore, kind: EntityKind = CAR):
        self.store = store
        self.kind = kind

    def add_review(
        self, entity_id: str, review: Union[Review, Mapping[str, Any], None]
    ) -> str:
        """
        Adds a review to an entity in a single transaction.

        The transaction reads the entity's aggregate fields, writes the new
        numRatings, sumRating, avgRating and lastReviewUserId, and inserts the
        rating document with a server-assigned timestamp. Either every write
        is applied or none is.

        Args:
            entity_id: Id of an existing entity of this aggregator's kind.
            review: A Review, or a mapping with `rating`, `text` and optional
                `userId` / `photoUrl`. Other keys are ignored.

        Returns:
            The id of the new rating document.

        Raises:
            InvalidArgument: Missing entity id, missing review, bad rating or
                empty text.
            NotFound: The entity does not exist.
            TransactionFailed: The store aborted the transaction.
        """
        if not entity_id:
            raise InvalidArgument("No entity ID has been provided.")
        if not isinstance(entity_id, str) or "/" in entity_id:
            raise InvalidArgument(f"Invalid entity ID: {entity_id!r}")
        if review is None:
            raise InvalidArgument("A valid review has not been provided.")
        if not isinstance(review, Review):
            review = Review.from_dict(review)
        rating = coerce_rating(review.rating)
        if not isinstance(review.text, str) or not review.text.strip():
            raise InvalidArgument("A review needs some text.")

        entity_path = self.kind.entity_path(entity_id)
        ratings_path = self.kind.ratings_path(entity_id)
        rating_id = self.store.new_document_id(ratings_path)

        def _update_with_rating(transaction: Transaction) -> None:
            snapshot = transaction.get(entity_path)
            if not snapshot.exists:
                raise NotFound(f"No {self.kind.name} with id {entity_id}")
            fields = next_aggregate(snapshot.to_dict(), rating)
            # Recorded for the security rules that check who reviewed last.
            fields["lastReviewUserId"] = review.user_id
            transaction.update(entity_path, fields)
            transaction.set(f"{ratings_path}/{rating_id}", review.to_document(rating))

        try:
            self.store.run_transaction(_update_with_rating)
        except Exception:
            logger.exception(
                "There was an error adding the rating to %s %s",
                self.kind.name,
                entity_id,
            )
            raise

        logger.info(
            "Added rating %s (%d) to %s %s", rating_id, rating, self.kind.name, entity_id
        )
        return rating_id
