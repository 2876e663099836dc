"""
Listing query descriptors and the builder that composes them from filters.

A ListingQuery only describes a read; stores translate it to their native
query API (Firestore) or evaluate it over loaded documents (SQL, in-memory).
"""

from __future__ import annotations

import operator
from dataclasses import dataclass, replace
from typing import Any, Iterable, Mapping, Optional

from autoreviews.documents import DocumentSnapshot
from autoreviews.kinds import CAR, EntityKind

ASCENDING = "asc"
DESCENDING = "desc"

_OPERATORS = {
    "==": operator.eq,
    "!=": operator.ne,
    "<": operator.lt,
    "<=": operator.le,
    ">": operator.gt,
    ">=": operator.ge,
}

# Values of the `sort` filter and the field each one orders by.
SORT_FIELDS = {
    "Rating": "avgRating",
    "Review": "numRatings",
}
DEFAULT_SORT = "Rating"


@dataclass(frozen=True)
class FieldFilter:
    field: str
    op: str
    value: Any


@dataclass(frozen=True)
class OrderBy:
    field: str
    direction: str = DESCENDING


@dataclass(frozen=True)
class ListingQuery:
    """Immutable query: equality-style filters ANDed, then orderings, then limit."""

    collection: str
    filters: tuple[FieldFilter, ...] = ()
    order_by: tuple[OrderBy, ...] = ()
    limit: Optional[int] = None

    def where(self, field: str, op: str, value: Any) -> "ListingQuery":
        if op not in _OPERATORS:
            raise ValueError(f"Unsupported operator: {op}")
        return replace(self, filters=self.filters + (FieldFilter(field, op, value),))

    def ordered_by(self, field: str, direction: str = DESCENDING) -> "ListingQuery":
        return replace(self, order_by=self.order_by + (OrderBy(field, direction),))

    def limited(self, limit: int) -> "ListingQuery":
        return replace(self, limit=limit)

    def matches(self, snapshot: DocumentSnapshot) -> bool:
        """True if the document belongs in this query's result set (ignoring limit)."""
        if not snapshot.exists or snapshot.parent != self.collection:
            return False
        data = snapshot.data
        for order in self.order_by:
            # Documents without an ordering field are left out of ordered results.
            if order.field not in data:
                return False
        for field_filter in self.filters:
            if field_filter.field not in data:
                return False
            compare = _OPERATORS[field_filter.op]
            try:
                if not compare(data[field_filter.field], field_filter.value):
                    return False
            except TypeError:
                return False
        return True

    def apply(self, snapshots: Iterable[DocumentSnapshot]) -> list[DocumentSnapshot]:
        """Evaluates the query over an unordered collection of documents."""
        results = sorted(
            (snapshot for snapshot in snapshots if self.matches(snapshot)),
            key=lambda snapshot: snapshot.id,
        )
        # Stable sorts applied last-key-first give lexicographic ordering.
        for order in reversed(self.order_by):
            results.sort(
                key=lambda snapshot: snapshot.data[order.field],
                reverse=order.direction == DESCENDING,
            )
        if self.limit is not None:
            results = results[: self.limit]
        return results


def _price_tier(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, str):
        # "$$" -> 2
        return len(value)
    if isinstance(value, int):
        return value
    return None


class ListingQueryBuilder:
    """Turns the flat filter mapping of a listing page into a ListingQuery."""

    def __init__(self, kind: EntityKind = CAR):
        self.kind = kind

    def build(
        self,
        base_collection: Optional[str] = None,
        filters: Optional[Mapping[str, Any]] = None,
    ) -> ListingQuery:
        """
        Composes filters with AND and adds the requested ordering.

        Falsy values and unknown keys add no constraint, and unrecognized
        `sort` values add no ordering. This never raises on bad input.

        Args:
            base_collection: Collection to query; defaults to the kind's.
            filters: Mapping such as {"type": "SUV", "price": "$$", "sort": "Review"}.

        Returns:
            The composed ListingQuery; nothing is executed.
        """
        filters = filters or {}
        query = ListingQuery(collection=base_collection or self.kind.collection)

        for key in self.kind.match_filters:
            value = filters.get(key)
            if value:
                query = query.where(key, "==", value)

        price = filters.get("price")
        if price:
            tier = _price_tier(price)
            if tier is not None:
                query = query.where("price", "==", tier)

        sort = filters.get("sort") or DEFAULT_SORT
        sort_field = SORT_FIELDS.get(sort) if isinstance(sort, str) else None
        if sort_field:
            query = query.ordered_by(sort_field, DESCENDING)
        return query
