"""
Exceptions raised by the review core.
"""

from __future__ import annotations


class ReviewsError(Exception):
    """Base class for errors surfaced to API callers."""


class InvalidArgument(ReviewsError):
    """A required argument is missing or malformed."""


class NotFound(ReviewsError):
    """A document path does not resolve to an existing document."""


class TransactionFailed(ReviewsError):
    """The store aborted a transaction; none of its writes were applied."""
