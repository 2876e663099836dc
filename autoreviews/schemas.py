"""
Pydantic schemas for the review API.
"""

from __future__ import annotations

from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


class EntityResponse(BaseModel):
    # Kind-specific fields (make, city, ...) pass through as extras.
    model_config = ConfigDict(extra="allow")

    id: str
    name: str
    price: Optional[int] = None
    numRatings: int = 0
    sumRating: float = 0
    avgRating: float = 0.0
    lastReviewUserId: Optional[str] = None
    photo: Optional[str] = None
    timestamp: Optional[datetime] = None


class ListEntitiesResponse(BaseModel):
    entities: list[EntityResponse]


class CreateEntityRequest(BaseModel):
    model_config = ConfigDict(extra="allow")

    name: str = Field(..., min_length=1, max_length=200)
    price: int = Field(..., ge=1, le=4)
    photo: Optional[str] = None


class CreateEntityResponse(BaseModel):
    id: str


class ReviewRequest(BaseModel):
    rating: int = Field(..., ge=1, le=5)
    text: str = Field(..., min_length=1, max_length=2000)
    photoUrl: Optional[str] = None


class ReviewResponse(BaseModel):
    id: str
    status: Literal["ok"]


class RatingResponse(BaseModel):
    id: str
    rating: int
    text: str
    userId: Optional[str] = None
    photoUrl: Optional[str] = None
    timestamp: Optional[datetime] = None


class ListRatingsResponse(BaseModel):
    ratings: list[RatingResponse]


class ReviewPhotosResponse(BaseModel):
    photos: list[str]


class ImageResponse(BaseModel):
    photo: str
