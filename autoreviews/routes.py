"""
HTTP routes for the review API.

Every route is parameterized by the listing kind (`cars` or `restaurants`).
"""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, File, HTTPException, Query, Request, UploadFile
from fastapi.responses import StreamingResponse

from autoreviews.aggregator import RatingAggregator
from autoreviews.config import get_settings
from autoreviews.db import DocumentStore
from autoreviews.dependencies import get_current_user_id, get_storage_client, get_store
from autoreviews.errors import InvalidArgument, NotFound, ReviewsError, TransactionFailed
from autoreviews.images import update_entity_image
from autoreviews.kinds import EntityKind, get_entity_kind
from autoreviews.listings import EntityRepository
from autoreviews.models import Entity, Review
from autoreviews.schemas import (
    CreateEntityRequest,
    CreateEntityResponse,
    EntityResponse,
    ImageResponse,
    ListEntitiesResponse,
    ListRatingsResponse,
    RatingResponse,
    ReviewPhotosResponse,
    ReviewRequest,
    ReviewResponse,
)
from autoreviews.storage import StorageClient

logger = logging.getLogger(__name__)

router = APIRouter()


def resolve_kind(kind: str) -> EntityKind:
    entity_kind = get_entity_kind(kind)
    if not entity_kind:
        raise HTTPException(status_code=404, detail=f"Unknown listing: {kind}")
    return entity_kind


def _http_error(exc: ReviewsError) -> HTTPException:
    if isinstance(exc, NotFound):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, InvalidArgument):
        return HTTPException(status_code=400, detail=str(exc))
    if isinstance(exc, TransactionFailed):
        return HTTPException(
            status_code=409, detail="The review could not be saved. Please try again."
        )
    return HTTPException(status_code=500, detail=str(exc))


def _entity_response(entity: Entity) -> EntityResponse:
    return EntityResponse(**entity.as_dict())


@router.get("/{kind}", response_model=ListEntitiesResponse)
def list_entities(
    request: Request,
    entity_kind: EntityKind = Depends(resolve_kind),
    store: DocumentStore = Depends(get_store),
):
    """
    Listing page. Filters come straight from the query string; unknown
    parameters are ignored.
    """
    repository = EntityRepository(store, entity_kind)
    query = repository.build_query(dict(request.query_params))
    try:
        entities = repository.list_entities(query)
    except ReviewsError as exc:
        raise _http_error(exc) from exc
    return ListEntitiesResponse(entities=[_entity_response(e) for e in entities])


@router.get("/{kind}/stream")
def stream_entities(
    request: Request,
    max_events: Optional[int] = Query(None, ge=1),
    entity_kind: EntityKind = Depends(resolve_kind),
    store: DocumentStore = Depends(get_store),
):
    """
    Server-sent events: one `data:` frame holding the full listing now and
    after every change, with keep-alive comments in between.
    """
    repository = EntityRepository(store, entity_kind)
    query = repository.build_query(dict(request.query_params))
    stream = repository.stream_entities(query)
    heartbeat = get_settings().stream_heartbeat_seconds

    def _events():
        sent = 0
        try:
            while not stream.closed and (max_events is None or sent < max_events):
                entities = stream.next_snapshot(timeout=heartbeat)
                if entities is None:
                    yield ": keep-alive\n\n"
                    continue
                payload = ListEntitiesResponse(
                    entities=[_entity_response(e) for e in entities]
                ).model_dump_json()
                yield f"data: {payload}\n\n"
                sent += 1
        finally:
            stream.close()

    return StreamingResponse(_events(), media_type="text/event-stream")


@router.post("/{kind}", response_model=CreateEntityResponse, status_code=201)
def create_entity(
    payload: CreateEntityRequest,
    entity_kind: EntityKind = Depends(resolve_kind),
    store: DocumentStore = Depends(get_store),
):
    repository = EntityRepository(store, entity_kind)
    try:
        entity_id = repository.create_entity(payload.model_dump())
    except ReviewsError as exc:
        raise _http_error(exc) from exc
    return CreateEntityResponse(id=entity_id)


@router.get("/{kind}/{entity_id}", response_model=EntityResponse)
def get_entity(
    entity_id: str,
    entity_kind: EntityKind = Depends(resolve_kind),
    store: DocumentStore = Depends(get_store),
):
    try:
        entity = EntityRepository(store, entity_kind).get_entity(entity_id)
    except ReviewsError as exc:
        raise _http_error(exc) from exc
    return _entity_response(entity)


@router.get("/{kind}/{entity_id}/ratings", response_model=ListRatingsResponse)
def list_ratings(
    entity_id: str,
    entity_kind: EntityKind = Depends(resolve_kind),
    store: DocumentStore = Depends(get_store),
):
    try:
        ratings = EntityRepository(store, entity_kind).list_ratings(entity_id)
    except ReviewsError as exc:
        raise _http_error(exc) from exc
    return ListRatingsResponse(
        ratings=[RatingResponse(**rating.as_dict()) for rating in ratings]
    )


@router.get("/{kind}/{entity_id}/photos", response_model=ReviewPhotosResponse)
def list_review_photos(
    entity_id: str,
    entity_kind: EntityKind = Depends(resolve_kind),
    store: DocumentStore = Depends(get_store),
):
    """Reviewer gallery: distinct photos uploaded with the entity's reviews."""
    try:
        photos = EntityRepository(store, entity_kind).review_photos(entity_id)
    except ReviewsError as exc:
        raise _http_error(exc) from exc
    return ReviewPhotosResponse(photos=photos)


@router.post(
    "/{kind}/{entity_id}/ratings", response_model=ReviewResponse, status_code=201
)
def add_review(
    entity_id: str,
    payload: ReviewRequest,
    entity_kind: EntityKind = Depends(resolve_kind),
    store: DocumentStore = Depends(get_store),
    user_id: Optional[str] = Depends(get_current_user_id),
):
    """
    Adds a review as the authenticated user. The user id comes from the
    identity layer, never from the request body.
    """
    if not user_id:
        raise HTTPException(status_code=401, detail="Sign in to leave a review")
    review = Review(
        rating=payload.rating,
        text=payload.text,
        user_id=user_id,
        photo_url=payload.photoUrl,
    )
    try:
        rating_id = RatingAggregator(store, entity_kind).add_review(entity_id, review)
    except ReviewsError as exc:
        raise _http_error(exc) from exc
    return ReviewResponse(id=rating_id, status="ok")


@router.post("/{kind}/{entity_id}/image", response_model=ImageResponse)
async def upload_entity_image(
    entity_id: str,
    file: UploadFile = File(...),
    entity_kind: EntityKind = Depends(resolve_kind),
    store: DocumentStore = Depends(get_store),
    storage: StorageClient = Depends(get_storage_client),
):
    data = await file.read()
    try:
        photo = update_entity_image(
            EntityRepository(store, entity_kind),
            storage,
            entity_id,
            file.filename,
            data,
            content_type=file.content_type,
        )
    except ReviewsError as exc:
        raise _http_error(exc) from exc
    return ImageResponse(photo=photo)
