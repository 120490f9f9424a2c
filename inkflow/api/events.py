"""Shard-arrival entry point (Eventarc / Pub/Sub push)."""

from __future__ import annotations

import json
import logging
import uuid

from fastapi import APIRouter, Request

from inkflow.errors import ValidationError
from inkflow.logging_setup import set_request_id
from inkflow.models.events import parse_notification
from inkflow.services.ingestion import ShardIngestionService

router = APIRouter()
_EVENTS_LOG = logging.getLogger("events")


@router.post("/shards", tags=["events"])
async def shard_written(request: Request):
    """Handle one object-written event.

    Irrelevant keys and unknown jobs answer 200 so the event is acknowledged;
    unexpected failures propagate as 500 so the event source redelivers.
    """
    try:
        raw = await request.json()
    except json.JSONDecodeError as exc:
        raise ValidationError("Expected JSON body") from exc

    request_id = request.headers.get("ce-id") or request.headers.get("x-request-id") or uuid.uuid4().hex
    set_request_id(request_id)
    notification = parse_notification(raw, request.headers)
    ingestion: ShardIngestionService = request.app.state.ingestion
    result = await ingestion.handle(notification)
    _EVENTS_LOG.debug(
        "shard_event_handled",
        extra={"key": notification.key, "outcome": result.outcome.value, "request_id": request_id},
    )
    return result.as_dict()


__all__ = ["router"]
