"""Shard-arrival notifications and the envelopes they are delivered in.

Cloud Storage ``object.finalize`` events reach the service either directly
from Eventarc (the object resource is the request body, or sits under
``data``) or wrapped in a Pub/Sub push envelope whose ``message.data`` is the
base64 encoded object resource and whose attributes repeat bucket and name.
"""

from __future__ import annotations

import base64
import json
from dataclasses import dataclass
from typing import Any, Dict, Mapping, MutableMapping

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from inkflow.errors import ValidationError


@dataclass(slots=True, frozen=True)
class ShardNotification:
    """One object-written event: the container (bucket) and object key."""

    bucket: str
    key: str
    generation: str | None = None
    event_id: str | None = None

    @property
    def claimant(self) -> str:
        """Identity of this write; stable across redeliveries of the same event."""
        return f"{self.key}#{self.generation or self.event_id or ''}"


class StorageObjectPayload(BaseModel):
    """Subset of the Cloud Storage object resource we read."""

    bucket: str | None = None
    name: str | None = None
    generation: str | None = None
    content_type: str | None = Field(default=None, alias="contentType")

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    @field_validator("generation", mode="before")
    @classmethod
    def _stringify_generation(cls, value: Any) -> str | None:
        if value is None or value == "":
            return None
        return str(value)


def _b64_json_decode(value: str) -> Dict[str, Any] | None:
    padded = value + "=" * (-len(value) % 4)
    try:
        decoded = json.loads(base64.b64decode(padded).decode("utf-8"))
    except (ValueError, UnicodeDecodeError):
        return None
    return decoded if isinstance(decoded, dict) else None


def _first_non_empty(*candidates: Any) -> Any:
    for item in candidates:
        if isinstance(item, str) and item.strip():
            return item
        if item not in (None, "", {}):
            return item
    return None


def _object_from_pubsub(message: MutableMapping[str, Any]) -> tuple[Dict[str, Any], str | None]:
    attributes = message.get("attributes")
    if not isinstance(attributes, MutableMapping):
        attributes = {}
    data_field = message.get("data")
    decoded: Dict[str, Any] | None = None
    if isinstance(data_field, str):
        decoded = _b64_json_decode(data_field)
    elif isinstance(data_field, MutableMapping):
        decoded = dict(data_field)
    source: Dict[str, Any] = decoded or {}
    gcs_object = dict(source)
    for key, candidates in (
        ("bucket", ("bucket", "bucketId")),
        ("name", ("name", "objectId")),
        ("generation", ("generation", "objectGeneration")),
    ):
        if not gcs_object.get(key):
            fallback = _first_non_empty(
                *(source.get(c) for c in candidates),
                *(attributes.get(c) for c in candidates),
            )
            if fallback is not None:
                gcs_object[key] = fallback
    event_id = _first_non_empty(message.get("messageId"), message.get("message_id"))
    return gcs_object, event_id


def parse_notification(raw: Any, headers: Mapping[str, str] | None = None) -> ShardNotification:
    """Normalise any supported envelope into a `ShardNotification`."""
    if not isinstance(raw, MutableMapping):
        raise ValidationError("Expected a JSON object body")
    headers = headers or {}
    event_id = headers.get("ce-id")
    if "message" in raw and isinstance(raw["message"], MutableMapping):
        object_dict, message_id = _object_from_pubsub(raw["message"])
        event_id = event_id or message_id
    elif "data" in raw and isinstance(raw["data"], MutableMapping):
        object_dict = dict(raw["data"])
    elif "object" in raw and isinstance(raw["object"], MutableMapping):
        object_dict = dict(raw["object"])
    else:
        object_dict = dict(raw)

    try:
        payload = StorageObjectPayload.model_validate(object_dict)
    except PydanticValidationError as exc:
        raise ValidationError(f"Invalid storage event payload: {exc}") from exc
    if not payload.bucket or not payload.name:
        raise ValidationError("Storage object bucket and name are required")
    return ShardNotification(
        bucket=payload.bucket,
        key=payload.name,
        generation=payload.generation,
        event_id=event_id,
    )


__all__ = ["ShardNotification", "StorageObjectPayload", "parse_notification"]
