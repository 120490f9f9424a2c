from __future__ import annotations

import base64
import json

import pytest

from inkflow.errors import ValidationError
from inkflow.models.events import ShardNotification, parse_notification


def _b64(payload: dict) -> str:
    return base64.b64encode(json.dumps(payload).encode()).decode().rstrip("=")


def test_direct_object_payload():
    notification = parse_notification(
        {"bucket": "b", "name": "ocr-output/j/1", "generation": 1712345678901234, "contentType": "application/json"},
        {"ce-id": "evt-1"},
    )
    assert notification == ShardNotification("b", "ocr-output/j/1", "1712345678901234", "evt-1")
    assert notification.claimant == "ocr-output/j/1#1712345678901234"


def test_eventarc_data_envelope():
    notification = parse_notification({"data": {"bucket": "b", "name": "ocr-output/j/2"}})
    assert notification.key == "ocr-output/j/2"
    assert notification.generation is None
    assert notification.claimant == "ocr-output/j/2#"


def test_pubsub_envelope_uses_data_and_message_id():
    raw = {"message": {"data": _b64({"bucket": "b", "name": "ocr-output/j/3", "generation": "9"}), "messageId": "m-7"}}
    notification = parse_notification(raw)
    assert (notification.bucket, notification.key, notification.generation) == ("b", "ocr-output/j/3", "9")
    assert notification.event_id == "m-7"


def test_pubsub_envelope_falls_back_to_attributes():
    raw = {
        "message": {
            "data": "not-base64-json",
            "attributes": {"bucketId": "b", "objectId": "ocr-output/j/4", "objectGeneration": "3"},
            "messageId": "m-8",
        }
    }
    notification = parse_notification(raw)
    assert notification.key == "ocr-output/j/4"
    assert notification.claimant == "ocr-output/j/4#3"


@pytest.mark.parametrize("raw", [[], "text", {"bucket": "b"}, {"object": {"name": "x"}}])
def test_invalid_payloads_raise_validation_error(raw):
    with pytest.raises(ValidationError):
        parse_notification(raw)
