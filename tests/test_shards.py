from __future__ import annotations

import json

import pytest

from inkflow.errors import ProcessingError
from inkflow.services.shards import (
    extract_blocks,
    job_id_from_key,
    list_shards,
    parse_shard_key,
    read_total_count,
    resolve_field,
    sequence_of,
)


@pytest.mark.parametrize(
    "key,expected",
    [
        ("ocr-output/job-1/1", 1),
        ("ocr-output/job-1/12", 12),
        ("ocr-output/job-1/007", 7),
        ("ocr-output/job-1/.s3_access_check", None),
        ("ocr-output/job-1/manifest.json", None),
        ("ocr-output/job-1/1a", None),
        ("ocr-output/job-1/-1", None),
        ("", None),
    ],
)
def test_sequence_of(key, expected):
    assert sequence_of(key) == expected


def test_job_id_from_key_requires_prefix():
    assert job_id_from_key("ocr-output/abc-123/4", "ocr-output") == "abc-123"
    assert job_id_from_key("ocr-output/abc-123/4", "ocr-output/") == "abc-123"
    assert job_id_from_key("elsewhere/abc-123/4", "ocr-output") is None
    assert job_id_from_key("ocr-output/4", "ocr-output") is None


def test_parse_shard_key():
    ref = parse_shard_key("ocr-output/job-9/3", "ocr-output")
    assert ref is not None
    assert (ref.job_id, ref.sequence) == ("job-9", 3)
    assert parse_shard_key("ocr-output/job-9/summary", "ocr-output") is None


@pytest.mark.asyncio
async def test_list_shards_orders_numerically_and_ignores_other_objects(storage):
    for name in ("10", "2", "1", ".s3_access_check", "nested/3", "11"):
        storage.seed(f"ocr-output/job-1/{name}", "{}")
    storage.seed("ocr-output/job-10/1", "{}")

    shards = await list_shards(storage, "ocr-output", "job-1")

    assert [ref.sequence for ref in shards] == [1, 2, 10, 11]
    assert all(ref.job_id == "job-1" for ref in shards)


def test_resolve_field_follows_dotted_path():
    document = {"DocumentMetadata": {"Pages": 3}}
    assert resolve_field(document, "DocumentMetadata.Pages") == 3
    assert resolve_field(document, "DocumentMetadata.Missing") is None
    assert resolve_field([1, 2], "DocumentMetadata") is None


@pytest.mark.parametrize("value,expected", [(3, 3), ("4", 4), (1, 1)])
def test_read_total_count_accepts_positive_integers(value, expected):
    raw = json.dumps({"DocumentMetadata": {"Pages": value}}).encode()
    assert read_total_count(raw, key="k", field_path="DocumentMetadata.Pages") == expected


@pytest.mark.parametrize(
    "raw",
    [
        b"not json",
        json.dumps({"DocumentMetadata": {}}).encode(),
        json.dumps({"DocumentMetadata": {"Pages": 0}}).encode(),
        json.dumps({"DocumentMetadata": {"Pages": -2}}).encode(),
        json.dumps({"DocumentMetadata": {"Pages": True}}).encode(),
        json.dumps({"DocumentMetadata": {"Pages": "three"}}).encode(),
    ],
)
def test_read_total_count_rejects_malformed_metadata(raw):
    with pytest.raises(ProcessingError):
        read_total_count(raw, key="ocr-output/job/1", field_path="DocumentMetadata.Pages")


def test_extract_blocks():
    assert extract_blocks({"Blocks": [1, 2]}, key="k", field_path="Blocks") == [1, 2]
    assert extract_blocks({}, key="k", field_path="Blocks") == []
    with pytest.raises(ProcessingError):
        extract_blocks({"Blocks": "nope"}, key="k", field_path="Blocks")
