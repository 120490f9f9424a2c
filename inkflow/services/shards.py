"""Shard key layout and payload accessors.

The external OCR job writes its output as numbered objects::

    {prefix}/{job_id}/1
    {prefix}/{job_id}/2
    ...

Only objects whose final path segment is a pure non-negative integer are
shards; anything else under the prefix (access checks, manifests) is ignored.
Shard #1 declares the total shard count for the job.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from typing import Any, Mapping

from inkflow.errors import ProcessingError

from .interfaces import ObjectStorage

_SEQUENCE_RE = re.compile(r"^[0-9]+$")


@dataclass(slots=True, frozen=True)
class ShardRef:
    job_id: str
    sequence: int
    key: str


def sequence_of(key: str) -> int | None:
    """Return the shard number encoded in the final key segment, if any."""
    last = key.rstrip("/").rsplit("/", 1)[-1] if key else ""
    if not _SEQUENCE_RE.match(last):
        return None
    return int(last)


def job_id_from_key(key: str, prefix: str) -> str | None:
    match = re.match(rf"^{re.escape(prefix.strip('/'))}/(.+?)/", key)
    if not match:
        return None
    return match.group(1)


def shard_prefix(prefix: str, job_id: str) -> str:
    return f"{prefix.strip('/')}/{job_id}/"


def parse_shard_key(key: str, prefix: str) -> ShardRef | None:
    sequence = sequence_of(key)
    if sequence is None:
        return None
    job_id = job_id_from_key(key, prefix)
    if job_id is None:
        return None
    return ShardRef(job_id=job_id, sequence=sequence, key=key)


async def list_shards(storage: ObjectStorage, prefix: str, job_id: str) -> list[ShardRef]:
    """List every numbered shard currently present for ``job_id``, in numeric order."""
    base = shard_prefix(prefix, job_id)
    refs: list[ShardRef] = []
    for key in await storage.list_objects(base):
        suffix = key[len(base):]
        if "/" in suffix or not _SEQUENCE_RE.match(suffix):
            continue
        refs.append(ShardRef(job_id=job_id, sequence=int(suffix), key=key))
    refs.sort(key=lambda ref: ref.sequence)
    return refs


def resolve_field(document: Any, path: str) -> Any:
    """Follow a dotted path (``DocumentMetadata.Pages``) through nested mappings."""
    node = document
    for part in path.split("."):
        if not isinstance(node, Mapping) or part not in node:
            return None
        node = node[part]
    return node


def decode_shard(raw: bytes, *, key: str) -> Any:
    try:
        return json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise ProcessingError(f"Shard {key} is not valid JSON: {exc}") from exc


def read_total_count(raw: bytes, *, key: str, field_path: str) -> int:
    """Read the declared total shard count from shard #1's payload.

    Raises `ProcessingError` when the payload is not JSON or the field is not
    a positive integer.
    """
    document = decode_shard(raw, key=key)
    value = resolve_field(document, field_path)
    if isinstance(value, bool):
        value = None
    if isinstance(value, str) and _SEQUENCE_RE.match(value.strip()):
        value = int(value.strip())
    if not isinstance(value, int) or value <= 0:
        raise ProcessingError(f"Shard {key} has no positive integer at {field_path}")
    return value


def extract_blocks(document: Any, *, key: str, field_path: str) -> list[Any]:
    blocks = resolve_field(document, field_path)
    if blocks is None:
        return []
    if not isinstance(blocks, list):
        raise ProcessingError(f"Shard {key} field {field_path} is not an array")
    return blocks


__all__ = [
    "ShardRef",
    "decode_shard",
    "extract_blocks",
    "job_id_from_key",
    "list_shards",
    "parse_shard_key",
    "read_total_count",
    "resolve_field",
    "sequence_of",
    "shard_prefix",
]
