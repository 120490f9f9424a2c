"""Merge every shard of a finished OCR job into one result object."""

from __future__ import annotations

import asyncio
import json
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable

from inkflow.errors import ProcessingError

from .interfaces import ObjectStorage
from .shards import ShardRef, decode_shard, extract_blocks

LOG = logging.getLogger("merger")

MERGED_BLOCKS_FIELD = "Blocks"


@dataclass(slots=True)
class MergedResult:
    job_id: str
    key: str
    shard_count: int
    block_count: int
    skipped_shards: list[str] = field(default_factory=list)


def _utc_stamp() -> str:
    return datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S%fZ")


class ResultMerger:
    """Concatenates shard content arrays in ascending shard-number order.

    Each merge writes to a fresh create-only key, so a repeated merge of the
    same job never overwrites a result a downstream stage may already be reading.
    """

    def __init__(
        self,
        storage: ObjectStorage,
        *,
        merged_prefix: str = "merged-ocr-output",
        blocks_field: str = "Blocks",
        stamp: Callable[[], str] = _utc_stamp,
        id_factory: Callable[[], str] = lambda: uuid.uuid4().hex,
    ) -> None:
        self._storage = storage
        self._prefix = merged_prefix.strip("/")
        self._blocks_field = blocks_field
        self._stamp = stamp
        self._id_factory = id_factory

    def merged_key(self, job_id: str) -> str:
        return f"{self._prefix}/{job_id}/{self._stamp()}-{self._id_factory()}.json"

    async def merge(self, job_id: str, shards: list[ShardRef], *, expected_total: int | None = None) -> MergedResult:
        ordered = sorted(shards, key=lambda ref: ref.sequence)
        if expected_total is not None and len(ordered) != expected_total:
            LOG.warning(
                "merge_shard_count_mismatch",
                extra={"job_id": job_id, "listed_count": len(ordered), "total_count": expected_total},
            )
        payloads = await asyncio.gather(*(self._storage.get_object(ref.key) for ref in ordered))

        blocks: list[Any] = []
        skipped: list[str] = []
        for ref, raw in zip(ordered, payloads):
            try:
                document = decode_shard(raw, key=ref.key)
                blocks.extend(extract_blocks(document, key=ref.key, field_path=self._blocks_field))
            except ProcessingError as exc:
                LOG.error(
                    "shard_parse_failed",
                    extra={"job_id": job_id, "key": ref.key, "sequence": ref.sequence, "error": str(exc)},
                )
                skipped.append(ref.key)

        body = {
            "jobId": job_id,
            MERGED_BLOCKS_FIELD: blocks,
            "shardCount": len(ordered),
            "sourceShards": [ref.key for ref in ordered if ref.key not in skipped],
        }
        key = self.merged_key(job_id)
        await self._storage.put_object(
            key,
            json.dumps(body, separators=(",", ":")).encode("utf-8"),
            content_type="application/json",
            create_only=True,
        )
        LOG.info(
            "merge_completed",
            extra={
                "job_id": job_id,
                "merged_key": key,
                "shard_count": len(ordered),
                "block_count": len(blocks),
                "skipped": len(skipped),
            },
        )
        return MergedResult(
            job_id=job_id,
            key=key,
            shard_count=len(ordered),
            block_count=len(blocks),
            skipped_shards=skipped,
        )


__all__ = ["MERGED_BLOCKS_FIELD", "MergedResult", "ResultMerger"]
