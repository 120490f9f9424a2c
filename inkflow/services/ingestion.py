"""Shard ingestion and completeness detection.

Each shard-arrival notification is handled independently and statelessly:

1. Ignore keys whose final segment is not a shard number.
2. Derive the job id from the key; skip if it cannot be derived.
3. Look up the job token; a missing token means the job already finished
   (or is unknown) and the event is a no-op.
4. Re-list every shard present for the job and read the declared total from
   shard #1.
5. The job is complete once shards 1..total are all listed. Whichever event
   first observes that takes the completion claim, merges and signals.

Because every event re-lists and re-checks the full set, arrival order and
duplicate deliveries do not matter: the last shard to land always sees a
complete listing, whatever its number. A failure before the merge is safe to
retry.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum

from inkflow.errors import ProcessingError
from inkflow.logging_setup import job_context
from inkflow.models.events import ShardNotification
from inkflow.utils.logging_utils import structured_log

from .interfaces import MetricsClient, ObjectStorage
from .merger import ResultMerger
from .metrics import NullMetrics
from .object_storage import ObjectNotFoundError
from .shards import ShardRef, job_id_from_key, list_shards, read_total_count, sequence_of
from .signaler import CompletionSignaler, SignalResult
from .token_store import JobToken, JobTokenStore

LOG = logging.getLogger("ingestion")

SHARD_METADATA_ERROR = "ShardMetadataError"


class IngestionOutcome(str, Enum):
    SKIPPED_NOT_SHARD = "skipped_not_shard"
    SKIPPED_NO_JOB_ID = "skipped_no_job_id"
    SKIPPED_NO_TOKEN = "skipped_no_token"
    AWAITING_FIRST_SHARD = "awaiting_first_shard"
    INCOMPLETE = "incomplete"
    ALREADY_CLAIMED = "already_claimed"
    SIGNALED_SUCCESS = "signaled_success"
    SIGNALED_FAILURE = "signaled_failure"


@dataclass(slots=True)
class IngestionResult:
    outcome: IngestionOutcome
    key: str
    job_id: str | None = None
    sequence: int | None = None
    total_count: int | None = None
    merged_key: str | None = None
    signal: SignalResult | None = None

    def as_dict(self) -> dict:
        return {
            "outcome": self.outcome.value,
            "key": self.key,
            "jobId": self.job_id,
            "sequence": self.sequence,
            "totalCount": self.total_count,
            "mergedKey": self.merged_key,
        }


class ShardIngestionService:
    """Decides, per shard event, whether an OCR job has just completed."""

    def __init__(
        self,
        *,
        storage: ObjectStorage,
        token_store: JobTokenStore,
        merger: ResultMerger,
        signaler: CompletionSignaler,
        ocr_prefix: str = "ocr-output",
        total_field: str = "DocumentMetadata.Pages",
        fail_on_malformed_first_shard: bool = True,
        enable_completion_claim: bool = True,
        metrics: MetricsClient | None = None,
    ) -> None:
        self._storage = storage
        self._tokens = token_store
        self._merger = merger
        self._signaler = signaler
        self._prefix = ocr_prefix.strip("/")
        self._total_field = total_field
        self._fail_on_malformed = fail_on_malformed_first_shard
        self._claim_enabled = enable_completion_claim
        self._metrics = metrics or NullMetrics()

    async def handle(self, notification: ShardNotification) -> IngestionResult:
        started = time.perf_counter()
        result = await self._handle(notification)
        self._metrics.shard_event(result.outcome.value)
        self._metrics.observe_latency("ingest_seconds", time.perf_counter() - started, stage="ingest")
        return result

    async def _handle(self, notification: ShardNotification) -> IngestionResult:
        key = notification.key
        sequence = sequence_of(key)
        if sequence is None:
            return self._skip(IngestionOutcome.SKIPPED_NOT_SHARD, key, reason="not_a_shard_key")

        job_id = job_id_from_key(key, self._prefix)
        if job_id is None:
            structured_log(
                LOG,
                logging.WARNING,
                "shard_ingest_skipped",
                key=key,
                reason="job_id_not_found",
            )
            return IngestionResult(IngestionOutcome.SKIPPED_NO_JOB_ID, key, sequence=sequence)

        with job_context(job_id):
            token = await asyncio.to_thread(self._tokens.get, job_id)
            if token is None:
                return self._skip(
                    IngestionOutcome.SKIPPED_NO_TOKEN,
                    key,
                    reason="no_job_token",
                    job_id=job_id,
                    sequence=sequence,
                )
            return await self._evaluate(notification, token, sequence)

    async def _evaluate(self, notification: ShardNotification, token: JobToken, sequence: int) -> IngestionResult:
        key = notification.key
        job_id = token.job_id
        shards = await list_shards(self._storage, self._prefix, job_id)
        first = next((ref for ref in shards if ref.sequence == 1), None)
        if first is None:
            return self._skip(
                IngestionOutcome.AWAITING_FIRST_SHARD,
                key,
                reason="first_shard_missing",
                job_id=job_id,
                sequence=sequence,
            )

        try:
            raw = await self._storage.get_object(first.key)
        except ObjectNotFoundError:
            return self._skip(
                IngestionOutcome.AWAITING_FIRST_SHARD,
                key,
                reason="first_shard_missing",
                job_id=job_id,
                sequence=sequence,
            )
        try:
            total = read_total_count(raw, key=first.key, field_path=self._total_field)
        except ProcessingError as exc:
            return await self._malformed_first_shard(notification, token, sequence, exc)

        present = {ref.sequence for ref in shards}
        missing = [number for number in range(1, total + 1) if number not in present]
        if missing:
            structured_log(
                LOG,
                logging.INFO,
                "shard_ingest_incomplete",
                job_id=job_id,
                key=key,
                sequence=sequence,
                total_count=total,
                listed_count=len(present),
                missing_count=len(missing),
            )
            return IngestionResult(
                IngestionOutcome.INCOMPLETE, key, job_id=job_id, sequence=sequence, total_count=total
            )

        if not await self._claim(notification, job_id):
            return self._skip(
                IngestionOutcome.ALREADY_CLAIMED,
                key,
                reason="completion_claimed_elsewhere",
                job_id=job_id,
                sequence=sequence,
            )
        expected = [ref for ref in shards if ref.sequence <= total]
        if len(expected) != len(shards):
            LOG.warning(
                "shards_beyond_declared_total",
                extra={"job_id": job_id, "total_count": total, "listed_count": len(shards)},
            )
        return await self._complete(notification, token, expected, sequence, total)

    async def _complete(
        self,
        notification: ShardNotification,
        token: JobToken,
        shards: list[ShardRef],
        sequence: int,
        total: int,
    ) -> IngestionResult:
        merged = await self._merger.merge(token.job_id, shards, expected_total=total)
        payload = {
            "jobId": token.job_id,
            "bucket": notification.bucket,
            "mergedResultKey": merged.key,
            "shardCount": merged.shard_count,
            "blockCount": merged.block_count,
        }
        signal = await self._signaler.signal_success(token, payload)
        outcome = IngestionOutcome.SIGNALED_SUCCESS if signal.success_sent else IngestionOutcome.SIGNALED_FAILURE
        structured_log(
            LOG,
            logging.INFO,
            "shard_ingest_completed",
            job_id=token.job_id,
            key=notification.key,
            outcome=outcome.value,
            merged_key=merged.key,
            shard_count=merged.shard_count,
        )
        return IngestionResult(
            outcome,
            notification.key,
            job_id=token.job_id,
            sequence=sequence,
            total_count=total,
            merged_key=merged.key,
            signal=signal,
        )

    async def _malformed_first_shard(
        self,
        notification: ShardNotification,
        token: JobToken,
        sequence: int,
        exc: ProcessingError,
    ) -> IngestionResult:
        if not self._fail_on_malformed:
            return self._skip(
                IngestionOutcome.AWAITING_FIRST_SHARD,
                notification.key,
                reason="first_shard_malformed",
                job_id=token.job_id,
                sequence=sequence,
            )
        if not await self._claim(notification, token.job_id):
            return self._skip(
                IngestionOutcome.ALREADY_CLAIMED,
                notification.key,
                reason="completion_claimed_elsewhere",
                job_id=token.job_id,
                sequence=sequence,
            )
        LOG.error(
            "first_shard_malformed",
            extra={"job_id": token.job_id, "key": notification.key, "error": str(exc)},
        )
        signal = await self._signaler.signal_failure(token, SHARD_METADATA_ERROR, str(exc))
        return IngestionResult(
            IngestionOutcome.SIGNALED_FAILURE,
            notification.key,
            job_id=token.job_id,
            sequence=sequence,
            signal=signal,
        )

    async def _claim(self, notification: ShardNotification, job_id: str) -> bool:
        if not self._claim_enabled:
            return True
        return await asyncio.to_thread(self._tokens.claim_completion, job_id, notification.claimant)

    def _skip(
        self,
        outcome: IngestionOutcome,
        key: str,
        *,
        reason: str,
        job_id: str | None = None,
        sequence: int | None = None,
    ) -> IngestionResult:
        structured_log(
            LOG,
            logging.INFO,
            "shard_ingest_skipped",
            key=key,
            job_id=job_id,
            sequence=sequence,
            reason=reason,
            outcome=outcome.value,
        )
        return IngestionResult(outcome, key, job_id=job_id, sequence=sequence)


__all__ = [
    "IngestionOutcome",
    "IngestionResult",
    "ShardIngestionService",
    "SHARD_METADATA_ERROR",
]
