"""
Idempotency guard for side-effecting request handlers.

``IdempotencyGuard.execute(fingerprint, body)`` runs ``body`` at most once per
fingerprint while its record lives:

1. A conditional put creates an INPROGRESS record. If a live record already
   exists, a COMPLETED one returns its stored result and an INPROGRESS one
   raises ``InProgressError``; ``body`` does not run.
2. ``body`` runs. If it raises, the INPROGRESS record is deleted so the
   caller can retry, and the exception propagates.
3. The result is stored as COMPLETED with the record's TTL and returned.

Expired records, and INPROGRESS records older than the in-progress timeout
(a crashed caller), count as absent.
"""

import hashlib
import logging
from collections.abc import Awaitable, Callable, Mapping
from typing import Any

from core.errors.exceptions import ConditionalCheckFailedError, InProgressError
from core.logging import log_exception
from core.utils import canonical_json
from workpipe.common import metrics
from workpipe.common.store.work_store import WorkStore
from workpipe.common.types import Clock, system_clock
from workpipe.schemas.orders import IdempotencyRecord, IdempotencyStatus

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 3600
DEFAULT_IN_PROGRESS_TIMEOUT_SECONDS = 60

ResultBody = Callable[[], Awaitable[dict[str, Any]]]


def compute_fingerprint(key: str, payload: Mapping[str, Any]) -> str:
    """Build ``"{key}#{sha256 of canonical JSON}"``.

    Key order in ``payload`` does not matter; any change in content does.

    Example:
        >>> compute_fingerprint("order-001", {"orderId": "order-001"})
        'order-001#4f1d...'
    """
    digest = hashlib.sha256(canonical_json(payload).encode("utf-8")).hexdigest()
    return f"{key}#{digest}"


class IdempotencyGuard:
    """Runs a coroutine once per fingerprint and replays its stored result."""

    def __init__(
        self,
        store: WorkStore,
        ttl_seconds: int = DEFAULT_TTL_SECONDS,
        in_progress_timeout_seconds: int = DEFAULT_IN_PROGRESS_TIMEOUT_SECONDS,
        clock: Clock = system_clock,
    ):
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be > 0")
        if in_progress_timeout_seconds <= 0:
            raise ValueError("in_progress_timeout_seconds must be > 0")

        self.store = store
        self.ttl_seconds = ttl_seconds
        self.in_progress_timeout_seconds = in_progress_timeout_seconds
        self._clock = clock

    async def execute(self, fingerprint: str, body: ResultBody) -> dict[str, Any]:
        """Run ``body`` once for ``fingerprint`` and return its JSON result.

        Raises:
            InProgressError: Another call with this fingerprint is in flight
            Exception: Whatever ``body`` raised (after the marker is cleared)
            PersistenceError: The store failed
        """
        now = self._clock()
        in_progress = IdempotencyRecord(
            fingerprint=fingerprint,
            status=IdempotencyStatus.INPROGRESS,
            expiration=int(now + self.ttl_seconds),
            in_progress_expiration=int(now + self.in_progress_timeout_seconds),
        )

        try:
            await self.store.put_idempotency_record_if_absent(in_progress)
        except ConditionalCheckFailedError as e:
            return self._handle_existing(fingerprint, e)

        try:
            result = await body()
        except Exception:
            await self._clear_in_progress(fingerprint)
            raise

        completed = in_progress.model_copy(
            update={
                "status": IdempotencyStatus.COMPLETED,
                "in_progress_expiration": None,
                "result": result,
            }
        )
        await self.store.update_idempotency_record(completed)
        metrics.record_idempotency_outcome("executed")

        logger.debug(
            "Stored idempotent result",
            extra={"fingerprint": fingerprint, "idempotency_status": "COMPLETED"},
        )
        return result

    def _handle_existing(
        self, fingerprint: str, error: ConditionalCheckFailedError
    ) -> dict[str, Any]:
        existing = error.current
        if isinstance(existing, IdempotencyRecord) and existing.status == IdempotencyStatus.COMPLETED:
            metrics.record_idempotency_outcome("replayed")
            logger.info(
                "Returning stored result for repeated request",
                extra={"fingerprint": fingerprint, "idempotency_status": "COMPLETED"},
            )
            return dict(existing.result or {})

        metrics.record_idempotency_outcome("in_progress")
        logger.warning(
            "Request with the same fingerprint is already in progress",
            extra={"fingerprint": fingerprint, "idempotency_status": "INPROGRESS"},
        )
        raise InProgressError(fingerprint, cause=error) from error

    async def _clear_in_progress(self, fingerprint: str) -> None:
        # A marker we cannot delete expires after the in-progress timeout
        try:
            await self.store.delete_idempotency_record(fingerprint)
        except Exception as e:
            log_exception(
                logger,
                e,
                "Failed to clear in-progress idempotency record",
                level=logging.WARNING,
                fingerprint=fingerprint,
            )
