from __future__ import annotations

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional, TypeVar

from .errors import DuplicateJob
from .models import JobRecord


logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_DEDUP_WINDOW = timedelta(hours=24)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobQueue:
    """
    Single pipeline for every browser job.

    All tasks run on one worker thread, one at a time, in submission order. A task that raises does not
    block the next one; its exception is delivered through the returned Future only.

    QR jobs additionally go through a dedup registry keyed by order id and memo. Records expire after
    `dedup_window`; expired records are swept inline on each registration attempt.
    """

    def __init__(
        self,
        *,
        dedup_window: timedelta = DEFAULT_DEDUP_WINDOW,
        clock: Optional[Callable[[], datetime]] = None,
        thread_name_prefix: str = "portal-worker",
    ) -> None:
        if dedup_window <= timedelta(0):
            raise ValueError("dedup_window must be positive")
        self.dedup_window = dedup_window
        self._clock = clock or _utcnow
        self._records: dict[str, JobRecord] = {}
        self._registry_lock = threading.Lock()
        # max_workers=1 gives FIFO + no overlap; Playwright's sync API also requires a single thread.
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix=thread_name_prefix)

    def _sweep_expired(self, now: datetime) -> None:
        expired = [k for k, rec in self._records.items() if rec.is_expired(now)]
        for k in expired:
            del self._records[k]
        if expired:
            logger.debug("Swept %d expired job record(s).", len(expired))

    def _is_duplicate(self, key: str, secondary_key: str) -> bool:
        if key in self._records:
            return True
        return any(rec.secondary_key == secondary_key for rec in self._records.values())

    def _register_locked(self, key: str, secondary_key: str) -> bool:
        now = self._clock()
        self._sweep_expired(now)
        if self._is_duplicate(key, secondary_key):
            return False
        self._records[key] = JobRecord(
            business_key=key,
            secondary_key=secondary_key,
            registered_at=now,
            expires_at=now + self.dedup_window,
        )
        return True

    def try_register(self, key: str, secondary_key: str) -> bool:
        """
        Register a job for (key, secondary_key). Returns False if an unexpired record already uses either.
        """
        with self._registry_lock:
            return self._register_locked(key, secondary_key)

    def enqueue(self, task: Callable[[], T]) -> "Future[T]":
        return self._executor.submit(task)

    def enqueue_exclusive(self, key: str, secondary_key: str, task: Callable[[], T]) -> "Future[T]":
        # Registration and submission happen under one lock so two callers cannot both pass the check
        # and then land in the pipeline in an order different from their registration order.
        with self._registry_lock:
            if not self._register_locked(key, secondary_key):
                logger.warning("Duplicate QR job detected for order_id=%s or details=%s", key, secondary_key)
                raise DuplicateJob(key, secondary_key)
            try:
                future = self._executor.submit(task)
            except RuntimeError:
                # Nothing was scheduled (queue shut down), so the key must stay available.
                del self._records[key]
                raise

        logger.info("QR job registered: order_id=%s details=%s", key, secondary_key)
        return future

    def pending_records(self) -> list[JobRecord]:
        with self._registry_lock:
            return sorted(self._records.values(), key=lambda r: r.registered_at)

    def shutdown(self, *, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)
