"""Sequential bulk synchronization with progress events.

Orders are processed one at a time so a bulk run never has more than one
remote call in flight; the remote rate limit is the bottleneck, not local
concurrency. Cancellation is cooperative: it is checked between orders and
never interrupts the order currently being synced. Jobs live in an
in-process registry only while they run.
"""

from __future__ import annotations

import uuid
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Deque, Dict, Iterable, List, Optional

from booksync.services.order_store import OrderStore
from booksync.services.sync_engine import OrderSyncEngine
from booksync.utils.logger import logger


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class BulkJob:
    job_id: str
    queue: Deque[str]
    as_draft: bool
    total: int
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    cancelled: bool = False
    errors: List[Dict[str, Any]] = field(default_factory=list)
    started_at: datetime = field(default_factory=_now_utc)

    def summary(self) -> Dict[str, Any]:
        return {
            "job_id": self.job_id,
            "total": self.total,
            "processed": self.processed,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "cancelled": self.cancelled,
            "as_draft": self.as_draft,
        }


class BulkSyncService:
    def __init__(self, engine: OrderSyncEngine, order_store: OrderStore):
        self.engine = engine
        self.order_store = order_store
        self._jobs: Dict[str, BulkJob] = {}

    def create_job(self, order_ids: Iterable[str], as_draft: bool = False) -> BulkJob:
        unique: List[str] = []
        seen = set()
        for order_id in order_ids:
            key = str(order_id)
            if key not in seen:
                seen.add(key)
                unique.append(key)
        job = BulkJob(job_id=uuid.uuid4().hex, queue=deque(unique), as_draft=as_draft, total=len(unique))
        self._jobs[job.job_id] = job
        return job

    def create_job_for_range(
        self,
        date_from: Optional[datetime],
        date_to: Optional[datetime],
        statuses: Optional[List[str]] = None,
        as_draft: bool = False,
        limit: int = 500,
    ) -> BulkJob:
        order_ids = self.order_store.list_order_ids(date_from, date_to, statuses, limit)
        return self.create_job(order_ids, as_draft)

    def get_job(self, job_id: str) -> Optional[BulkJob]:
        return self._jobs.get(job_id)

    def cancel(self, job_id: str) -> bool:
        job = self._jobs.get(job_id)
        if job is None:
            return False
        job.cancelled = True
        logger.info("[bulk_sync] job %s cancellation requested", job_id)
        return True

    async def run(self, job: BulkJob) -> AsyncIterator[Dict[str, Any]]:
        logger.info("[bulk_sync] job %s started total=%s as_draft=%s", job.job_id, job.total, job.as_draft)
        yield {"event": "started", **job.summary()}
        try:
            while job.queue and not job.cancelled:
                order_id = job.queue.popleft()
                try:
                    result = await self.engine.sync_order(order_id, job.as_draft)
                    success = result.success
                    message = result.message
                    error = result.error
                except Exception as exc:
                    logger.error("[bulk_sync] order %s raised: %s", order_id, exc, exc_info=True)
                    success = False
                    message = error = str(exc)

                job.processed += 1
                if success:
                    job.succeeded += 1
                else:
                    job.failed += 1
                    job.errors.append({"order_id": order_id, "error": error})

                yield {
                    "event": "item",
                    "order_id": order_id,
                    "success": success,
                    "message": message,
                    **job.summary(),
                }

            final = "cancelled" if job.cancelled else "completed"
            logger.info("[bulk_sync] job %s %s %s", job.job_id, final, job.summary())
            yield {"event": final, **job.summary(), "errors": list(job.errors)}
        finally:
            self._jobs.pop(job.job_id, None)

    async def bulk_sync(self, order_ids: Iterable[str], as_draft: bool = False) -> AsyncIterator[Dict[str, Any]]:
        job = self.create_job(order_ids, as_draft)
        async for event in self.run(job):
            yield event
