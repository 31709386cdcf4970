"""Automatic re-attempts of failed order syncs.

Invoked once per tick by an external scheduler (see
``workers/retry_worker.py``). Only failures classified as retryable
(network, rate limit) are picked up; fatal ones wait for an operator.

Delay before the next retry is ``backoff_minutes * 2 ** retry_count`` counted
from the last attempt. With ``mode = max_retries`` an order that has used up
``max_count`` retries is marked exhausted and reported once.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional

from booksync.config import settings
from booksync.models.sync import RetryPolicy, SyncState
from booksync.services.connection_health import ConnectionHealth
from booksync.services.notifications import NotificationQueue
from booksync.services.sync_engine import OrderSyncEngine
from booksync.services.sync_settings import SyncSettingsService
from booksync.services.sync_state import SyncStateRepository
from booksync.services.token_manager import TokenManager
from booksync.utils.logger import logger


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def retry_delay(policy: RetryPolicy, retry_count: int) -> timedelta:
    return timedelta(minutes=policy.backoff_minutes * (2 ** max(0, retry_count)))


def next_retry_at(policy: RetryPolicy, state: SyncState) -> Optional[datetime]:
    if state.last_attempt_at is None:
        return None
    return state.last_attempt_at + retry_delay(policy, state.retry_count)


@dataclass
class RetryTickResult:
    attempted: int = 0
    succeeded: int = 0
    failed: int = 0
    waiting: int = 0
    exhausted: int = 0
    skipped_reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "attempted": self.attempted,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "waiting": self.waiting,
            "exhausted": self.exhausted,
            "skipped_reason": self.skipped_reason,
        }


class RetryScheduler:
    def __init__(
        self,
        *,
        engine: OrderSyncEngine,
        state_repo: SyncStateRepository,
        settings_service: SyncSettingsService,
        notifications: NotificationQueue,
        token_manager: TokenManager,
        health: ConnectionHealth,
        batch_limit: Optional[int] = None,
        clock: Callable[[], datetime] = _now_utc,
    ):
        self.engine = engine
        self.state_repo = state_repo
        self.settings_service = settings_service
        self.notifications = notifications
        self.token_manager = token_manager
        self.health = health
        self.batch_limit = batch_limit or settings.RETRY_BATCH_LIMIT
        self._clock = clock

    async def run_tick(self) -> RetryTickResult:
        result = RetryTickResult()
        try:
            await self._retry_failed(result)
        finally:
            self.notifications.flush_digest()
        logger.info("[retry_scheduler] tick done %s", result.to_dict())
        return result

    async def _retry_failed(self, result: RetryTickResult) -> None:
        policy = self.settings_service.get_retry_policy()
        if policy.mode == "manual":
            result.skipped_reason = "manual_mode"
            return
        if not self.token_manager.has_credentials():
            result.skipped_reason = "not_configured"
            return
        if not await self.health.is_healthy():
            result.skipped_reason = "connection_unhealthy"
            return

        now = self._clock()
        # Waiting rows do not use up the batch, so look further than one batch.
        candidates = self.state_repo.list_retry_candidates(limit=self.batch_limit * 10)
        for state in candidates:
            if result.attempted >= self.batch_limit:
                break

            if policy.mode == "max_retries" and state.retry_count >= policy.max_count:
                self._give_up(state, policy)
                result.exhausted += 1
                continue

            due = next_retry_at(policy, state)
            if due is not None and now < due:
                result.waiting += 1
                continue

            result.attempted += 1
            outcome = await self.engine.retry_order(state.order_id)
            if outcome.success:
                result.succeeded += 1
            else:
                result.failed += 1

    def _give_up(self, state: SyncState, policy: RetryPolicy) -> None:
        self.state_repo.mark_exhausted(state.order_id)
        logger.warning(
            "[retry_scheduler] order %s gave up after %s retries: %s",
            state.order_id, state.retry_count, state.last_error,
        )
        self.notifications.queue(
            "error",
            f"Order {state.order_id} permanently failed",
            f"Gave up after {policy.max_count} automatic retries. Last error: {state.last_error}",
            {"order_id": state.order_id, "retry_count": state.retry_count},
        )
