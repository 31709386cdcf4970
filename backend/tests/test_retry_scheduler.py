from datetime import datetime, timedelta, timezone

import pytest

from booksync.models.sync import GeneralSettings, RetryPolicy, SyncStatus
from booksync.services.errors import NetworkError
from booksync.services.retry_scheduler import RetryScheduler, retry_delay


class StubTokens:
    def __init__(self, configured=True):
        self.configured = configured

    def has_credentials(self):
        return self.configured


class StubHealth:
    def __init__(self, healthy=True):
        self.healthy = healthy
        self.checks = 0

    async def is_healthy(self):
        self.checks += 1
        return self.healthy


class Clock:
    def __init__(self):
        self.now = datetime.now(timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def health():
    return StubHealth()


@pytest.fixture
def tokens():
    return StubTokens()


@pytest.fixture
def scheduler(engine, state_repo, settings_service, notifications, tokens, health, clock):
    return RetryScheduler(
        engine=engine,
        state_repo=state_repo,
        settings_service=settings_service,
        notifications=notifications,
        token_manager=tokens,
        health=health,
        batch_limit=10,
        clock=clock,
    )


def test_backoff_doubles_per_retry():
    policy = RetryPolicy(backoff_minutes=15)

    delays = [retry_delay(policy, n) for n in range(4)]

    assert delays == [timedelta(minutes=m) for m in (15, 30, 60, 120)]


@pytest.mark.asyncio
async def test_retry_waits_for_backoff_then_recovers(scheduler, engine, books, make_order, state_repo, clock):
    make_order("1001")
    books.fail["invoices.create"] = NetworkError("connection reset")
    await engine.sync_order("1001")

    clock.advance(minutes=10)
    early = await scheduler.run_tick()
    assert early.attempted == 0
    assert early.waiting == 1

    del books.fail["invoices.create"]
    clock.advance(minutes=6)
    due = await scheduler.run_tick()

    assert due.attempted == 1
    assert due.succeeded == 1
    state = state_repo.get("1001")
    assert state.status is SyncStatus.submitted
    assert state.retry_count == 0
    assert books.count("invoices.create") == 2


@pytest.mark.asyncio
async def test_failed_retry_doubles_the_wait(scheduler, engine, books, make_order, state_repo, clock):
    make_order("1002")
    books.fail["invoices.create"] = NetworkError("timeout")
    await engine.sync_order("1002")

    clock.advance(minutes=16)
    first = await scheduler.run_tick()
    assert first.failed == 1
    assert state_repo.get("1002").retry_count == 1

    clock.advance(minutes=10)
    second = await scheduler.run_tick()
    assert second.waiting == 1
    assert second.attempted == 0


@pytest.mark.asyncio
async def test_manual_mode_skips_everything(scheduler, engine, books, make_order, settings_service, health, clock):
    settings_service.set_retry_policy(RetryPolicy(mode="manual"))
    make_order("1003")
    books.fail["invoices.create"] = NetworkError("timeout")
    await engine.sync_order("1003")
    calls_before = len(books.calls)

    clock.advance(days=1)
    result = await scheduler.run_tick()

    assert result.skipped_reason == "manual_mode"
    assert result.attempted == 0
    assert len(books.calls) == calls_before
    assert health.checks == 0


@pytest.mark.asyncio
async def test_skips_when_not_configured_or_unhealthy(scheduler, tokens, health):
    tokens.configured = False
    assert (await scheduler.run_tick()).skipped_reason == "not_configured"

    tokens.configured = True
    health.healthy = False
    assert (await scheduler.run_tick()).skipped_reason == "connection_unhealthy"


@pytest.mark.asyncio
async def test_fatal_errors_are_never_retried(scheduler, engine, books, make_order, state_repo, clock):
    books.contacts.append({
        "contact_id": "c-aed",
        "contact_name": "Gulf Trading",
        "email": "buyer@example.com",
        "currency_code": "AED",
    })
    make_order("1234", email="buyer@example.com")
    await engine.sync_order("1234")

    clock.advance(days=1)
    result = await scheduler.run_tick()

    assert result.attempted == 0
    assert state_repo.get("1234").retry_count == 0


@pytest.mark.asyncio
async def test_gives_up_after_max_retries(
    scheduler, engine, books, make_order, settings_service, state_repo, clock, sent_notifications
):
    settings_service.set_retry_policy(RetryPolicy(mode="max_retries", max_count=2, backoff_minutes=15))
    make_order("1004")
    books.fail["invoices.create"] = NetworkError("still down")
    await engine.sync_order("1004")

    for _ in range(2):
        clock.advance(days=1)
        assert (await scheduler.run_tick()).failed == 1
    assert state_repo.get("1004").retry_count == 2

    clock.advance(days=1)
    gave_up = await scheduler.run_tick()
    clock.advance(days=1)
    after = await scheduler.run_tick()

    assert gave_up.exhausted == 1
    assert gave_up.attempted == 0
    assert after.exhausted == 0
    assert after.attempted == 0
    assert state_repo.get("1004").retry_exhausted is True
    permanent = [n for n in sent_notifications if "permanently failed" in n["title"]]
    assert len(permanent) == 1


@pytest.mark.asyncio
async def test_indefinite_mode_keeps_retrying(scheduler, engine, books, make_order, settings_service, state_repo, clock):
    settings_service.set_retry_policy(RetryPolicy(mode="indefinite", max_count=1, backoff_minutes=1))
    make_order("1005")
    books.fail["invoices.create"] = NetworkError("down")
    await engine.sync_order("1005")

    for _ in range(3):
        clock.advance(days=1)
        assert (await scheduler.run_tick()).attempted == 1

    state = state_repo.get("1005")
    assert state.retry_count == 3
    assert state.retry_exhausted is False


@pytest.mark.asyncio
async def test_batch_limit_caps_attempts(engine, state_repo, settings_service, notifications, books, make_order, clock):
    scheduler = RetryScheduler(
        engine=engine,
        state_repo=state_repo,
        settings_service=settings_service,
        notifications=notifications,
        token_manager=StubTokens(),
        health=StubHealth(),
        batch_limit=2,
        clock=clock,
    )
    books.fail["invoices.create"] = NetworkError("down")
    for order_id in ("a1", "a2", "a3"):
        make_order(order_id)
        await engine.sync_order(order_id)

    clock.advance(days=1)
    result = await scheduler.run_tick()

    assert result.attempted == 2


@pytest.mark.asyncio
async def test_failed_manual_payment_is_retried_as_a_payment(
    scheduler, engine, books, make_order, state_repo, settings_service, clock
):
    settings_service.set_general(GeneralSettings(auto_apply_payment=False))
    make_order("9001", paid=True)
    await engine.sync_order("9001")
    assert state_repo.get("9001").status is SyncStatus.submitted

    books.fail["customerpayments.create"] = NetworkError("connection reset")
    failed = await engine.apply_payment("9001")
    assert failed.success is False
    assert state_repo.get("9001").last_operation == "apply_payment"

    del books.fail["customerpayments.create"]
    clock.advance(minutes=16)
    tick = await scheduler.run_tick()

    assert tick.attempted == 1
    assert tick.succeeded == 1
    state = state_repo.get("9001")
    assert state.payment_id is not None
    assert state.status is SyncStatus.paid
    assert state.last_error is None
    assert books.count("customerpayments.create") == 2
    assert books.count("invoices.create") == 1


@pytest.mark.asyncio
async def test_payment_still_failing_keeps_the_error(
    scheduler, engine, books, make_order, state_repo, settings_service, clock
):
    settings_service.set_general(GeneralSettings(auto_apply_payment=False))
    make_order("9002", paid=True)
    await engine.sync_order("9002")
    books.fail["customerpayments.create"] = NetworkError("connection reset")
    await engine.apply_payment("9002")

    clock.advance(minutes=16)
    tick = await scheduler.run_tick()

    assert tick.failed == 1
    state = state_repo.get("9002")
    assert state.status is SyncStatus.error
    assert "connection reset" in state.last_error
    assert state.retry_count == 1
    assert state.payment_id is None
