import pytest

from booksync.services.bulk_sync import BulkSyncService


@pytest.fixture
def bulk(engine, order_store):
    return BulkSyncService(engine, order_store)


async def _collect(bulk, job):
    return [event async for event in bulk.run(job)]


@pytest.mark.asyncio
async def test_bulk_counts_add_up_and_failures_are_isolated(bulk, books, make_order):
    books.contacts.append({
        "contact_id": "c-aed",
        "contact_name": "Gulf Trading",
        "email": "buyer@example.com",
        "currency_code": "AED",
    })
    make_order("1")
    make_order("2", email="buyer@example.com")
    make_order("3")
    job = bulk.create_job(["1", "2", "3", "1"])

    events = await _collect(bulk, job)

    assert [e["event"] for e in events] == ["started", "item", "item", "item", "completed"]
    final = events[-1]
    assert final["total"] == 3
    assert final["processed"] == final["succeeded"] + final["failed"] == 3
    assert final["failed"] == 1
    assert final["errors"][0]["order_id"] == "2"
    assert books.count("invoices.create") == 2
    assert bulk.get_job(job.job_id) is None


@pytest.mark.asyncio
async def test_bulk_cancel_stops_between_orders(bulk, make_order):
    for order_id in ("10", "11", "12", "13"):
        make_order(order_id)
    job = bulk.create_job(["10", "11", "12", "13"], as_draft=True)

    events = []
    async for event in bulk.run(job):
        events.append(event)
        if event["event"] == "item":
            assert bulk.cancel(job.job_id) is True

    final = events[-1]
    assert final["event"] == "cancelled"
    assert final["processed"] == 1
    assert final["processed"] <= final["total"]
    assert final["processed"] == final["succeeded"] + final["failed"]
    assert bulk.cancel(job.job_id) is False


@pytest.mark.asyncio
async def test_bulk_by_date_range(bulk, make_order, state_repo):
    make_order("20")
    make_order("21")

    job = bulk.create_job_for_range(None, None, statuses=["processing"], as_draft=True)
    events = await _collect(bulk, job)

    assert events[-1]["succeeded"] == 2
    assert state_repo.get("20").invoice_id
    assert state_repo.get("21").invoice_id


@pytest.mark.asyncio
async def test_bulk_unknown_order_counts_as_failure(bulk):
    events = [event async for event in bulk.bulk_sync(["nope"])]

    assert events[-1]["event"] == "completed"
    assert events[-1]["failed"] == 1
    assert events[1]["success"] is False
