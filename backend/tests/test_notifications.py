from datetime import datetime, timedelta, timezone

from booksync.models.sync import NotificationSettings, SyncAction, SyncTriggers


def test_immediate_delivery(notifications, sent_notifications):
    notifications.queue("error", "Order #1 failed", "boom", {"order_id": "1"})

    assert len(sent_notifications) == 1
    assert sent_notifications[0]["context"] == {"order_id": "1"}
    assert notifications.pending() == []


def test_disabled_types_are_dropped(notifications, settings_service, sent_notifications):
    settings_service.set_notifications(NotificationSettings(enabled_types=["error"]))

    assert notifications.queue("success", "ok", "fine") is None
    assert sent_notifications == []


def test_digest_groups_by_type_and_respects_interval(notifications, settings_service, sent_notifications):
    settings_service.set_notifications(NotificationSettings(delivery="digest", digest_interval_minutes=5))
    notifications.queue("error", "a", "first")
    notifications.queue("warning", "b", "second")
    notifications.queue("error", "c", "third")
    assert sent_notifications == []
    assert len(notifications.pending()) == 3

    now = datetime.now(timezone.utc)
    assert notifications.flush_digest(now=now) == 3

    digest = sent_notifications[0]
    assert digest["kind"] == "digest"
    assert [n["title"] for n in digest["groups"]["error"]] == ["a", "c"]
    assert len(digest["groups"]["warning"]) == 1

    notifications.queue("info", "d", "later")
    assert notifications.flush_digest(now=now + timedelta(minutes=1)) == 0
    assert notifications.flush_digest(now=now + timedelta(minutes=1), force=True) == 1
    assert notifications.pending() == []


def test_triggers_resolve_store_statuses():
    triggers = SyncTriggers()

    assert triggers.resolve("wc-processing") is SyncAction.CREATE_DRAFT
    assert triggers.resolve("Completed") is SyncAction.CREATE_AND_SUBMIT
    assert triggers.resolve("refunded") is SyncAction.CREATE_CREDIT_NOTE
    assert triggers.resolve("on-hold") is None

    disabled = SyncTriggers(sync_draft=None)
    assert disabled.resolve("processing") is None


def test_cancelled_status_voids_instead_of_resolving_an_action():
    triggers = SyncTriggers()

    assert triggers.voids_invoice("wc-cancelled") is True
    assert triggers.resolve("cancelled") is None
    assert triggers.voids_invoice("completed") is False
    assert SyncTriggers(void_invoice=None).voids_invoice("cancelled") is False
