"""Operator notifications about sync outcomes.

Notifications are best-effort: a failure to store or deliver one is logged
and never breaks the sync that produced it. Rendering (email templates) is
out of scope; a *sender* callable receives either one notification or a
digest grouped by type.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional

from sqlalchemy.orm import Session

from booksync.models_sqlalchemy import SessionLocal
from booksync.models_sqlalchemy.models import SyncNotification
from booksync.services.credential_store import as_utc
from booksync.services.sync_settings import LAST_DIGEST_KEY, SyncSettingsService
from booksync.utils.logger import logger


NOTIFICATION_TYPES = ("error", "warning", "success", "info")

Sender = Callable[[Dict[str, Any]], None]


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def log_sender(message: Dict[str, Any]) -> None:
    if message.get("kind") == "digest":
        counts = {t: len(items) for t, items in message["groups"].items()}
        logger.info("[notifications] digest sent counts=%s", counts)
    else:
        logger.info("[notifications] %s: %s - %s", message["type"], message["title"], message["message"])


def _as_message(row: SyncNotification) -> Dict[str, Any]:
    return {
        "kind": "single",
        "id": row.id,
        "type": row.type,
        "title": row.title,
        "message": row.message,
        "context": row.context or {},
        "created_at": as_utc(row.created_at).isoformat() if row.created_at else None,
    }


class NotificationQueue:
    def __init__(
        self,
        settings_service: SyncSettingsService,
        session_factory: Callable[[], Session] = SessionLocal,
        sender: Sender = log_sender,
    ):
        self.settings_service = settings_service
        self._session_factory = session_factory
        self.sender = sender

    def queue(
        self,
        type: str,
        title: str,
        message: str,
        context: Optional[Mapping[str, Any]] = None,
    ) -> Optional[str]:
        """Store a notification and deliver it now unless digests are enabled."""
        if type not in NOTIFICATION_TYPES:
            raise ValueError(f"Unknown notification type: {type}")

        prefs = self.settings_service.get_notifications()
        if type not in prefs.enabled_types:
            return None

        db = self._session_factory()
        try:
            row = SyncNotification(type=type, title=title, message=message, context=dict(context or {}))
            db.add(row)
            db.commit()
            if prefs.delivery == "immediate":
                self.sender(_as_message(row))
                row.delivered_at = _now_utc()
                db.commit()
            return row.id
        except Exception as exc:
            logger.error("[notifications] failed to queue %s notification: %s", type, exc)
            db.rollback()
            return None
        finally:
            db.close()

    def pending(self) -> List[Dict[str, Any]]:
        db = self._session_factory()
        try:
            rows = (
                db.query(SyncNotification)
                .filter(SyncNotification.delivered_at.is_(None))
                .order_by(SyncNotification.created_at.asc())
                .all()
            )
            return [_as_message(r) for r in rows]
        finally:
            db.close()

    def flush_digest(self, now: Optional[datetime] = None, force: bool = False) -> int:
        """Send undelivered notifications as one digest once the interval has passed.

        Returns the number of notifications delivered.
        """
        now = now or _now_utc()
        prefs = self.settings_service.get_notifications()
        last_sent_raw = self.settings_service.get_value(LAST_DIGEST_KEY)
        if last_sent_raw and not force:
            last_sent = as_utc(datetime.fromisoformat(last_sent_raw))
            if now - last_sent < timedelta(minutes=prefs.digest_interval_minutes):
                return 0

        db = self._session_factory()
        try:
            rows = (
                db.query(SyncNotification)
                .filter(SyncNotification.delivered_at.is_(None))
                .order_by(SyncNotification.created_at.asc())
                .all()
            )
            if not rows:
                return 0

            groups: Dict[str, List[Dict[str, Any]]] = {t: [] for t in NOTIFICATION_TYPES}
            for row in rows:
                groups.setdefault(row.type, []).append(_as_message(row))
            self.sender({"kind": "digest", "groups": groups, "sent_at": now.isoformat()})

            for row in rows:
                row.delivered_at = now
            db.commit()
        except Exception as exc:
            logger.error("[notifications] digest delivery failed: %s", exc)
            db.rollback()
            return 0
        finally:
            db.close()

        self.settings_service.set_value(LAST_DIGEST_KEY, now.isoformat())
        return len(rows)
