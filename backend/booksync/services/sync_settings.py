from __future__ import annotations

from typing import Callable, Type, TypeVar

from pydantic import BaseModel
from sqlalchemy.orm import Session

from booksync.models.sync import GeneralSettings, NotificationSettings, RetryPolicy, SyncTriggers
from booksync.models_sqlalchemy import SessionLocal
from booksync.models_sqlalchemy.models import SyncSetting
from booksync.utils.logger import logger


T = TypeVar("T", bound=BaseModel)

RETRY_POLICY_KEY = "retry_policy"
TRIGGERS_KEY = "triggers"
GENERAL_KEY = "general"
NOTIFICATIONS_KEY = "notifications"
LAST_DIGEST_KEY = "last_digest_sent_at"


class SyncSettingsService:
    """Runtime options stored as JSON rows; missing keys fall back to model defaults."""

    def __init__(self, session_factory: Callable[[], Session] = SessionLocal):
        self._session_factory = session_factory

    def _get(self, key: str, model: Type[T]) -> T:
        db = self._session_factory()
        try:
            row = db.query(SyncSetting).filter(SyncSetting.key == key).first()
            if row is None or not isinstance(row.value, dict):
                return model()
            return model.model_validate(row.value)
        finally:
            db.close()

    def _set(self, key: str, value: dict) -> None:
        db = self._session_factory()
        try:
            row = db.query(SyncSetting).filter(SyncSetting.key == key).first()
            if row is None:
                row = SyncSetting(key=key, value=value)
                db.add(row)
            else:
                row.value = value
            db.commit()
            logger.info("[sync_settings] updated %s", key)
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def get_retry_policy(self) -> RetryPolicy:
        return self._get(RETRY_POLICY_KEY, RetryPolicy)

    def set_retry_policy(self, policy: RetryPolicy) -> None:
        self._set(RETRY_POLICY_KEY, policy.model_dump())

    def get_triggers(self) -> SyncTriggers:
        return self._get(TRIGGERS_KEY, SyncTriggers)

    def set_triggers(self, triggers: SyncTriggers) -> None:
        self._set(TRIGGERS_KEY, triggers.model_dump())

    def get_general(self) -> GeneralSettings:
        return self._get(GENERAL_KEY, GeneralSettings)

    def set_general(self, general: GeneralSettings) -> None:
        self._set(GENERAL_KEY, general.model_dump())

    def get_notifications(self) -> NotificationSettings:
        return self._get(NOTIFICATIONS_KEY, NotificationSettings)

    def set_notifications(self, notifications: NotificationSettings) -> None:
        self._set(NOTIFICATIONS_KEY, notifications.model_dump())

    def get_value(self, key: str):
        db = self._session_factory()
        try:
            row = db.query(SyncSetting).filter(SyncSetting.key == key).first()
            if row is None or not isinstance(row.value, dict):
                return None
            return row.value.get("value")
        finally:
            db.close()

    def set_value(self, key: str, value) -> None:
        self._set(key, {"value": value})
