"""Encrypted persistence of the single credential set.

Only one remote organization is connected per installation, so the store
always works on the first ``connection_credentials`` row and creates it on
first save. All writes happen in one transaction per call.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional

from sqlalchemy.orm import Session

from booksync.models_sqlalchemy import SessionLocal
from booksync.models_sqlalchemy.models import ConnectionCredential
from booksync.utils.logger import logger


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes read back from backends without tz support."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


@dataclass
class StoredCredentials:
    client_id: Optional[str] = None
    client_secret: Optional[str] = None
    refresh_token: Optional[str] = None
    access_token: Optional[str] = None
    access_token_expires_at: Optional[datetime] = None
    datacenter: str = "us"
    organization_id: Optional[str] = None
    last_refreshed_at: Optional[datetime] = None
    refresh_error: Optional[str] = None

    @property
    def is_complete(self) -> bool:
        return bool(self.client_id and self.client_secret and self.refresh_token)


class CredentialStore:
    def __init__(self, session_factory: Callable[[], Session] = SessionLocal):
        self._session_factory = session_factory

    def _get_row(self, db: Session, create: bool = False) -> Optional[ConnectionCredential]:
        row = db.query(ConnectionCredential).order_by(ConnectionCredential.created_at.asc()).first()
        if row is None and create:
            row = ConnectionCredential()
            db.add(row)
        return row

    def load(self) -> StoredCredentials:
        db = self._session_factory()
        try:
            row = self._get_row(db)
            if row is None:
                return StoredCredentials()
            return StoredCredentials(
                client_id=row.client_id,
                client_secret=row.client_secret,
                refresh_token=row.refresh_token,
                access_token=row.access_token,
                access_token_expires_at=as_utc(row.access_token_expires_at),
                datacenter=row.datacenter or "us",
                organization_id=row.organization_id,
                last_refreshed_at=as_utc(row.last_refreshed_at),
                refresh_error=row.refresh_error,
            )
        finally:
            db.close()

    def save_credentials(
        self,
        client_id: str,
        client_secret: str,
        refresh_token: str,
        datacenter: Optional[str] = None,
    ) -> None:
        """Overwrite the credential set. Any cached access token is dropped."""
        db = self._session_factory()
        try:
            row = self._get_row(db, create=True)
            row.client_id = client_id
            row.client_secret = client_secret
            row.refresh_token = refresh_token
            if datacenter:
                row.datacenter = datacenter.strip().lower()
            row.access_token = None
            row.access_token_expires_at = None
            row.refresh_error = None
            db.commit()
            logger.info("[credential_store] credentials saved datacenter=%s", row.datacenter)
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def save_access_token(self, token: str, expires_at: datetime) -> None:
        db = self._session_factory()
        try:
            row = self._get_row(db, create=True)
            row.access_token = token
            row.access_token_expires_at = expires_at
            row.last_refreshed_at = _now_utc()
            row.refresh_error = None
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def record_refresh_error(self, message: str) -> None:
        db = self._session_factory()
        try:
            row = self._get_row(db)
            if row is None:
                return
            row.refresh_error = message
            row.access_token = None
            row.access_token_expires_at = None
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def clear_access_token(self) -> None:
        db = self._session_factory()
        try:
            row = self._get_row(db)
            if row is not None:
                row.access_token = None
                row.access_token_expires_at = None
                db.commit()
        finally:
            db.close()

    def clear_tokens(self) -> None:
        """Forget refresh and access tokens; client id/secret stay for reconnecting."""
        db = self._session_factory()
        try:
            row = self._get_row(db)
            if row is not None:
                row.refresh_token = None
                row.access_token = None
                row.access_token_expires_at = None
                db.commit()
                logger.info("[credential_store] tokens cleared")
        finally:
            db.close()

    def set_organization_id(self, organization_id: Optional[str]) -> None:
        db = self._session_factory()
        try:
            row = self._get_row(db, create=True)
            row.organization_id = organization_id
            db.commit()
        finally:
            db.close()
