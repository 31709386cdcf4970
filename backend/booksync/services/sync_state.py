"""Persistence helpers for per-order sync state.

Only :class:`OrderSyncEngine` writes through these helpers. The reported
status is derived: an error flag wins, then refunds, then the invoice phase.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.orm import Session

from booksync.models.sync import RefundEntryResponse, SyncAction, SyncState, SyncStatus
from booksync.models_sqlalchemy import SessionLocal
from booksync.models_sqlalchemy.models import OrderRefundEntry, OrderSyncState
from booksync.services.credential_store import as_utc


PHASE_ORDER = [SyncStatus.unsynced, SyncStatus.draft, SyncStatus.submitted, SyncStatus.paid]

_ERROR_MAX_LEN = 2000


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def derive_status(row: OrderSyncState) -> SyncStatus:
    if row.last_error:
        return SyncStatus.error
    if row.refund_entries:
        return SyncStatus.refunded
    return SyncStatus(row.phase or SyncStatus.unsynced.value)


def to_sync_state(row: Optional[OrderSyncState], order_id: str) -> SyncState:
    if row is None:
        return SyncState(order_id=str(order_id), status=SyncStatus.unsynced, phase=SyncStatus.unsynced)
    return SyncState(
        order_id=row.order_id,
        status=derive_status(row),
        phase=SyncStatus(row.phase or SyncStatus.unsynced.value),
        invoice_id=row.invoice_id,
        invoice_number=row.invoice_number,
        contact_id=row.contact_id,
        contact_name=row.contact_name,
        payment_id=row.payment_id,
        payment_number=row.payment_number,
        invoice_voided_at=as_utc(row.invoice_voided_at),
        refund_entries=[RefundEntryResponse.model_validate(e) for e in row.refund_entries],
        last_action=SyncAction(row.last_action) if row.last_action else None,
        last_operation=row.last_operation or row.last_action,
        last_error=row.last_error,
        error_retryable=row.error_retryable,
        last_attempt_at=as_utc(row.last_attempt_at),
        last_synced_at=as_utc(row.last_synced_at),
        retry_count=row.retry_count or 0,
        retry_exhausted=bool(row.retry_exhausted),
    )


def advance_phase(current: Optional[str], target: SyncStatus) -> str:
    """Phases only move forward; a late "draft" result never demotes a paid order."""
    current_status = SyncStatus(current or SyncStatus.unsynced.value)
    if PHASE_ORDER.index(target) > PHASE_ORDER.index(current_status):
        return target.value
    return current_status.value


class SyncStateRepository:
    def __init__(self, session_factory: Callable[[], Session] = SessionLocal):
        self._session_factory = session_factory

    def _get_or_create(self, db: Session, order_id: str, lock: bool = False) -> OrderSyncState:
        query = db.query(OrderSyncState).filter(OrderSyncState.order_id == str(order_id))
        if lock:
            query = query.with_for_update()
        row = query.first()
        if row is None:
            row = OrderSyncState(
                order_id=str(order_id),
                phase=SyncStatus.unsynced.value,
                retry_count=0,
                retry_exhausted=False,
            )
            db.add(row)
            db.flush()
        return row

    def get(self, order_id: str) -> SyncState:
        db = self._session_factory()
        try:
            row = db.query(OrderSyncState).filter(OrderSyncState.order_id == str(order_id)).first()
            return to_sync_state(row, order_id)
        finally:
            db.close()

    def _mutate(self, order_id: str, fn: Callable[[Session, OrderSyncState], None]) -> SyncState:
        db = self._session_factory()
        try:
            row = self._get_or_create(db, order_id, lock=True)
            fn(db, row)
            db.commit()
            db.refresh(row)
            return to_sync_state(row, order_id)
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def record_attempt(
        self,
        order_id: str,
        action: Optional[SyncAction],
        *,
        operation: Optional[str] = None,
        is_retry: bool = False,
    ) -> SyncState:
        """Stamp an attempt. ``operation`` defaults to the action value."""

        def _apply(db: Session, row: OrderSyncState) -> None:
            row.last_attempt_at = _now_utc()
            if action is not None:
                row.last_action = action.value
            row.last_operation = operation or (action.value if action is not None else row.last_operation)
            if is_retry:
                row.retry_count = (row.retry_count or 0) + 1

        return self._mutate(order_id, _apply)

    def update(self, order_id: str, *, phase: Optional[SyncStatus] = None, **fields: Any) -> SyncState:
        """Persist progress fields (invoice_id, payment_id, ...) as soon as they exist."""

        def _apply(db: Session, row: OrderSyncState) -> None:
            for key, value in fields.items():
                if not hasattr(OrderSyncState, key):
                    raise AttributeError(f"OrderSyncState has no field {key}")
                setattr(row, key, value)
            if phase is not None:
                row.phase = advance_phase(row.phase, phase)

        return self._mutate(order_id, _apply)

    def mark_success(self, order_id: str) -> SyncState:
        def _apply(db: Session, row: OrderSyncState) -> None:
            row.last_error = None
            row.error_retryable = None
            row.retry_count = 0
            row.retry_exhausted = False
            row.last_synced_at = _now_utc()

        return self._mutate(order_id, _apply)

    def mark_failure(self, order_id: str, message: str, *, retryable: bool) -> SyncState:
        def _apply(db: Session, row: OrderSyncState) -> None:
            row.last_error = (message or "Unknown error")[:_ERROR_MAX_LEN]
            row.error_retryable = retryable

        return self._mutate(order_id, _apply)

    def mark_exhausted(self, order_id: str) -> SyncState:
        def _apply(db: Session, row: OrderSyncState) -> None:
            row.retry_exhausted = True

        return self._mutate(order_id, _apply)

    def add_refund_entry(
        self,
        order_id: str,
        *,
        refund_id: str,
        credit_note_id: str,
        credit_note_number: Optional[str],
        remote_refund_id: Optional[str],
        amount: float,
    ) -> SyncState:
        def _apply(db: Session, row: OrderSyncState) -> None:
            db.add(OrderRefundEntry(
                order_id=row.order_id,
                refund_id=str(refund_id),
                credit_note_id=credit_note_id,
                credit_note_number=credit_note_number,
                remote_refund_id=remote_refund_id,
                amount=amount,
            ))

        return self._mutate(order_id, _apply)

    def list_retry_candidates(self, limit: int) -> List[SyncState]:
        """Retryable failures not yet given up on, oldest attempt first."""
        db = self._session_factory()
        try:
            rows = (
                db.query(OrderSyncState)
                .filter(
                    OrderSyncState.last_error.isnot(None),
                    OrderSyncState.error_retryable.is_(True),
                    OrderSyncState.retry_exhausted.is_(False),
                )
                .order_by(OrderSyncState.last_attempt_at.asc())
                .limit(limit)
                .all()
            )
            return [to_sync_state(r, r.order_id) for r in rows]
        finally:
            db.close()

    def counts_by_status(self) -> Dict[str, int]:
        db = self._session_factory()
        try:
            counts: Dict[str, int] = {s.value: 0 for s in SyncStatus}
            for row in db.query(OrderSyncState).all():
                counts[derive_status(row).value] += 1
            return counts
        finally:
            db.close()
