from sqlalchemy import Column, Integer, String, Float, DateTime, Text, ForeignKey, Boolean, Index, JSON, UniqueConstraint
from sqlalchemy.orm import relationship
from datetime import datetime, timezone
import uuid

from . import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return str(uuid.uuid4())


class ConnectionCredential(Base):
    """The single OAuth credential set for the connected organization.

    Secret columns hold ``ENC:v1:`` blobs; read and write them through the
    properties so plain text never reaches the database.
    """

    __tablename__ = "connection_credentials"

    id = Column(String(36), primary_key=True, default=_new_id)
    _client_id = Column("client_id", Text, nullable=True)
    _client_secret = Column("client_secret", Text, nullable=True)
    _refresh_token = Column("refresh_token", Text, nullable=True)
    _access_token = Column("access_token", Text, nullable=True)
    access_token_expires_at = Column(DateTime(timezone=True), nullable=True)
    datacenter = Column(String(8), nullable=False, default="us")
    organization_id = Column(String(64), nullable=True)
    last_refreshed_at = Column(DateTime(timezone=True), nullable=True)
    refresh_error = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)

    @staticmethod
    def _read(raw: str | None) -> str | None:
        from booksync.utils import crypto

        if raw is None:
            return None
        return crypto.decrypt(raw)

    @staticmethod
    def _write(value: str | None) -> str | None:
        from booksync.utils import crypto

        if value is None or value == "":
            return None
        return crypto.encrypt(value)

    @property
    def client_id(self) -> str | None:
        return self._read(self._client_id)

    @client_id.setter
    def client_id(self, value: str | None) -> None:
        self._client_id = self._write(value)

    @property
    def client_secret(self) -> str | None:
        return self._read(self._client_secret)

    @client_secret.setter
    def client_secret(self, value: str | None) -> None:
        self._client_secret = self._write(value)

    @property
    def refresh_token(self) -> str | None:
        return self._read(self._refresh_token)

    @refresh_token.setter
    def refresh_token(self, value: str | None) -> None:
        self._refresh_token = self._write(value)

    @property
    def access_token(self) -> str | None:
        return self._read(self._access_token)

    @access_token.setter
    def access_token(self, value: str | None) -> None:
        self._access_token = self._write(value)


class OrderSyncState(Base):
    """Per-order sync bookkeeping.

    ``phase`` only moves forward (unsynced -> draft -> submitted -> paid).
    ``last_error`` is the error flag; it is set on a failed attempt and cleared
    on the next successful one, whatever the phase. Rows are never deleted.
    """

    __tablename__ = "order_sync_states"

    order_id = Column(String(64), primary_key=True)
    phase = Column(String(16), nullable=False, default="unsynced")

    invoice_id = Column(String(64), nullable=True)
    invoice_number = Column(String(64), nullable=True)
    contact_id = Column(String(64), nullable=True)
    contact_name = Column(Text, nullable=True)
    payment_id = Column(String(64), nullable=True)
    payment_number = Column(String(64), nullable=True)
    invoice_voided_at = Column(DateTime(timezone=True), nullable=True)

    last_action = Column(String(32), nullable=True)
    # Engine operation the last attempt ran; retries replay it. Wider than last_action.
    last_operation = Column(String(32), nullable=True)
    last_error = Column(Text, nullable=True)
    error_retryable = Column(Boolean, nullable=True)
    last_attempt_at = Column(DateTime(timezone=True), nullable=True)
    last_synced_at = Column(DateTime(timezone=True), nullable=True)
    retry_count = Column(Integer, nullable=False, default=0)
    retry_exhausted = Column(Boolean, nullable=False, default=False)

    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)

    refund_entries = relationship(
        "OrderRefundEntry",
        back_populates="sync_state",
        order_by="OrderRefundEntry.created_at",
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        Index("idx_order_sync_states_retry", "error_retryable", "retry_exhausted", "last_attempt_at"),
    )


class OrderRefundEntry(Base):
    __tablename__ = "order_refund_entries"

    id = Column(String(36), primary_key=True, default=_new_id)
    order_id = Column(String(64), ForeignKey("order_sync_states.order_id", ondelete="CASCADE"), nullable=False)
    refund_id = Column(String(64), nullable=False)
    credit_note_id = Column(String(64), nullable=False)
    credit_note_number = Column(String(64), nullable=True)
    remote_refund_id = Column(String(64), nullable=True)
    amount = Column(Float, nullable=False, default=0.0)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)

    sync_state = relationship("OrderSyncState", back_populates="refund_entries")

    __table_args__ = (
        UniqueConstraint("order_id", "refund_id", name="uq_order_refund_entries_refund"),
    )


class EntityMapping(Base):
    """Local key -> remote entity id, one row per (kind, local_key)."""

    __tablename__ = "entity_mappings"

    id = Column(String(36), primary_key=True, default=_new_id)
    # "item", "invoice_field", "contact_field"
    kind = Column(String(32), nullable=False)
    local_key = Column(String(128), nullable=False)
    remote_id = Column(String(64), nullable=False)
    remote_label = Column(Text, nullable=True)
    remote_type = Column(String(32), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        UniqueConstraint("kind", "local_key", name="uq_entity_mappings_kind_local_key"),
    )


class SyncSetting(Base):
    __tablename__ = "sync_settings"

    key = Column(String(64), primary_key=True)
    value = Column(JSON, nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)


class SyncNotification(Base):
    __tablename__ = "sync_notifications"

    id = Column(String(36), primary_key=True, default=_new_id)
    # "error", "warning", "success", "info"
    type = Column(String(16), nullable=False)
    title = Column(Text, nullable=False)
    message = Column(Text, nullable=False)
    context = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    delivered_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("idx_sync_notifications_delivered_at", "delivered_at"),
    )


class StoreOrder(Base):
    """Latest order snapshot pushed by the store.

    The indexed columns back range queries; everything else lives in
    ``payload`` exactly as received.
    """

    __tablename__ = "store_orders"

    id = Column(String(64), primary_key=True)
    number = Column(String(64), nullable=False)
    status = Column(String(32), nullable=False)
    currency = Column(String(3), nullable=False)
    order_created_at = Column(DateTime(timezone=True), nullable=False)
    payload = Column(JSON, nullable=False)
    received_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        Index("idx_store_orders_created", "order_created_at"),
        Index("idx_store_orders_status", "status"),
    )


class StoreProduct(Base):
    __tablename__ = "store_products"

    id = Column(String(64), primary_key=True)
    name = Column(Text, nullable=False)
    sku = Column(String(128), nullable=True)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)
