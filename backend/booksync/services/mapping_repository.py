"""Local key -> remote entity id correspondences.

Three kinds share the ``entity_mappings`` table:

- ``item``: store product id -> remote item id, used for invoice lines;
- ``invoice_field`` / ``contact_field``: order field key -> remote custom
  field id, used to fill custom fields on invoices and contacts.

Auto-mapping only ever uses exact (case-insensitive) SKU equality.
``sort_by_relevance`` is for presenting candidates to a person and never
decides anything on its own.
"""

from __future__ import annotations

from typing import Any, Callable, Dict, Iterable, List, Optional

from sqlalchemy.orm import Session

from booksync.models.orders import LocalProduct, Order, RemoteItem
from booksync.models_sqlalchemy import SessionLocal
from booksync.models_sqlalchemy.models import EntityMapping
from booksync.utils.logger import logger


ITEM = "item"
INVOICE_FIELD = "invoice_field"
CONTACT_FIELD = "contact_field"

META_PREFIX = "meta:"
BILLING_PREFIX = "billing."


def levenshtein(a: str, b: str) -> int:
    if a == b:
        return 0
    if not a:
        return len(b)
    if not b:
        return len(a)
    previous = list(range(len(b) + 1))
    for i, ca in enumerate(a, start=1):
        current = [i]
        for j, cb in enumerate(b, start=1):
            current.append(min(
                previous[j] + 1,
                current[j - 1] + 1,
                previous[j - 1] + (ca != cb),
            ))
        previous = current
    return previous[-1]


def _norm_sku(value: Optional[str]) -> str:
    return (value or "").strip().lower()


class MappingRepository:
    def __init__(self, kind: str, session_factory: Callable[[], Session] = SessionLocal):
        self.kind = kind
        self._session_factory = session_factory

    def get_all(self) -> Dict[str, str]:
        db = self._session_factory()
        try:
            rows = db.query(EntityMapping).filter(EntityMapping.kind == self.kind).all()
            return {r.local_key: r.remote_id for r in rows}
        finally:
            db.close()

    def list_mappings(self) -> List[Dict[str, Any]]:
        db = self._session_factory()
        try:
            rows = (
                db.query(EntityMapping)
                .filter(EntityMapping.kind == self.kind)
                .order_by(EntityMapping.local_key.asc())
                .all()
            )
            return [
                {
                    "local_key": r.local_key,
                    "remote_id": r.remote_id,
                    "remote_label": r.remote_label,
                    "remote_type": r.remote_type,
                }
                for r in rows
            ]
        finally:
            db.close()

    def _upsert(self, db: Session, local_key: str, remote_id: str, remote_label: Optional[str], remote_type: Optional[str]) -> None:
        row = (
            db.query(EntityMapping)
            .filter(EntityMapping.kind == self.kind, EntityMapping.local_key == local_key)
            .first()
        )
        if row is None:
            row = EntityMapping(kind=self.kind, local_key=local_key)
            db.add(row)
        row.remote_id = remote_id
        row.remote_label = remote_label
        row.remote_type = remote_type

    def set_mapping(
        self,
        local_key: str,
        remote_id: str,
        remote_label: Optional[str] = None,
        remote_type: Optional[str] = None,
    ) -> None:
        """Create or overwrite the mapping for ``local_key``. Empty ids remove it."""
        local_key = str(local_key)
        if not remote_id:
            self.remove_mapping(local_key)
            return
        db = self._session_factory()
        try:
            self._upsert(db, local_key, str(remote_id), remote_label, remote_type)
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def set_mappings(self, mappings: Dict[str, str]) -> None:
        db = self._session_factory()
        try:
            for local_key, remote_id in mappings.items():
                if remote_id:
                    self._upsert(db, str(local_key), str(remote_id), None, None)
                else:
                    db.query(EntityMapping).filter(
                        EntityMapping.kind == self.kind, EntityMapping.local_key == str(local_key)
                    ).delete()
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def remove_mapping(self, local_key: str) -> bool:
        db = self._session_factory()
        try:
            deleted = db.query(EntityMapping).filter(
                EntityMapping.kind == self.kind, EntityMapping.local_key == str(local_key)
            ).delete()
            db.commit()
            return deleted > 0
        finally:
            db.close()

    def is_mapped(self, local_key: str) -> bool:
        db = self._session_factory()
        try:
            return db.query(EntityMapping.id).filter(
                EntityMapping.kind == self.kind, EntityMapping.local_key == str(local_key)
            ).first() is not None
        finally:
            db.close()

    def get_remote_id(self, local_key: str) -> Optional[str]:
        return self.get_all().get(str(local_key))

    def count(self) -> int:
        db = self._session_factory()
        try:
            return db.query(EntityMapping).filter(EntityMapping.kind == self.kind).count()
        finally:
            db.close()

    def clear_all(self) -> int:
        db = self._session_factory()
        try:
            deleted = db.query(EntityMapping).filter(EntityMapping.kind == self.kind).delete()
            db.commit()
            return deleted
        finally:
            db.close()


class ItemMappingRepository(MappingRepository):
    def __init__(
        self,
        product_source: Callable[[], Iterable[LocalProduct]],
        session_factory: Callable[[], Session] = SessionLocal,
    ):
        super().__init__(ITEM, session_factory)
        self._product_source = product_source

    def auto_map_by_sku(self, remote_items: Iterable[RemoteItem]) -> int:
        by_sku: Dict[str, RemoteItem] = {}
        for item in remote_items:
            sku = _norm_sku(item.sku)
            if sku and sku not in by_sku:
                by_sku[sku] = item

        existing = self.get_all()
        created = 0
        db = self._session_factory()
        try:
            for product in self._product_source():
                if product.id in existing:
                    continue
                sku = _norm_sku(product.sku)
                if not sku:
                    continue
                match = by_sku.get(sku)
                if match is None:
                    continue
                self._upsert(db, product.id, match.item_id, match.name, "item")
                existing[product.id] = match.item_id
                created += 1
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

        logger.info("[mappings] auto-mapped %s products by SKU", created)
        return created

    def sort_by_relevance(self, remote_items: Iterable[RemoteItem], product: LocalProduct) -> List[RemoteItem]:
        local_sku = _norm_sku(product.sku)
        local_name = (product.name or "").lower()

        def _key(item: RemoteItem):
            sku_match = bool(local_sku) and _norm_sku(item.sku) == local_sku
            name = (item.name or "").lower()
            return (0 if sku_match else 1, levenshtein(local_name, name), name)

        return sorted(remote_items, key=_key)


class FieldMappingRepository(MappingRepository):
    """Order field key -> remote custom field id.

    Keys are a top-level order attribute (``payment_method_title``), a
    billing attribute (``billing.company``) or an order meta entry
    (``meta:vat_number``).
    """

    @staticmethod
    def resolve_value(order: Order, local_key: str) -> Any:
        if local_key.startswith(META_PREFIX):
            return order.meta.get(local_key[len(META_PREFIX):])
        if local_key.startswith(BILLING_PREFIX):
            return getattr(order.billing, local_key[len(BILLING_PREFIX):], None)
        value = getattr(order, local_key, None)
        if value is None:
            return order.meta.get(local_key)
        return value

    def build_custom_fields(self, order: Order) -> List[Dict[str, Any]]:
        fields = []
        for local_key, remote_id in self.get_all().items():
            value = self.resolve_value(order, local_key)
            if value is None or value == "" or isinstance(value, (list, dict)):
                continue
            if hasattr(value, "isoformat"):
                value = value.isoformat()
            fields.append({"customfield_id": remote_id, "value": value})
        return fields
