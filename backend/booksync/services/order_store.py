from __future__ import annotations

from datetime import datetime
from typing import Callable, Iterable, List, Optional

from sqlalchemy.orm import Session

from booksync.models.orders import LocalProduct, Order
from booksync.models_sqlalchemy import SessionLocal
from booksync.models_sqlalchemy.models import StoreOrder, StoreProduct
from booksync.utils.logger import logger


class OrderStore:
    """Order and product snapshots pushed by the store."""

    def __init__(self, session_factory: Callable[[], Session] = SessionLocal):
        self._session_factory = session_factory

    def upsert_order(self, order: Order) -> None:
        db = self._session_factory()
        try:
            row = db.query(StoreOrder).filter(StoreOrder.id == order.id).first()
            if row is None:
                row = StoreOrder(id=order.id)
                db.add(row)
            row.number = order.number
            row.status = order.status
            row.currency = order.currency
            row.order_created_at = order.created_at
            row.payload = order.model_dump(mode="json")
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def get_order(self, order_id: str) -> Optional[Order]:
        db = self._session_factory()
        try:
            row = db.query(StoreOrder).filter(StoreOrder.id == str(order_id)).first()
            if row is None:
                return None
            return Order.model_validate(row.payload)
        finally:
            db.close()

    def list_order_ids(
        self,
        date_from: Optional[datetime] = None,
        date_to: Optional[datetime] = None,
        statuses: Optional[List[str]] = None,
        limit: int = 500,
    ) -> List[str]:
        db = self._session_factory()
        try:
            query = db.query(StoreOrder.id)
            if date_from is not None:
                query = query.filter(StoreOrder.order_created_at >= date_from)
            if date_to is not None:
                query = query.filter(StoreOrder.order_created_at <= date_to)
            if statuses:
                query = query.filter(StoreOrder.status.in_(statuses))
            rows = query.order_by(StoreOrder.order_created_at.asc()).limit(limit).all()
            return [r[0] for r in rows]
        finally:
            db.close()

    def upsert_products(self, products: Iterable[LocalProduct]) -> int:
        db = self._session_factory()
        count = 0
        try:
            for product in products:
                row = db.query(StoreProduct).filter(StoreProduct.id == product.id).first()
                if row is None:
                    row = StoreProduct(id=product.id)
                    db.add(row)
                row.name = product.name
                row.sku = (product.sku or "").strip() or None
                count += 1
            db.commit()
            logger.info("[order_store] upserted %s products", count)
            return count
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def list_products(self) -> List[LocalProduct]:
        db = self._session_factory()
        try:
            rows = db.query(StoreProduct).order_by(StoreProduct.name.asc()).all()
            return [LocalProduct(id=r.id, name=r.name, sku=r.sku) for r in rows]
        finally:
            db.close()

    def get_product(self, product_id: str) -> Optional[LocalProduct]:
        db = self._session_factory()
        try:
            row = db.query(StoreProduct).filter(StoreProduct.id == product_id).first()
            if row is None:
                return None
            return LocalProduct(id=row.id, name=row.name, sku=row.sku)
        finally:
            db.close()
