"""Stock catalog: creating, editing, listing and retiring stock items.

Quantity changes never happen here except for the initial stock of a new
item, which is booked through the ledger in the creating transaction.
"""

import logging
from datetime import timedelta
from decimal import Decimal
from typing import Callable, Dict, List, Optional, Tuple

from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from medstock.core.config import settings
from medstock.core.events import EventBus, StockDetailsChanged, event_bus
from medstock.core.exceptions import (
    ConcurrencyConflictError,
    DomainError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from medstock.models.alert import Alert
from medstock.models.clinic import Clinic
from medstock.models.stock import HISTORY_KINDS, LedgerOperation, OperationKind, StockItem
from medstock.models.stock_request import StockRequest
from medstock.models.supplier import Supplier
from medstock.schemas.stock import StockCreate, StockUpdate
from medstock.services.stock_ledger import StockLedger, quantity_event
from medstock.services.threshold_classifier import StockLevel, classify, today

logger = logging.getLogger(__name__)


class StockService:
    """Catalog operations on stock items."""

    def __init__(self, db: Session, bus: Optional[EventBus] = None):
        self.db = db
        self.bus = bus if bus is not None else event_bus

    def get_stock(self, stock_id: int) -> StockItem:
        stock = self.db.get(StockItem, stock_id)
        if stock is None:
            raise NotFoundError("StockItem", stock_id)
        return stock

    def _check_references(self, clinic_id: Optional[int], supplier_id: Optional[int]) -> None:
        if clinic_id is not None:
            clinic = self.db.get(Clinic, clinic_id)
            if clinic is None:
                raise NotFoundError("Clinic", clinic_id)
            if not clinic.is_active:
                raise InvalidStateError(f"Clinic {clinic_id} is inactive", id=clinic_id)
        if supplier_id is not None:
            supplier = self.db.get(Supplier, supplier_id)
            if supplier is None:
                raise NotFoundError("Supplier", supplier_id)
            if not supplier.is_active:
                raise InvalidStateError(f"Supplier {supplier_id} is inactive", id=supplier_id)

    def _check_unique(self, clinic_id: int, name: str, unit: str, exclude_id: Optional[int] = None) -> None:
        query = self.db.query(StockItem.id).filter(
            StockItem.clinic_id == clinic_id, StockItem.name == name, StockItem.unit == unit
        )
        if exclude_id is not None:
            query = query.filter(StockItem.id != exclude_id)
        if query.first() is not None:
            raise InvalidStateError(
                f"Clinic {clinic_id} already has a stock item '{name}' ({unit})",
                clinic_id=clinic_id,
            )

    # ===== CREATE / UPDATE =====

    def create_stock(self, data: StockCreate) -> StockItem:
        """Create an item; a positive initial quantity becomes one ledger operation."""
        self._check_references(data.clinic_id, data.supplier_id)
        self._check_unique(data.clinic_id, data.name, data.unit)

        fields = data.model_dump(exclude={"current_stock", "performed_by"})
        stock = StockItem(**fields, current_stock=Decimal("0"), is_active=True)
        self.db.add(stock)
        try:
            self.db.flush()
            if data.current_stock > 0:
                ledger = StockLedger(self.db, self.bus)
                operation = ledger.apply(
                    stock, data.current_stock, OperationKind.ADJUSTMENT_INCREASE,
                    reason="Initial stock", performed_by=data.performed_by,
                )
                self.db.flush()
                event = quantity_event(stock, operation)
            else:
                event = StockDetailsChanged(stock_id=stock.id, clinic_id=stock.clinic_id)
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            raise InvalidStateError(f"Stock item '{data.name}' ({data.unit}) already exists in clinic {data.clinic_id}")

        logger.info(f"Stock item {stock.id} '{stock.name}' created in clinic {stock.clinic_id} with {data.current_stock} {stock.unit}")
        self.bus.publish(event)
        return stock

    def _save_with_retry(self, stock_id: int, change: Callable[[StockItem], None]) -> StockItem:
        """Apply a catalog change under the item's version check, retrying on conflict."""
        attempts = settings.ledger_max_retries
        for attempt in range(1, attempts + 1):
            try:
                stock = (
                    self.db.query(StockItem)
                    .filter(StockItem.id == stock_id)
                    .with_for_update()
                    .populate_existing()
                    .first()
                )
                if stock is None:
                    raise NotFoundError("StockItem", stock_id)
                change(stock)
                self.db.flush()
                event = StockDetailsChanged(stock_id=stock.id, clinic_id=stock.clinic_id)
                self.db.commit()
            except StaleDataError:
                self.db.rollback()
                logger.warning(f"Version conflict editing stock {stock_id}, attempt {attempt}/{attempts}")
                continue
            except IntegrityError:
                self.db.rollback()
                raise InvalidStateError(f"Stock item {stock_id} conflicts with an existing item", id=stock_id)
            except DomainError:
                self.db.rollback()
                raise
            self.bus.publish(event)
            return stock
        raise ConcurrencyConflictError("StockItem", stock_id, attempts)

    def update_stock(self, stock_id: int, data: StockUpdate) -> StockItem:
        changes = data.model_dump(exclude_unset=True)
        for key in ("name", "unit", "category", "currency", "purchase_price", "min_stock_level",
                    "critical_stock_level", "track_expiry", "track_batch"):
            if key in changes and changes[key] is None:
                raise ValidationError(f"{key} cannot be null", field=key)
        if "supplier_id" in changes:
            self._check_references(None, changes["supplier_id"])

        def change(stock: StockItem) -> None:
            if "name" in changes or "unit" in changes:
                self._check_unique(
                    stock.clinic_id, changes.get("name", stock.name), changes.get("unit", stock.unit), exclude_id=stock.id
                )
            for key, value in changes.items():
                setattr(stock, key, value)

        stock = self._save_with_retry(stock_id, change)
        logger.info(f"Stock item {stock_id} updated: {sorted(changes)}")
        return stock

    def deactivate_stock(self, stock_id: int) -> StockItem:
        def change(stock: StockItem) -> None:
            if not stock.is_active:
                raise InvalidStateError(f"Stock item {stock_id} is already inactive", id=stock_id)
            stock.is_active = False

        stock = self._save_with_retry(stock_id, change)
        logger.info(f"Stock item {stock_id} deactivated")
        return stock

    def reactivate_stock(self, stock_id: int) -> StockItem:
        def change(stock: StockItem) -> None:
            if stock.is_active:
                raise InvalidStateError(f"Stock item {stock_id} is already active", id=stock_id)
            stock.is_active = True

        stock = self._save_with_retry(stock_id, change)
        logger.info(f"Stock item {stock_id} reactivated")
        return stock

    def delete_stock(self, stock_id: int) -> Dict:
        """Hard delete an item without history; otherwise deactivate it."""
        stock = self.get_stock(stock_id)
        has_history = (
            self.db.query(LedgerOperation.id)
            .filter(
                LedgerOperation.stock_item_id == stock_id,
                LedgerOperation.kind.in_([k.value for k in HISTORY_KINDS]),
            )
            .first()
            is not None
        )
        referenced = (
            self.db.query(StockRequest.id)
            .filter(or_(StockRequest.stock_id == stock_id, StockRequest.destination_stock_id == stock_id))
            .first()
            is not None
        )

        if has_history or referenced:
            if stock.is_active:
                self.deactivate_stock(stock_id)
                message = "Stock item has usage or transfer history and was deactivated instead"
            else:
                message = "Stock item has usage or transfer history and is already inactive"
            logger.info(f"Stock item {stock_id} soft-deleted (history={has_history}, referenced={referenced})")
            return {"id": stock_id, "deleted": False, "deactivated": True, "message": message}

        # Bulk deletes bypass the ledger immutability guard and remove the
        # item's adjustment trail with it
        self.db.query(LedgerOperation).filter(LedgerOperation.stock_item_id == stock_id).delete(synchronize_session=False)
        self.db.query(Alert).filter(Alert.stock_item_id == stock_id).delete(synchronize_session=False)
        self.db.delete(stock)
        self.db.commit()
        logger.info(f"Stock item {stock_id} deleted")
        return {"id": stock_id, "deleted": True, "deactivated": False, "message": "Stock item deleted"}

    # ===== QUERIES =====

    def list_stocks(
        self,
        name: Optional[str] = None,
        category: Optional[str] = None,
        supplier_id: Optional[int] = None,
        clinic_id: Optional[int] = None,
        status: Optional[str] = None,
        level: Optional[StockLevel] = None,
        expiry_days: Optional[int] = None,
        skip: int = 0,
        limit: int = 50,
    ) -> Tuple[List[StockItem], int]:
        query = self.db.query(StockItem)
        if name:
            query = query.filter(StockItem.name.ilike(f"%{name}%"))
        if category:
            query = query.filter(StockItem.category == category)
        if supplier_id is not None:
            query = query.filter(StockItem.supplier_id == supplier_id)
        if clinic_id is not None:
            query = query.filter(StockItem.clinic_id == clinic_id)
        if status == "active":
            query = query.filter(StockItem.is_active.is_(True))
        elif status == "inactive":
            query = query.filter(StockItem.is_active.is_(False))
        elif status is not None:
            raise ValidationError(f"Unknown status filter '{status}'", field="status")
        if expiry_days is not None:
            query = query.filter(
                StockItem.expiry_date.isnot(None),
                StockItem.expiry_date <= today() + timedelta(days=expiry_days),
            )
        query = query.order_by(StockItem.name, StockItem.id)

        if level is not None:
            # Level depends on the classification order, so filter in Python
            matching = [s for s in query.all() if classify(s) == level]
            return matching[skip:skip + limit], len(matching)

        total = query.order_by(None).count()
        return query.offset(skip).limit(limit).all(), total

    def _active_items(self, clinic_id: Optional[int]):
        query = self.db.query(StockItem).filter(StockItem.is_active.is_(True))
        if clinic_id is not None:
            query = query.filter(StockItem.clinic_id == clinic_id)
        return query

    def low_stock(self, clinic_id: Optional[int] = None) -> List[StockItem]:
        """Active items at or below their minimum level (critical ones included)."""
        return (
            self._active_items(clinic_id)
            .filter(StockItem.current_stock <= StockItem.min_stock_level)
            .order_by(StockItem.current_stock, StockItem.id)
            .all()
        )

    def critical_stock(self, clinic_id: Optional[int] = None) -> List[StockItem]:
        """Active items at or below their critical level."""
        return (
            self._active_items(clinic_id)
            .filter(StockItem.current_stock <= StockItem.critical_stock_level)
            .order_by(StockItem.current_stock, StockItem.id)
            .all()
        )

    def expiring_stock(self, days: Optional[int] = None, clinic_id: Optional[int] = None) -> List[StockItem]:
        """Active items expiring within ``days`` (already expired ones included)."""
        days = settings.expiring_report_days if days is None else days
        return (
            self._active_items(clinic_id)
            .filter(
                StockItem.expiry_date.isnot(None),
                StockItem.expiry_date <= today() + timedelta(days=days),
            )
            .order_by(StockItem.expiry_date, StockItem.id)
            .all()
        )

    def stats(self, clinic_id: Optional[int] = None) -> Dict:
        items = self._active_items(clinic_id).all()
        levels = [classify(s) for s in items]
        return {
            "total_items": len(items),
            "low_stock_items": levels.count(StockLevel.LOW),
            "critical_stock_items": levels.count(StockLevel.CRITICAL),
            "out_of_stock_items": levels.count(StockLevel.OUT_OF_STOCK),
            "expiring_items": levels.count(StockLevel.EXPIRING),
            "expired_items": levels.count(StockLevel.EXPIRED),
            "total_value": sum((s.stock_value for s in items), Decimal("0")),
        }

    def categories(self, clinic_id: Optional[int] = None) -> List[str]:
        query = self.db.query(StockItem.category).distinct()
        if clinic_id is not None:
            query = query.filter(StockItem.clinic_id == clinic_id)
        return sorted(row[0] for row in query.all() if row[0])

