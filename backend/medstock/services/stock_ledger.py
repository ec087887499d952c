"""Stock Ledger - the only writer of ``StockItem.current_stock``.

Every mutation follows the same path:

1. Validate the request (non-zero delta, sign matches the operation kind,
   reason and actor present) before touching the database.
2. Load the item with ``SELECT ... FOR UPDATE`` (row lock on PostgreSQL)
   and reject unknown or deactivated items.
3. Check the resulting quantity is non-negative, write the new quantity and
   exactly one LedgerOperation row, and commit both together.
4. The UPDATE is guarded by the item's ``version`` column. If another
   writer committed first the flush raises StaleDataError; the transaction
   is rolled back and the whole read-validate-write cycle is retried up to
   ``settings.ledger_max_retries`` times.
5. After commit a ``StockQuantityChanged`` event is published. The alert
   engine reacts to it in its own transaction.

Transfers reuse the locking and apply steps (``lock_many`` / ``apply``)
inside the transfer workflow's own transaction.
"""

import logging
from decimal import Decimal, InvalidOperation
from typing import Dict, Iterable, List, Optional, Tuple

from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from medstock.core.config import settings
from medstock.core.events import EventBus, StockQuantityChanged, event_bus
from medstock.core.exceptions import (
    ConcurrencyConflictError,
    DomainError,
    InactiveStockError,
    InsufficientStockError,
    NotFoundError,
    ValidationError,
)
from medstock.models.stock import LedgerOperation, OperationKind, StockItem

logger = logging.getLogger(__name__)

NEGATIVE_KINDS = {OperationKind.USAGE, OperationKind.TRANSFER_OUT}
POSITIVE_KINDS = {OperationKind.ADJUSTMENT_INCREASE, OperationKind.TRANSFER_IN}


def to_decimal(value, field: str = "quantity") -> Decimal:
    try:
        result = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, TypeError, ValueError):
        raise ValidationError(f"{field} must be a number", field=field)
    if not result.is_finite():
        raise ValidationError(f"{field} must be a finite number", field=field)
    return result


def normalize_delta(delta, kind) -> Tuple[Decimal, OperationKind]:
    """Validate ``delta`` against ``kind`` and return the signed amount.

    ``adjustment_decrease`` accepts either sign and is always applied as a
    decrease; every other kind must already carry its own sign.
    """
    try:
        kind = OperationKind(kind)
    except ValueError:
        raise ValidationError(f"Unknown operation kind '{kind}'", field="kind")

    amount = to_decimal(delta, "delta")
    if amount == 0:
        raise ValidationError("delta must be non-zero", field="delta")

    if kind == OperationKind.ADJUSTMENT_DECREASE:
        return -abs(amount), kind
    if kind in NEGATIVE_KINDS and amount > 0:
        raise ValidationError(f"{kind.value} requires a negative delta", field="delta")
    if kind in POSITIVE_KINDS and amount < 0:
        raise ValidationError(f"{kind.value} requires a positive delta", field="delta")
    return amount, kind


def _require_text(value: Optional[str], field: str) -> str:
    if value is None or not value.strip():
        raise ValidationError(f"{field} is required", field=field)
    return value.strip()


def quantity_event(stock: StockItem, operation: LedgerOperation) -> StockQuantityChanged:
    """Event for a flushed operation; build it before commit expires the rows."""
    return StockQuantityChanged(
        stock_id=stock.id,
        clinic_id=stock.clinic_id,
        old_value=operation.quantity_before,
        new_value=operation.quantity_after,
        kind=operation.kind,
        operation_id=operation.id,
    )


class StockLedger:
    """Applies quantity mutations to stock items."""

    def __init__(self, db: Session, bus: Optional[EventBus] = None):
        self.db = db
        self.bus = bus if bus is not None else event_bus

    # ===== LOCKING =====

    def lock_stock(self, stock_id: int) -> StockItem:
        """Load one item for update. Raises NotFound or InactiveStock."""
        stock = (
            self.db.query(StockItem)
            .filter(StockItem.id == stock_id)
            .with_for_update()
            .populate_existing()
            .first()
        )
        if stock is None:
            raise NotFoundError("StockItem", stock_id)
        if not stock.is_active:
            raise InactiveStockError(stock_id)
        return stock

    def lock_many(self, stock_ids: Iterable[int]) -> Dict[int, StockItem]:
        """Lock several items in ascending id order within one statement."""
        ids = sorted(set(stock_ids))
        rows = (
            self.db.query(StockItem)
            .filter(StockItem.id.in_(ids))
            .order_by(StockItem.id)
            .with_for_update()
            .populate_existing()
            .all()
        )
        found = {row.id: row for row in rows}
        for stock_id in ids:
            if stock_id not in found:
                raise NotFoundError("StockItem", stock_id)
            if not found[stock_id].is_active:
                raise InactiveStockError(stock_id)
        return found

    # ===== APPLY =====

    def apply(
        self,
        stock: StockItem,
        delta: Decimal,
        kind: OperationKind,
        reason: str,
        performed_by: str,
        notes: Optional[str] = None,
        used_by: Optional[str] = None,
        reference_type: Optional[str] = None,
        reference_id: Optional[int] = None,
    ) -> LedgerOperation:
        """Write the new quantity and its operation row into the session.

        ``stock`` must already be locked by the caller and ``delta`` already
        normalized. Nothing is committed; on InsufficientStock the session
        holds no changes from this call.
        """
        before = Decimal(stock.current_stock or 0)
        after = before + delta
        if after < 0:
            logger.info(
                f"Rejected {kind.value} of {delta} on stock {stock.id}: only {before} {stock.unit} available"
            )
            raise InsufficientStockError(stock.id, available=before, requested=abs(delta), unit=stock.unit)

        stock.current_stock = after
        if kind == OperationKind.USAGE:
            stock.internal_usage_count = (stock.internal_usage_count or 0) + 1

        operation = LedgerOperation(
            stock_item_id=stock.id,
            kind=kind.value,
            delta=delta,
            quantity_before=before,
            quantity_after=after,
            reason=reason,
            notes=notes,
            used_by=used_by,
            performed_by=performed_by,
            reference_type=reference_type,
            reference_id=reference_id,
        )
        self.db.add(operation)
        return operation

    def apply_mutation(
        self,
        stock_id: int,
        delta,
        kind,
        reason: str,
        performed_by: str,
        notes: Optional[str] = None,
        used_by: Optional[str] = None,
        reference_type: Optional[str] = None,
        reference_id: Optional[int] = None,
    ) -> StockItem:
        """Apply one mutation atomically and return the updated item."""
        amount, kind = normalize_delta(delta, kind)
        reason = _require_text(reason, "reason")
        performed_by = _require_text(performed_by, "performed_by")

        attempts = settings.ledger_max_retries
        for attempt in range(1, attempts + 1):
            try:
                stock = self.lock_stock(stock_id)
                operation = self.apply(
                    stock, amount, kind, reason, performed_by,
                    notes=notes, used_by=used_by,
                    reference_type=reference_type, reference_id=reference_id,
                )
                self.db.flush()
                event = quantity_event(stock, operation)
                self.db.commit()
            except StaleDataError:
                self.db.rollback()
                logger.warning(
                    f"Version conflict on stock {stock_id} ({kind.value}), attempt {attempt}/{attempts}"
                )
                continue
            except DomainError:
                self.db.rollback()
                raise

            logger.info(
                f"Stock {stock_id} {kind.value}: {event.old_value} -> {event.new_value} "
                f"by {performed_by} (operation {event.operation_id})"
            )
            self.bus.publish(event)
            return stock

        logger.error(f"Giving up on stock {stock_id} {kind.value} after {attempts} version conflicts")
        raise ConcurrencyConflictError("StockItem", stock_id, attempts)

    # ===== OPERATION-STYLE ENTRY POINTS =====

    def adjust(
        self,
        stock_id: int,
        quantity,
        direction: str,
        reason: str,
        performed_by: str,
        notes: Optional[str] = None,
    ) -> StockItem:
        """Manual correction; ``direction`` is ``increase`` or ``decrease``."""
        amount = to_decimal(quantity)
        if amount <= 0:
            raise ValidationError("quantity must be positive", field="quantity")
        if direction == "increase":
            return self.apply_mutation(stock_id, amount, OperationKind.ADJUSTMENT_INCREASE, reason, performed_by, notes=notes)
        if direction == "decrease":
            return self.apply_mutation(stock_id, amount, OperationKind.ADJUSTMENT_DECREASE, reason, performed_by, notes=notes)
        raise ValidationError(f"Unknown adjustment direction '{direction}'", field="type")

    def use(
        self,
        stock_id: int,
        quantity,
        reason: str,
        performed_by: str,
        used_by: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> StockItem:
        """Internal consumption of ``quantity`` units."""
        amount = to_decimal(quantity)
        if amount <= 0:
            raise ValidationError("quantity must be positive", field="quantity")
        return self.apply_mutation(
            stock_id, -amount, OperationKind.USAGE, reason, performed_by, notes=notes, used_by=used_by
        )

    def history(self, stock_id: int, skip: int = 0, limit: int = 50) -> Tuple[List[LedgerOperation], int]:
        """Operations of one item, newest first."""
        if self.db.get(StockItem, stock_id) is None:
            raise NotFoundError("StockItem", stock_id)
        query = (
            self.db.query(LedgerOperation)
            .filter(LedgerOperation.stock_item_id == stock_id)
            .order_by(LedgerOperation.id.desc())
        )
        total = query.order_by(None).count()
        return query.offset(skip).limit(limit).all(), total
