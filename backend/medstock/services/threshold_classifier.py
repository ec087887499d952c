"""Threshold classification of a stock item.

``classify`` is a pure function of the item's quantity, thresholds and
expiry date plus the reference date. It reads attributes only, so it works
on ORM rows, schemas, or any object with the same field names.
"""

from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional, Union

from medstock.core.config import settings


class StockLevel(str, Enum):
    NORMAL = "normal"
    LOW = "low"
    CRITICAL = "critical"
    OUT_OF_STOCK = "out_of_stock"
    EXPIRING = "expiring"
    EXPIRED = "expired"


TRIGGERING_LEVELS = frozenset({
    StockLevel.LOW,
    StockLevel.CRITICAL,
    StockLevel.OUT_OF_STOCK,
    StockLevel.EXPIRING,
    StockLevel.EXPIRED,
})


def today() -> date:
    return datetime.now(timezone.utc).date()


def _as_date(value: Union[date, datetime, None]) -> Optional[date]:
    if isinstance(value, datetime):
        return value.date()
    return value


def days_until_expiry(expiry_date: Union[date, datetime, None], now: Union[date, datetime, None] = None) -> Optional[int]:
    """Whole days from ``now`` to expiry; 0 on the expiry day, negative after."""
    expiry = _as_date(expiry_date)
    if expiry is None:
        return None
    reference = _as_date(now) or today()
    return (expiry - reference).days


def classify(stock, now: Union[date, datetime, None] = None, warning_days: Optional[int] = None) -> StockLevel:
    """Map a stock item to its level. First matching rule wins.

    An item is expired from its expiry day onward; quantity zero outranks
    everything, and an expiring item is flagged even with ample stock.
    """
    warning_days = settings.expiry_warning_days if warning_days is None else warning_days
    current = Decimal(stock.current_stock or 0)

    if current == 0:
        return StockLevel.OUT_OF_STOCK

    days_left = days_until_expiry(stock.expiry_date, now)
    if days_left is not None:
        if days_left <= 0:
            return StockLevel.EXPIRED
        if days_left <= warning_days:
            return StockLevel.EXPIRING

    if current <= Decimal(stock.critical_stock_level or 0):
        return StockLevel.CRITICAL
    if current <= Decimal(stock.min_stock_level or 0):
        return StockLevel.LOW
    return StockLevel.NORMAL
