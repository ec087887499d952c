"""Category routes.

Stock items carry their category by name, so renaming a registered
category renames it on every item in the same transaction.
"""

import logging
from decimal import Decimal
from typing import List

from fastapi import APIRouter, Request, status
from sqlalchemy.exc import IntegrityError

from medstock.core.exceptions import InvalidStateError, NotFoundError
from medstock.core.rate_limit import READ_LIMIT, WRITE_LIMIT, limiter
from medstock.db.session import DbSession
from medstock.models.category import Category
from medstock.models.stock import StockItem
from medstock.schemas.category import CategoryCreate, CategoryResponse, CategoryStats, CategoryUpdate
from medstock.services.report_service import ReportService

logger = logging.getLogger(__name__)

router = APIRouter()


def _get_category(db, category_id: int) -> Category:
    category = db.get(Category, category_id)
    if category is None:
        raise NotFoundError("Category", category_id)
    return category


def _commit_or_conflict(db, name: str) -> None:
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise InvalidStateError(f"Category '{name}' already exists", name=name)


@router.get("/", response_model=List[CategoryResponse])
@limiter.limit(READ_LIMIT)
def list_categories(request: Request, db: DbSession, active_only: bool = False):
    query = db.query(Category)
    if active_only:
        query = query.filter(Category.is_active.is_(True))
    return query.order_by(Category.name).all()


@router.post("/", response_model=CategoryResponse, status_code=status.HTTP_201_CREATED)
@limiter.limit(WRITE_LIMIT)
def create_category(request: Request, data: CategoryCreate, db: DbSession):
    category = Category(**data.model_dump())
    db.add(category)
    _commit_or_conflict(db, data.name)
    db.refresh(category)
    logger.info(f"Category {category.id} '{category.name}' created")
    return category


@router.get("/{category_id}", response_model=CategoryResponse)
@limiter.limit(READ_LIMIT)
def get_category(request: Request, category_id: int, db: DbSession):
    return _get_category(db, category_id)


@router.put("/{category_id}", response_model=CategoryResponse)
@limiter.limit(WRITE_LIMIT)
def update_category(request: Request, category_id: int, data: CategoryUpdate, db: DbSession):
    category = _get_category(db, category_id)
    changes = data.model_dump(exclude_unset=True)
    old_name = category.name
    renamed = "name" in changes and changes["name"] is not None and changes["name"] != old_name

    for key, value in changes.items():
        if value is not None or key == "description":
            setattr(category, key, value)
    moved = 0
    if renamed:
        for stock in db.query(StockItem).filter(StockItem.category == old_name).all():
            stock.category = category.name
            moved += 1
    _commit_or_conflict(db, category.name)
    db.refresh(category)
    if renamed:
        logger.info(f"Category {category_id} renamed '{old_name}' -> '{category.name}' on {moved} stock items")
    return category


@router.delete("/{category_id}", status_code=status.HTTP_204_NO_CONTENT)
@limiter.limit(WRITE_LIMIT)
def delete_category(request: Request, category_id: int, db: DbSession):
    """Delete a category no stock item uses."""
    category = _get_category(db, category_id)
    used = db.query(StockItem.id).filter(StockItem.category == category.name).count()
    if used:
        raise InvalidStateError(
            f"Category '{category.name}' is used by {used} stock items; deactivate it instead",
            id=category_id,
        )
    db.delete(category)
    db.commit()
    logger.info(f"Category {category_id} deleted")


@router.get("/{category_id}/stats", response_model=CategoryStats)
@limiter.limit(READ_LIMIT)
def category_stats(request: Request, category_id: int, db: DbSession):
    """Figures for the category's active items; usage covers the last 30 days."""
    category = _get_category(db, category_id)
    rows = ReportService(db).category_analysis(category=category.name)["categories"]
    if rows:
        return rows[0]
    zero = Decimal("0")
    return CategoryStats(
        name=category.name, item_count=0, total_stock=zero, total_value=zero,
        low_stock_count=0, critical_stock_count=0, out_of_stock_count=0, usage=zero,
    )
