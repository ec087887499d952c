"""Supplier routes."""

import logging
from typing import Optional

from fastapi import APIRouter, Query, Request, status

from medstock.core.exceptions import InvalidStateError, NotFoundError
from medstock.core.rate_limit import READ_LIMIT, WRITE_LIMIT, limiter
from medstock.db.session import DbSession
from medstock.models.stock import StockItem
from medstock.models.supplier import Supplier
from medstock.schemas.clinic import SupplierCreate, SupplierResponse, SupplierUpdate
from medstock.schemas.pagination import MAX_LIMIT, Page, paginate

_supplier_logger = logging.getLogger(__name__)

router = APIRouter()


def _get_supplier(db, supplier_id: int) -> Supplier:
    supplier = db.get(Supplier, supplier_id)
    if supplier is None:
        raise NotFoundError("Supplier", supplier_id)
    return supplier


@router.get("/", response_model=Page[SupplierResponse])
@limiter.limit(READ_LIMIT)
def list_suppliers(
    request: Request,
    db: DbSession,
    search: Optional[str] = None,
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=MAX_LIMIT),
):
    """List all suppliers."""
    query = db.query(Supplier)
    if search:
        query = query.filter(Supplier.name.ilike(f"%{search}%"))
    items, total = paginate(query.order_by(Supplier.name), skip, limit)
    return Page[SupplierResponse].build([SupplierResponse.model_validate(s) for s in items], total, skip, limit)


@router.post("/", response_model=SupplierResponse, status_code=status.HTTP_201_CREATED)
@limiter.limit(WRITE_LIMIT)
def create_supplier(request: Request, data: SupplierCreate, db: DbSession):
    """Create a new supplier."""
    supplier = Supplier(**data.model_dump())
    db.add(supplier)
    db.commit()
    db.refresh(supplier)
    _supplier_logger.info(f"Supplier {supplier.id} '{supplier.name}' created")
    return supplier


@router.get("/{supplier_id}", response_model=SupplierResponse)
@limiter.limit(READ_LIMIT)
def get_supplier(request: Request, supplier_id: int, db: DbSession):
    """Get a specific supplier."""
    return _get_supplier(db, supplier_id)


@router.put("/{supplier_id}", response_model=SupplierResponse)
@limiter.limit(WRITE_LIMIT)
def update_supplier(request: Request, supplier_id: int, data: SupplierUpdate, db: DbSession):
    """Update a supplier."""
    supplier = _get_supplier(db, supplier_id)
    for key, value in data.model_dump(exclude_unset=True).items():
        setattr(supplier, key, value)
    db.commit()
    db.refresh(supplier)
    return supplier


@router.delete("/{supplier_id}", status_code=status.HTTP_204_NO_CONTENT)
@limiter.limit(WRITE_LIMIT)
def delete_supplier(request: Request, supplier_id: int, db: DbSession):
    """Delete a supplier no stock item refers to."""
    supplier = _get_supplier(db, supplier_id)
    referenced = db.query(StockItem.id).filter(StockItem.supplier_id == supplier_id).count()
    if referenced:
        raise InvalidStateError(
            f"Supplier {supplier_id} is used by {referenced} stock items",
            id=supplier_id,
        )
    db.delete(supplier)
    db.commit()
    _supplier_logger.info(f"Supplier {supplier_id} deleted")
