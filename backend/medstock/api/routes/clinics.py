"""Clinic routes."""

import logging

from fastapi import APIRouter, Query, Request, status
from sqlalchemy.exc import IntegrityError

from medstock.core.exceptions import InvalidStateError, NotFoundError
from medstock.core.rate_limit import READ_LIMIT, WRITE_LIMIT, limiter
from medstock.db.session import DbSession
from medstock.models.clinic import Clinic
from medstock.models.stock import StockItem
from medstock.schemas.clinic import ClinicCreate, ClinicResponse, ClinicUpdate
from medstock.schemas.pagination import MAX_LIMIT, Page, paginate

logger = logging.getLogger(__name__)

router = APIRouter()


def _get_clinic(db, clinic_id: int) -> Clinic:
    clinic = db.get(Clinic, clinic_id)
    if clinic is None:
        raise NotFoundError("Clinic", clinic_id)
    return clinic


def _commit_or_conflict(db, code: str) -> None:
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise InvalidStateError(f"Clinic code '{code}' is already in use", code_value=code)


@router.get("/", response_model=Page[ClinicResponse])
@limiter.limit(READ_LIMIT)
def list_clinics(
    request: Request,
    db: DbSession,
    active_only: bool = False,
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=MAX_LIMIT),
):
    """List clinics ordered by name."""
    query = db.query(Clinic)
    if active_only:
        query = query.filter(Clinic.is_active.is_(True))
    items, total = paginate(query.order_by(Clinic.name), skip, limit)
    return Page[ClinicResponse].build([ClinicResponse.model_validate(c) for c in items], total, skip, limit)


@router.post("/", response_model=ClinicResponse, status_code=status.HTTP_201_CREATED)
@limiter.limit(WRITE_LIMIT)
def create_clinic(request: Request, data: ClinicCreate, db: DbSession):
    clinic = Clinic(**data.model_dump())
    db.add(clinic)
    _commit_or_conflict(db, data.code)
    db.refresh(clinic)
    logger.info(f"Clinic {clinic.id} '{clinic.name}' created")
    return clinic


@router.get("/{clinic_id}", response_model=ClinicResponse)
@limiter.limit(READ_LIMIT)
def get_clinic(request: Request, clinic_id: int, db: DbSession):
    return _get_clinic(db, clinic_id)


@router.put("/{clinic_id}", response_model=ClinicResponse)
@limiter.limit(WRITE_LIMIT)
def update_clinic(request: Request, clinic_id: int, data: ClinicUpdate, db: DbSession):
    clinic = _get_clinic(db, clinic_id)
    for key, value in data.model_dump(exclude_unset=True).items():
        setattr(clinic, key, value)
    _commit_or_conflict(db, clinic.code)
    db.refresh(clinic)
    return clinic


@router.delete("/{clinic_id}", status_code=status.HTTP_204_NO_CONTENT)
@limiter.limit(WRITE_LIMIT)
def delete_clinic(request: Request, clinic_id: int, db: DbSession):
    """Delete a clinic that owns no stock items."""
    clinic = _get_clinic(db, clinic_id)
    owned = db.query(StockItem.id).filter(StockItem.clinic_id == clinic_id).count()
    if owned:
        raise InvalidStateError(
            f"Clinic {clinic_id} still owns {owned} stock items; deactivate it instead",
            id=clinic_id,
        )
    db.delete(clinic)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise InvalidStateError(f"Clinic {clinic_id} is referenced by stock requests or alerts", id=clinic_id)
    logger.info(f"Clinic {clinic_id} deleted")
