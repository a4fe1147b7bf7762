from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, field_validator
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from backend.auth.dependencies import require_admin
from backend.core.errors import SchedulingError
from backend.database import get_db
from backend.models.user import User
from backend.routes.common import (
    database_unavailable,
    ensure_database_ready,
    normalize_optional_text,
    scheduling_http_error,
)
from backend.services import checkouts

router = APIRouter(tags=['checkouts'])


class GrantCheckoutRequest(BaseModel):
    user_id: int
    machine_id: int
    notes: str | None = None

    @field_validator('notes')
    @classmethod
    def validate_notes(cls, value: str | None) -> str | None:
        return normalize_optional_text(value)


class CheckoutResponse(BaseModel):
    id: int
    user_id: int
    machine_id: int
    approved_by: int
    approved_at: datetime
    notes: str | None = None

    class Config:
        from_attributes = True


class RevokeCheckoutResponse(BaseModel):
    user_id: int
    machine_id: int
    cancelled_appointment_ids: list[int]


@router.get('', response_model=list[CheckoutResponse])
def list_checkouts(
    user_id: int | None = Query(default=None),
    current_user: User = Depends(require_admin),
    db: Session = Depends(get_db),
):
    del current_user
    ensure_database_ready()

    try:
        return checkouts.list_checkouts(db, user_id=user_id)
    except SQLAlchemyError as exc:
        raise database_unavailable(db) from exc


@router.post('', response_model=CheckoutResponse, status_code=status.HTTP_201_CREATED)
def grant_checkout(
    data: GrantCheckoutRequest,
    current_user: User = Depends(require_admin),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    try:
        return checkouts.grant_checkout(
            db,
            user_id=data.user_id,
            machine_id=data.machine_id,
            approver_id=current_user.id,
            notes=data.notes,
        )
    except SchedulingError as exc:
        raise scheduling_http_error(exc) from exc
    except SQLAlchemyError as exc:
        raise database_unavailable(db) from exc


@router.delete('/{user_id}/{machine_id}', response_model=RevokeCheckoutResponse)
def revoke_checkout(
    user_id: int,
    machine_id: int,
    reason: str | None = Query(default=None),
    current_user: User = Depends(require_admin),
    db: Session = Depends(get_db),
):
    try:
        reason = normalize_optional_text(reason, label='Reason')
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc

    ensure_database_ready()

    try:
        cancelled = checkouts.revoke_checkout(
            db,
            user_id=user_id,
            machine_id=machine_id,
            actor_id=current_user.id,
            reason=reason,
        )
    except SchedulingError as exc:
        raise scheduling_http_error(exc) from exc
    except SQLAlchemyError as exc:
        raise database_unavailable(db) from exc

    return RevokeCheckoutResponse(
        user_id=user_id,
        machine_id=machine_id,
        cancelled_appointment_ids=[appointment.id for appointment in cancelled],
    )
