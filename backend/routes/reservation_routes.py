from datetime import datetime

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, field_validator, model_validator
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from backend.auth.dependencies import get_current_user, require_admin
from backend.core.errors import SchedulingError
from backend.database import get_db
from backend.models.user import ROLE_ADMIN, User
from backend.routes.common import (
    database_unavailable,
    ensure_database_ready,
    normalize_optional_text,
    scheduling_http_error,
)
from backend.services import reservations

router = APIRouter(tags=['reservations'])


class CreateReservationRequest(BaseModel):
    machine_id: int
    start_time: datetime
    end_time: datetime

    @model_validator(mode='after')
    def validate_range(self) -> 'CreateReservationRequest':
        if self.end_time <= self.start_time:
            raise ValueError('End time must be after start time.')
        return self


class ModerateReservationRequest(BaseModel):
    decision: str
    notes: str | None = None
    reason: str | None = None

    @field_validator('decision')
    @classmethod
    def validate_decision(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in reservations.DECISION_STATUSES:
            raise ValueError('Decision must be approve, reject or cancel.')
        return normalized

    @field_validator('notes', 'reason')
    @classmethod
    def validate_text(cls, value: str | None) -> str | None:
        return normalize_optional_text(value, label='Text')


class CancelReservationRequest(BaseModel):
    reason: str | None = None

    @field_validator('reason')
    @classmethod
    def validate_reason(cls, value: str | None) -> str | None:
        return normalize_optional_text(value, label='Reason')


class ReservationResponse(BaseModel):
    id: int
    user_id: int
    machine_id: int
    start_time: datetime
    end_time: datetime
    status: str
    reviewed_by: int | None = None
    reviewed_at: datetime | None = None
    decision_reason: str | None = None
    review_notes: str | None = None

    class Config:
        from_attributes = True


@router.post('', response_model=ReservationResponse, status_code=status.HTTP_201_CREATED)
def create_reservation(
    data: CreateReservationRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    try:
        return reservations.create_booking_request(
            db,
            user_id=current_user.id,
            machine_id=data.machine_id,
            start_time=data.start_time,
            end_time=data.end_time,
        )
    except SchedulingError as exc:
        raise scheduling_http_error(exc) from exc
    except SQLAlchemyError as exc:
        raise database_unavailable(db) from exc


@router.get('', response_model=list[ReservationResponse])
def list_reservations(
    status_filter: str | None = Query(default=None, alias='status'),
    machine_id: int | None = Query(default=None),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    user_id = None if current_user.role == ROLE_ADMIN else current_user.id

    ensure_database_ready()

    try:
        return reservations.list_reservations(db, status=status_filter, user_id=user_id, machine_id=machine_id)
    except SQLAlchemyError as exc:
        raise database_unavailable(db) from exc


@router.post('/{reservation_id}/moderate', response_model=ReservationResponse)
def moderate_reservation(
    reservation_id: int,
    data: ModerateReservationRequest,
    current_user: User = Depends(require_admin),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    try:
        return reservations.moderate_booking_request(
            db,
            reservation_id=reservation_id,
            reviewer_id=current_user.id,
            decision=data.decision,
            notes=data.notes,
            reason=data.reason,
        )
    except SchedulingError as exc:
        raise scheduling_http_error(exc) from exc
    except SQLAlchemyError as exc:
        raise database_unavailable(db) from exc


@router.post('/{reservation_id}/cancel', response_model=ReservationResponse)
def cancel_my_reservation(
    reservation_id: int,
    data: CancelReservationRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    try:
        return reservations.cancel_booking_request_by_member(
            db,
            reservation_id=reservation_id,
            user_id=current_user.id,
            reason=data.reason,
        )
    except SchedulingError as exc:
        raise scheduling_http_error(exc) from exc
    except SQLAlchemyError as exc:
        raise database_unavailable(db) from exc
