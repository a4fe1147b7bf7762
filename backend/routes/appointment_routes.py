from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, field_validator
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from backend.auth.dependencies import get_current_user, require_admin
from backend.core.errors import SchedulingError
from backend.database import get_db
from backend.models.appointment import APPOINTMENT_RESULTS, APPOINTMENT_STATUSES
from backend.models.user import ROLE_ADMIN, ROLE_MANAGER, User
from backend.routes.common import (
    database_unavailable,
    ensure_database_ready,
    normalize_optional_text,
    scheduling_http_error,
)
from backend.services import appointments, booking
from backend.services.eligibility import EligibilityResult, check_eligibility

router = APIRouter(tags=['appointments'])


class RequestAppointmentRequest(BaseModel):
    machine_id: int
    manager_id: int
    slot_start_time: datetime
    notes: str | None = None

    @field_validator('notes')
    @classmethod
    def validate_notes(cls, value: str | None) -> str | None:
        return normalize_optional_text(value)


class ModerateAppointmentRequest(BaseModel):
    decision: str
    reason: str | None = None

    @field_validator('decision')
    @classmethod
    def validate_decision(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in appointments.MODERATION_DECISIONS:
            raise ValueError('Decision must be accept or reject.')
        return normalized

    @field_validator('reason')
    @classmethod
    def validate_reason(cls, value: str | None) -> str | None:
        return normalize_optional_text(value, label='Reason')


class FinalizeAppointmentRequest(BaseModel):
    result: str
    notes: str | None = None

    @field_validator('result')
    @classmethod
    def validate_result(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in APPOINTMENT_RESULTS:
            raise ValueError('Result must be pass or fail.')
        return normalized

    @field_validator('notes')
    @classmethod
    def validate_notes(cls, value: str | None) -> str | None:
        return normalize_optional_text(value)


class CancelAppointmentRequest(BaseModel):
    reason: str | None = None

    @field_validator('reason')
    @classmethod
    def validate_reason(cls, value: str | None) -> str | None:
        return normalize_optional_text(value, label='Reason')


class AppointmentResponse(BaseModel):
    id: int
    user_id: int
    machine_id: int
    manager_id: int
    availability_rule_id: int | None = None
    start_time: datetime
    end_time: datetime
    status: str
    notes: str | None = None
    decision_reason: str | None = None
    result: str | None = None
    result_notes: str | None = None
    reviewed_by: int | None = None
    reviewed_at: datetime | None = None
    resulted_by: int | None = None
    resulted_at: datetime | None = None
    cancellation_reason: str | None = None
    created_at: datetime

    class Config:
        from_attributes = True


class FinalizeAppointmentResponse(BaseModel):
    appointment: AppointmentResponse
    checkout_granted: bool


class AppointmentEventResponse(BaseModel):
    id: int
    appointment_id: int
    event_type: str
    actor_id: int | None = None
    actor_role: str | None = None
    from_status: str | None = None
    to_status: str | None = None
    event_metadata: dict
    created_at: datetime

    class Config:
        from_attributes = True


@router.post('', response_model=AppointmentResponse, status_code=status.HTTP_201_CREATED)
def request_checkout_appointment(
    data: RequestAppointmentRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    try:
        return booking.request_appointment(
            db,
            member_id=current_user.id,
            machine_id=data.machine_id,
            manager_id=data.manager_id,
            slot_start_time=data.slot_start_time,
            notes=data.notes,
        )
    except SchedulingError as exc:
        raise scheduling_http_error(exc) from exc
    except SQLAlchemyError as exc:
        raise database_unavailable(db) from exc


@router.get('', response_model=list[AppointmentResponse])
def list_checkout_appointments(
    status_filter: str | None = Query(default=None, alias='status'),
    machine_id: int | None = Query(default=None),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    if status_filter is not None and status_filter not in APPOINTMENT_STATUSES:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail='Invalid appointment status.',
        )

    filters = {'status': status_filter, 'machine_id': machine_id}
    if current_user.role == ROLE_MANAGER:
        filters['manager_id'] = current_user.id
    elif current_user.role != ROLE_ADMIN:
        filters['user_id'] = current_user.id

    ensure_database_ready()

    try:
        return appointments.list_appointments(db, **filters)
    except SQLAlchemyError as exc:
        raise database_unavailable(db) from exc


@router.post('/{appointment_id}/moderate', response_model=AppointmentResponse)
def moderate_checkout_appointment(
    appointment_id: int,
    data: ModerateAppointmentRequest,
    current_user: User = Depends(require_admin),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    try:
        return appointments.moderate_appointment_request(
            db,
            appointment_id=appointment_id,
            admin_id=current_user.id,
            decision=data.decision,
            reason=data.reason,
        )
    except SchedulingError as exc:
        raise scheduling_http_error(exc) from exc
    except SQLAlchemyError as exc:
        raise database_unavailable(db) from exc


@router.post('/{appointment_id}/finalize', response_model=FinalizeAppointmentResponse)
def finalize_checkout_appointment(
    appointment_id: int,
    data: FinalizeAppointmentRequest,
    current_user: User = Depends(require_admin),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    try:
        result = appointments.finalize_appointment(
            db,
            appointment_id=appointment_id,
            admin_id=current_user.id,
            result=data.result,
            notes=data.notes,
        )
    except SchedulingError as exc:
        raise scheduling_http_error(exc) from exc
    except SQLAlchemyError as exc:
        raise database_unavailable(db) from exc

    return FinalizeAppointmentResponse(
        appointment=AppointmentResponse.model_validate(result.appointment),
        checkout_granted=result.checkout_granted,
    )


@router.post('/{appointment_id}/cancel', response_model=AppointmentResponse)
def cancel_checkout_appointment(
    appointment_id: int,
    data: CancelAppointmentRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    try:
        return appointments.cancel_appointment(
            db,
            appointment_id=appointment_id,
            actor_id=current_user.id,
            actor_role=current_user.role,
            reason=data.reason,
        )
    except SchedulingError as exc:
        raise scheduling_http_error(exc) from exc
    except SQLAlchemyError as exc:
        raise database_unavailable(db) from exc


@router.get('/{appointment_id}/events', response_model=list[AppointmentEventResponse])
def list_checkout_appointment_events(
    appointment_id: int,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    try:
        appointment = appointments.get_appointment(db, appointment_id)
        if current_user.role != ROLE_ADMIN and current_user.id not in (appointment.user_id, appointment.manager_id):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail='You cannot view this checkout appointment.',
            )
        return appointments.list_appointment_events(db, appointment_id)
    except SchedulingError as exc:
        raise scheduling_http_error(exc) from exc
    except SQLAlchemyError as exc:
        raise database_unavailable(db) from exc


@router.get('/eligibility/{machine_id}', response_model=EligibilityResult)
def get_my_eligibility(
    machine_id: int,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    try:
        return check_eligibility(db, current_user.id, machine_id)
    except SQLAlchemyError as exc:
        raise database_unavailable(db) from exc
