from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, field_validator
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from backend.auth.dependencies import get_current_user, require_admin, require_manager
from backend.core.errors import SchedulingError
from backend.database import get_db
from backend.models.user import ROLE_ADMIN, ROLE_MEMBER, User
from backend.routes.common import (
    database_unavailable,
    ensure_database_ready,
    normalize_optional_text,
    scheduling_http_error,
)
from backend.services import availability, settings

router = APIRouter(tags=['availability'])


class CreateRuleRequest(BaseModel):
    day_of_week: int
    start_minute_of_day: int
    end_minute_of_day: int
    notes: str | None = None

    @field_validator('notes')
    @classmethod
    def validate_notes(cls, value: str | None) -> str | None:
        return normalize_optional_text(value)


class RuleResponse(BaseModel):
    id: int
    manager_id: int
    day_of_week: int
    start_minute_of_day: int
    end_minute_of_day: int
    timezone: str
    notes: str | None = None
    active: bool

    class Config:
        from_attributes = True


class SlotResponse(BaseModel):
    rule_id: int
    manager_id: int
    manager_email: str
    manager_name: str | None = None
    notes: str | None = None
    start_time: datetime
    end_time: datetime


class ScheduledAppointmentResponse(BaseModel):
    id: int
    user_id: int
    machine_id: int
    start_time: datetime
    end_time: datetime
    status: str

    class Config:
        from_attributes = True


class ManagerScheduleResponse(BaseModel):
    rules: list[RuleResponse]
    appointments: list[ScheduledAppointmentResponse]


class TimezoneSettingRequest(BaseModel):
    timezone: str

    @field_validator('timezone')
    @classmethod
    def validate_timezone(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError('Timezone is required.')
        return normalized


class TimezoneSettingResponse(BaseModel):
    timezone: str


@router.post('/rules', response_model=RuleResponse, status_code=status.HTTP_201_CREATED)
def create_rule(
    data: CreateRuleRequest,
    current_user: User = Depends(require_manager),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    try:
        return availability.create_availability_rule(
            db,
            manager_id=current_user.id,
            day_of_week=data.day_of_week,
            start_minute_of_day=data.start_minute_of_day,
            end_minute_of_day=data.end_minute_of_day,
            notes=data.notes,
        )
    except SchedulingError as exc:
        raise scheduling_http_error(exc) from exc
    except SQLAlchemyError as exc:
        raise database_unavailable(db) from exc


@router.delete('/rules/{rule_id}', response_model=RuleResponse)
def deactivate_rule(
    rule_id: int,
    current_user: User = Depends(require_manager),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    try:
        return availability.deactivate_availability_rule(db, rule_id=rule_id, manager_id=current_user.id)
    except SchedulingError as exc:
        raise scheduling_http_error(exc) from exc
    except SQLAlchemyError as exc:
        raise database_unavailable(db) from exc


@router.get('/rules', response_model=list[RuleResponse])
def list_rules(
    manager_id: int | None = Query(default=None),
    include_inactive: bool = Query(default=True),
    current_user: User = Depends(require_manager),
    db: Session = Depends(get_db),
):
    if current_user.role != ROLE_ADMIN:
        if manager_id is not None and manager_id != current_user.id:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail='Managers can only view their own availability.',
            )
        manager_id = current_user.id

    ensure_database_ready()

    try:
        return availability.list_availability_rules(db, manager_id=manager_id, include_inactive=include_inactive)
    except SQLAlchemyError as exc:
        raise database_unavailable(db) from exc


@router.get('/slots', response_model=list[SlotResponse])
def list_available_slots(
    machine_id: int = Query(...),
    window_start: datetime | None = Query(default=None),
    window_end: datetime | None = Query(default=None),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    member_id = current_user.id if current_user.role == ROLE_MEMBER else None

    try:
        slots = availability.get_available_slots(
            db,
            machine_id=machine_id,
            member_id=member_id,
            window_start=window_start,
            window_end=window_end,
        )
    except SQLAlchemyError as exc:
        raise database_unavailable(db) from exc

    return [SlotResponse(**slot._asdict()) for slot in slots]


@router.get('/schedule', response_model=ManagerScheduleResponse)
def get_my_schedule(
    window_start: datetime = Query(...),
    window_end: datetime = Query(...),
    current_user: User = Depends(require_manager),
    db: Session = Depends(get_db),
):
    if window_end <= window_start:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail='Window end must be after window start.',
        )

    ensure_database_ready()

    try:
        schedule = availability.get_manager_schedule(db, current_user.id, window_start, window_end)
    except SQLAlchemyError as exc:
        raise database_unavailable(db) from exc

    return ManagerScheduleResponse(
        rules=[RuleResponse.model_validate(rule) for rule in schedule.rules],
        appointments=[ScheduledAppointmentResponse.model_validate(item) for item in schedule.appointments],
    )


@router.get('/timezone', response_model=TimezoneSettingResponse)
def get_timezone_setting(db: Session = Depends(get_db)):
    ensure_database_ready()

    try:
        return TimezoneSettingResponse(timezone=settings.get_makerspace_timezone(db))
    except SQLAlchemyError as exc:
        raise database_unavailable(db) from exc


@router.put('/timezone', response_model=TimezoneSettingResponse)
def update_timezone_setting(
    data: TimezoneSettingRequest,
    current_user: User = Depends(require_admin),
    db: Session = Depends(get_db),
):
    del current_user
    ensure_database_ready()

    try:
        setting = settings.set_makerspace_timezone(db, data.timezone)
    except SchedulingError as exc:
        raise scheduling_http_error(exc) from exc
    except SQLAlchemyError as exc:
        raise database_unavailable(db) from exc

    return TimezoneSettingResponse(timezone=setting.value)
