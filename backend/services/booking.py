"""Atomic creation of checkout appointment requests."""

import logging
from datetime import datetime, timedelta

from sqlalchemy.orm import Session

from backend.core.clock import ensure_utc, resolve_now
from backend.core.errors import (
    AlreadyCheckedOutError,
    ExistingRequestError,
    InactiveResourceError,
    NotFoundError,
    SlotConflictError,
    SlotMisalignedError,
    SlotUnavailableError,
    TrainingIncompleteError,
)
from backend.models.appointment import EVENT_REQUESTED, STATUS_PENDING, Appointment
from backend.models.availability import AvailabilityRule
from backend.models.machine import Machine
from backend.models.user import User
from backend.services import notifications
from backend.services.appointments import normalize_text, record_appointment_event
from backend.services.availability import RULE_MANAGER_ROLES, has_open_checkout_request
from backend.services.conflicts import find_appointment_conflicts
from backend.services.eligibility import check_eligibility, has_standing_checkout
from backend.services.locks import locked_transaction
from backend.services.timezone_math import TimeZoneMath

logger = logging.getLogger(__name__)


def normalize_slot_start(slot_start_time: datetime) -> datetime:
    return ensure_utc(slot_start_time).replace(second=0, microsecond=0)


def find_matching_rule(
    db: Session,
    tz_math: TimeZoneMath,
    manager_id: int,
    slot_start: datetime,
    duration_minutes: int,
) -> AvailabilityRule:
    """
    Active rule of ``manager_id`` that generates a slot starting at ``slot_start``.

    Raises SlotMisalignedError when a rule window contains the slot but the
    start is off the rule's slot grid, and SlotUnavailableError when no active
    rule covers the slot at all.
    """
    duration = timedelta(minutes=duration_minutes)
    slot_end = slot_start + duration
    misaligned = False

    rules = db.query(AvailabilityRule).filter(
        AvailabilityRule.manager_id == manager_id,
        AvailabilityRule.active.is_(True),
    ).order_by(AvailabilityRule.id.asc()).all()

    for rule in rules:
        if not tz_math.is_valid_timezone(rule.timezone):
            continue

        local_parts = tz_math.instant_to_zoned_parts(slot_start, rule.timezone)
        if local_parts.day_of_week != rule.day_of_week:
            continue

        window_start = tz_math.local_minute_to_utc(local_parts.local_date, rule.start_minute_of_day, rule.timezone)
        window_end = tz_math.local_minute_to_utc(local_parts.local_date, rule.end_minute_of_day, rule.timezone)
        if slot_start < window_start or slot_end > window_end:
            continue

        if (slot_start - window_start) % duration == timedelta(0):
            return rule
        misaligned = True

    if misaligned:
        raise SlotMisalignedError()
    raise SlotUnavailableError()


def _load_participants(db: Session, member_id: int, machine_id: int, manager_id: int) -> tuple[User, Machine, User]:
    member = db.get(User, member_id)
    if member is None:
        raise NotFoundError('User not found')
    if not member.is_active:
        raise InactiveResourceError('User account is not active')

    machine = db.get(Machine, machine_id)
    if machine is None:
        raise NotFoundError('Machine not found')
    if not machine.active:
        raise InactiveResourceError('Machine is not available')

    manager = db.get(User, manager_id)
    if manager is None or manager.role not in RULE_MANAGER_ROLES:
        raise NotFoundError('Manager not found')
    if not manager.is_active:
        raise InactiveResourceError('Manager account is not active')

    return member, machine, manager


def request_appointment(
    db: Session,
    member_id: int,
    machine_id: int,
    manager_id: int,
    slot_start_time: datetime,
    notes: str | None = None,
    now: datetime | None = None,
    tz_math: TimeZoneMath | None = None,
) -> Appointment:
    """
    Create a pending checkout appointment for one generated slot.

    Cheap validation runs first and unlocked. The final checks (standing
    checkout, open request, overlapping bookings for the manager, machine or
    member) are repeated while holding the manager, machine and member locks,
    and the appointment plus its ``requested`` event are written in that same
    transaction, so of two concurrent requests for one slot exactly one wins.
    """
    now = resolve_now(now)
    tz_math = tz_math or TimeZoneMath()
    notes = normalize_text(notes)

    member, machine, manager = _load_participants(db, member_id, machine_id, manager_id)

    if has_standing_checkout(db, member.id, machine.id):
        raise AlreadyCheckedOutError()

    slot_start = normalize_slot_start(slot_start_time)
    if slot_start <= now:
        raise SlotUnavailableError('This checkout slot has already started')

    rule = find_matching_rule(db, tz_math, manager.id, slot_start, machine.training_duration_minutes)
    slot_end = slot_start + timedelta(minutes=machine.training_duration_minutes)

    eligibility = check_eligibility(db, member.id, machine.id)
    if not eligibility.training_complete:
        raise TrainingIncompleteError(reasons=eligibility.training_reasons)
    if eligibility.has_checkout:
        raise AlreadyCheckedOutError()

    if has_open_checkout_request(db, member.id, machine.id, now):
        raise ExistingRequestError()

    if find_appointment_conflicts(
        db, slot_start, slot_end, manager_id=manager.id, machine_id=machine.id, user_id=member.id,
    ):
        raise SlotConflictError()

    with locked_transaction(db, manager_id=manager.id, machine_id=machine.id, user_id=member.id):
        if has_standing_checkout(db, member.id, machine.id):
            raise AlreadyCheckedOutError()

        if has_open_checkout_request(db, member.id, machine.id, now):
            raise ExistingRequestError()

        if find_appointment_conflicts(
            db, slot_start, slot_end, manager_id=manager.id, machine_id=machine.id, user_id=member.id,
        ):
            raise SlotConflictError()

        appointment = Appointment(
            user_id=member.id,
            machine_id=machine.id,
            manager_id=manager.id,
            availability_rule_id=rule.id,
            start_time=slot_start,
            end_time=slot_end,
            status=STATUS_PENDING,
            notes=notes,
        )
        db.add(appointment)
        db.flush()

        record_appointment_event(
            db,
            appointment,
            EVENT_REQUESTED,
            member.id,
            member.role,
            None,
            STATUS_PENDING,
            {'availabilityRuleId': rule.id, 'slotStart': slot_start.isoformat()},
        )

    db.refresh(appointment)
    logger.info(
        'Member %s requested checkout appointment %s on machine %s with manager %s at %s',
        member.id, appointment.id, machine.id, manager.id, slot_start.isoformat(),
    )
    notifications.notify_admins_checkout_request_submitted(db, appointment)
    return appointment
