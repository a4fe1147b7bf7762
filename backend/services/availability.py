"""Manager availability rules and the bookable-slot query built on them."""

import logging
from datetime import datetime, timedelta
from typing import NamedTuple
from zoneinfo import ZoneInfoNotFoundError

from sqlalchemy.orm import Session

from backend.core import config
from backend.core.clock import ensure_utc, resolve_now
from backend.core.errors import (
    ForbiddenError,
    InactiveResourceError,
    InvalidRangeError,
    NotFoundError,
    OverlapConflictError,
)
from backend.models.appointment import ACTIVE_APPOINTMENT_STATUSES, Appointment
from backend.models.availability import MINUTES_PER_DAY, AvailabilityRule
from backend.models.machine import Machine
from backend.models.user import ROLE_ADMIN, ROLE_MANAGER, STATUS_ACTIVE, User
from backend.services.conflicts import appointment_blocks_slot, get_appointments_in_range
from backend.services.eligibility import has_standing_checkout
from backend.services.locks import locked_transaction
from backend.services.settings import get_makerspace_timezone
from backend.services.slot_generator import iter_rule_slots, rule_window
from backend.services.timezone_math import TimeZoneMath

logger = logging.getLogger(__name__)

RULE_MANAGER_ROLES = (ROLE_MANAGER, ROLE_ADMIN)


class AvailableSlot(NamedTuple):
    rule_id: int
    manager_id: int
    manager_email: str
    manager_name: str | None
    notes: str | None
    start_time: datetime
    end_time: datetime


class ManagerSchedule(NamedTuple):
    rules: list[AvailabilityRule]
    appointments: list[Appointment]


def validate_minute_range(start_minute_of_day: int, end_minute_of_day: int) -> str | None:
    if not isinstance(start_minute_of_day, int) or not isinstance(end_minute_of_day, int):
        return 'Start and end times must align to whole minutes'

    if start_minute_of_day < 0 or start_minute_of_day >= MINUTES_PER_DAY:
        return 'Start time must be within the day'

    if end_minute_of_day <= 0 or end_minute_of_day > MINUTES_PER_DAY:
        return 'End time must be within the day'

    if end_minute_of_day <= start_minute_of_day:
        return 'End time must be after start time'

    return None


def find_overlapping_rules(
    db: Session,
    manager_id: int,
    day_of_week: int,
    start_minute_of_day: int,
    end_minute_of_day: int,
) -> list[AvailabilityRule]:
    return db.query(AvailabilityRule).filter(
        AvailabilityRule.manager_id == manager_id,
        AvailabilityRule.active.is_(True),
        AvailabilityRule.day_of_week == day_of_week,
        AvailabilityRule.start_minute_of_day < end_minute_of_day,
        AvailabilityRule.end_minute_of_day > start_minute_of_day,
    ).all()


def create_availability_rule(
    db: Session,
    manager_id: int,
    day_of_week: int,
    start_minute_of_day: int,
    end_minute_of_day: int,
    notes: str | None = None,
    tz_math: TimeZoneMath | None = None,
) -> AvailabilityRule:
    if not isinstance(day_of_week, int) or day_of_week < 0 or day_of_week > 6:
        raise InvalidRangeError('Invalid day of week')

    range_error = validate_minute_range(start_minute_of_day, end_minute_of_day)
    if range_error:
        raise InvalidRangeError(range_error)

    manager = db.get(User, manager_id)
    if manager is None:
        raise NotFoundError('Manager not found')

    if not manager.is_active:
        raise InactiveResourceError('Manager account is not active')

    if manager.role not in RULE_MANAGER_ROLES:
        raise ForbiddenError('Only managers/admins can create checkout availability')

    timezone_name = get_makerspace_timezone(db, tz_math)

    with locked_transaction(db, manager_id=manager_id):
        if find_overlapping_rules(db, manager_id, day_of_week, start_minute_of_day, end_minute_of_day):
            raise OverlapConflictError()

        rule = AvailabilityRule(
            manager_id=manager_id,
            day_of_week=day_of_week,
            start_minute_of_day=start_minute_of_day,
            end_minute_of_day=end_minute_of_day,
            timezone=timezone_name,
            notes=notes,
            active=True,
        )
        db.add(rule)

    db.refresh(rule)
    logger.info(
        'Created availability rule %s for manager %s (day %s, %s-%s %s)',
        rule.id, manager_id, day_of_week, start_minute_of_day, end_minute_of_day, timezone_name,
    )
    return rule


def deactivate_availability_rule(db: Session, rule_id: int, manager_id: int) -> AvailabilityRule:
    """Soft-delete a rule. Deactivating an inactive rule returns it unchanged."""
    rule = db.query(AvailabilityRule).filter(
        AvailabilityRule.id == rule_id,
        AvailabilityRule.manager_id == manager_id,
    ).first()

    if rule is None:
        raise NotFoundError('Availability rule not found')

    if not rule.active:
        return rule

    rule.active = False
    db.commit()
    db.refresh(rule)
    logger.info('Deactivated availability rule %s for manager %s', rule_id, manager_id)
    return rule


def list_availability_rules(
    db: Session,
    manager_id: int | None = None,
    include_inactive: bool = True,
) -> list[AvailabilityRule]:
    query = db.query(AvailabilityRule)
    if manager_id is not None:
        query = query.filter(AvailabilityRule.manager_id == manager_id)
    if not include_inactive:
        query = query.filter(AvailabilityRule.active.is_(True))

    return query.order_by(
        AvailabilityRule.day_of_week.asc(),
        AvailabilityRule.start_minute_of_day.asc(),
        AvailabilityRule.id.asc(),
    ).all()


def has_open_checkout_request(db: Session, user_id: int, machine_id: int, now: datetime) -> bool:
    return db.query(Appointment.id).filter(
        Appointment.user_id == user_id,
        Appointment.machine_id == machine_id,
        Appointment.status.in_(ACTIVE_APPOINTMENT_STATUSES),
        Appointment.end_time > now,
    ).first() is not None


def _member_is_disqualified(db: Session, member_id: int, machine_id: int, now: datetime) -> bool:
    member = db.get(User, member_id)
    if member is not None and member.role == ROLE_ADMIN:
        return True

    if has_standing_checkout(db, member_id, machine_id):
        return True

    return has_open_checkout_request(db, member_id, machine_id, now)


def resolve_slot_window(
    window_start: datetime | None,
    window_end: datetime | None,
    now: datetime,
) -> tuple[datetime, datetime]:
    start = ensure_utc(window_start) if window_start is not None else now
    end = ensure_utc(window_end) if window_end is not None else start + timedelta(days=config.DEFAULT_SLOT_WINDOW_DAYS)
    return start, min(end, start + timedelta(days=config.MAX_SLOT_WINDOW_DAYS))


def get_available_slots(
    db: Session,
    machine_id: int,
    member_id: int | None = None,
    window_start: datetime | None = None,
    window_end: datetime | None = None,
    now: datetime | None = None,
    tz_math: TimeZoneMath | None = None,
) -> list[AvailableSlot]:
    """
    Bookable checkout slots for ``machine_id`` in the window, soonest first.

    Returns an empty list instead of failing when the machine is missing or
    inactive, or when the member is already checked out or already has an
    open request for the machine. A slot is dropped if it has started or if a
    pending/accepted appointment overlaps it with the same manager, the same
    machine, or the same member.
    """
    now = resolve_now(now)
    tz_math = tz_math or TimeZoneMath()
    window_start, window_end = resolve_slot_window(window_start, window_end, now)
    if window_end <= window_start:
        return []

    machine = db.get(Machine, machine_id)
    if machine is None or not machine.active:
        return []

    if member_id is not None and _member_is_disqualified(db, member_id, machine_id, now):
        return []

    rules = db.query(AvailabilityRule).join(User, AvailabilityRule.manager_id == User.id).filter(
        AvailabilityRule.active.is_(True),
        User.status == STATUS_ACTIVE,
    ).order_by(
        AvailabilityRule.day_of_week.asc(),
        AvailabilityRule.start_minute_of_day.asc(),
        AvailabilityRule.id.asc(),
    ).all()

    if not rules:
        return []

    generated_by_rule = []
    for rule in rules:
        try:
            generated = list(
                iter_rule_slots(tz_math, rule_window(rule), window_start, window_end, machine.training_duration_minutes)
            )
        except (ZoneInfoNotFoundError, ValueError):
            logger.warning('Skipping availability rule %s with unusable timezone %r', rule.id, rule.timezone)
            continue
        generated_by_rule.append((rule, [slot for slot in generated if slot.start_time > now]))

    candidates = [slot for _, generated in generated_by_rule for slot in generated]
    if not candidates:
        return []

    # Edge slots extend past the window; blockers are loaded over the slots' full span.
    appointments = get_appointments_in_range(
        db,
        min(slot.start_time for slot in candidates),
        max(slot.end_time for slot in candidates),
    )

    slots: list[AvailableSlot] = []
    for rule, generated in generated_by_rule:
        for slot in generated:
            has_conflict = any(
                appointment_blocks_slot(
                    appointment,
                    slot.start_time,
                    slot.end_time,
                    manager_id=rule.manager_id,
                    machine_id=machine_id,
                    user_id=member_id,
                )
                for appointment in appointments
            )
            if has_conflict:
                continue

            slots.append(
                AvailableSlot(
                    rule_id=rule.id,
                    manager_id=rule.manager_id,
                    manager_email=rule.manager.email,
                    manager_name=rule.manager.name,
                    notes=rule.notes,
                    start_time=slot.start_time,
                    end_time=slot.end_time,
                )
            )

    return sorted(slots, key=lambda slot: (slot.start_time, slot.manager_id, slot.rule_id))


def get_manager_schedule(
    db: Session,
    manager_id: int,
    window_start: datetime,
    window_end: datetime,
) -> ManagerSchedule:
    rules = list_availability_rules(db, manager_id=manager_id)
    appointments = db.query(Appointment).filter(
        Appointment.manager_id == manager_id,
        Appointment.status.in_(ACTIVE_APPOINTMENT_STATUSES),
        Appointment.start_time < ensure_utc(window_end),
        Appointment.end_time > ensure_utc(window_start),
    ).order_by(Appointment.start_time.asc()).all()

    return ManagerSchedule(rules=rules, appointments=appointments)
