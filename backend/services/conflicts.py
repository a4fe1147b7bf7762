"""Half-open interval conflict detection shared by appointments and reservations."""

from datetime import datetime
from typing import Iterable

from sqlalchemy import or_
from sqlalchemy.orm import Session

from backend.models.appointment import ACTIVE_APPOINTMENT_STATUSES, Appointment
from backend.models.reservation import CONFLICTING_RESERVATION_STATUSES, Reservation


def ranges_overlap(left_start: datetime, left_end: datetime, right_start: datetime, right_end: datetime) -> bool:
    return left_start < right_end and left_end > right_start


def appointment_blocks_slot(
    appointment,
    slot_start: datetime,
    slot_end: datetime,
    manager_id: int | None = None,
    machine_id: int | None = None,
    user_id: int | None = None,
) -> bool:
    """True when ``appointment`` overlaps the slot and shares its manager, machine or member."""
    if not ranges_overlap(slot_start, slot_end, appointment.start_time, appointment.end_time):
        return False

    if manager_id is not None and appointment.manager_id == manager_id:
        return True
    if machine_id is not None and appointment.machine_id == machine_id:
        return True
    if user_id is not None and appointment.user_id == user_id:
        return True

    return False


def filter_blocking_appointments(
    appointments: Iterable,
    slot_start: datetime,
    slot_end: datetime,
    manager_id: int | None = None,
    machine_id: int | None = None,
    user_id: int | None = None,
) -> list:
    return [
        appointment
        for appointment in appointments
        if appointment_blocks_slot(appointment, slot_start, slot_end, manager_id, machine_id, user_id)
    ]


def get_appointments_in_range(
    db: Session,
    start_time: datetime,
    end_time: datetime,
    statuses: Iterable[str] = ACTIVE_APPOINTMENT_STATUSES,
) -> list[Appointment]:
    return db.query(Appointment).filter(
        Appointment.status.in_(tuple(statuses)),
        Appointment.start_time < end_time,
        Appointment.end_time > start_time,
    ).order_by(Appointment.start_time.asc()).all()


def find_appointment_conflicts(
    db: Session,
    start_time: datetime,
    end_time: datetime,
    manager_id: int | None = None,
    machine_id: int | None = None,
    user_id: int | None = None,
    statuses: Iterable[str] = ACTIVE_APPOINTMENT_STATUSES,
    exclude_appointment_id: int | None = None,
) -> list[Appointment]:
    identity_filters = []
    if manager_id is not None:
        identity_filters.append(Appointment.manager_id == manager_id)
    if machine_id is not None:
        identity_filters.append(Appointment.machine_id == machine_id)
    if user_id is not None:
        identity_filters.append(Appointment.user_id == user_id)

    if not identity_filters:
        return []

    query = db.query(Appointment).filter(
        Appointment.status.in_(tuple(statuses)),
        Appointment.start_time < end_time,
        Appointment.end_time > start_time,
        or_(*identity_filters),
    )
    if exclude_appointment_id is not None:
        query = query.filter(Appointment.id != exclude_appointment_id)

    candidates = query.all()
    return filter_blocking_appointments(candidates, start_time, end_time, manager_id, machine_id, user_id)


def find_reservation_conflicts(
    db: Session,
    machine_id: int,
    start_time: datetime,
    end_time: datetime,
    exclude_reservation_id: int | None = None,
) -> list[Reservation]:
    query = db.query(Reservation).filter(
        Reservation.machine_id == machine_id,
        Reservation.start_time < end_time,
        Reservation.end_time > start_time,
        Reservation.status.in_(CONFLICTING_RESERVATION_STATUSES),
    )
    if exclude_reservation_id is not None:
        query = query.filter(Reservation.id != exclude_reservation_id)

    return query.order_by(Reservation.start_time.asc()).all()


def has_reservation_conflict(
    db: Session,
    machine_id: int,
    start_time: datetime,
    end_time: datetime,
    exclude_reservation_id: int | None = None,
) -> bool:
    return bool(find_reservation_conflicts(db, machine_id, start_time, end_time, exclude_reservation_id))


def get_machine_bookings_in_range(
    db: Session,
    machine_id: int,
    start_time: datetime,
    end_time: datetime,
) -> list[Reservation]:
    return find_reservation_conflicts(db, machine_id, start_time, end_time)
