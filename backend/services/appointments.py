"""Checkout appointment lifecycle.

    pending  -> accepted | rejected | cancelled
    accepted -> completed (pass/fail) | cancelled

``rejected``, ``cancelled`` and ``completed`` are terminal. Every transition
writes exactly one ``AppointmentEvent`` in the same transaction as the status
change, and notifications are sent only after that transaction commits.
"""

import logging
from datetime import datetime
from typing import NamedTuple

from sqlalchemy.orm import Session

from backend.core.clock import resolve_now
from backend.core.errors import (
    AlreadyStartedError,
    ForbiddenError,
    InvalidRangeError,
    NotAcceptedError,
    NotCancellableError,
    NotFoundError,
    NotPendingError,
    ReasonRequiredError,
    SlotConflictError,
    SlotUnavailableError,
)
from backend.models.appointment import (
    ACTIVE_APPOINTMENT_STATUSES,
    APPOINTMENT_RESULTS,
    EVENT_ACCEPTED,
    EVENT_CANCELLED,
    EVENT_FAILED,
    EVENT_PASSED,
    EVENT_REJECTED,
    RESULT_PASS,
    STATUS_ACCEPTED,
    STATUS_CANCELLED,
    STATUS_COMPLETED,
    STATUS_PENDING,
    STATUS_REJECTED,
    Appointment,
    AppointmentEvent,
)
from backend.models.checkout import ManagerCheckout
from backend.models.user import ROLE_ADMIN, ROLE_MANAGER, ROLE_MEMBER, User
from backend.services import notifications
from backend.services.conflicts import find_appointment_conflicts
from backend.services.locks import locked_transaction

logger = logging.getLogger(__name__)

DECISION_ACCEPT = 'accept'
DECISION_REJECT = 'reject'
MODERATION_DECISIONS = (DECISION_ACCEPT, DECISION_REJECT)


class FinalizeResult(NamedTuple):
    appointment: Appointment
    checkout_granted: bool


def normalize_text(value: str | None) -> str | None:
    if value is None:
        return None
    normalized = value.strip()
    return normalized or None


def record_appointment_event(
    db: Session,
    appointment: Appointment,
    event_type: str,
    actor_id: int | None,
    actor_role: str | None,
    from_status: str | None,
    to_status: str,
    metadata: dict | None = None,
) -> AppointmentEvent:
    """Stage one audit row; the caller's transaction commits it with the status change."""
    event = AppointmentEvent(
        appointment_id=appointment.id,
        event_type=event_type,
        actor_id=actor_id,
        actor_role=actor_role,
        from_status=from_status,
        to_status=to_status,
        event_metadata=metadata or {},
    )
    db.add(event)
    return event


def get_appointment(db: Session, appointment_id: int) -> Appointment:
    appointment = db.get(Appointment, appointment_id)
    if appointment is None:
        raise NotFoundError('Checkout appointment not found')
    return appointment


def list_appointments(
    db: Session,
    status: str | None = None,
    user_id: int | None = None,
    manager_id: int | None = None,
    machine_id: int | None = None,
) -> list[Appointment]:
    query = db.query(Appointment)
    if status is not None:
        query = query.filter(Appointment.status == status)
    if user_id is not None:
        query = query.filter(Appointment.user_id == user_id)
    if manager_id is not None:
        query = query.filter(Appointment.manager_id == manager_id)
    if machine_id is not None:
        query = query.filter(Appointment.machine_id == machine_id)

    return query.order_by(Appointment.start_time.asc(), Appointment.id.asc()).all()


def list_appointment_events(db: Session, appointment_id: int) -> list[AppointmentEvent]:
    get_appointment(db, appointment_id)
    return db.query(AppointmentEvent).filter(
        AppointmentEvent.appointment_id == appointment_id,
    ).order_by(AppointmentEvent.created_at.asc(), AppointmentEvent.id.asc()).all()


def _get_admin(db: Session, admin_id: int) -> User:
    admin = db.get(User, admin_id)
    if admin is None:
        raise NotFoundError('Admin not found')
    if admin.role != ROLE_ADMIN or not admin.is_active:
        raise ForbiddenError('Only active admins can review checkout requests')
    return admin


def moderate_appointment_request(
    db: Session,
    appointment_id: int,
    admin_id: int,
    decision: str,
    reason: str | None = None,
    now: datetime | None = None,
) -> Appointment:
    """
    Accept or reject a pending checkout request.

    Rejection needs a reason. Acceptance is refused for slots that already
    started and re-checks, under the booking locks, that no accepted
    appointment has claimed the manager, machine or member in the meantime.
    """
    now = resolve_now(now)
    reason = normalize_text(reason)

    if decision not in MODERATION_DECISIONS:
        raise InvalidRangeError('Decision must be accept or reject')

    admin = _get_admin(db, admin_id)
    appointment = get_appointment(db, appointment_id)

    if appointment.status != STATUS_PENDING:
        raise NotPendingError(f'Checkout request is already {appointment.status}')

    if decision == DECISION_REJECT:
        if not reason:
            raise ReasonRequiredError('A reason is required to reject a checkout request')

        with locked_transaction(db, machine_id=appointment.machine_id, user_id=appointment.user_id):
            db.refresh(appointment)
            if appointment.status != STATUS_PENDING:
                raise NotPendingError(f'Checkout request is already {appointment.status}')

            appointment.status = STATUS_REJECTED
            appointment.decision_reason = reason
            appointment.reviewed_by = admin.id
            appointment.reviewed_at = now
            record_appointment_event(
                db, appointment, EVENT_REJECTED, admin.id, admin.role, STATUS_PENDING, STATUS_REJECTED,
                {'reason': reason},
            )

        db.refresh(appointment)
        logger.info('Appointment %s rejected by admin %s', appointment.id, admin.id)
        notifications.notify_user_checkout_request_rejected(db, appointment, admin, reason)
        return appointment

    if appointment.start_time <= now:
        raise SlotUnavailableError('Cannot accept a checkout request whose slot has already started')

    with locked_transaction(
        db,
        manager_id=appointment.manager_id,
        machine_id=appointment.machine_id,
        user_id=appointment.user_id,
    ):
        db.refresh(appointment)
        if appointment.status != STATUS_PENDING:
            raise NotPendingError(f'Checkout request is already {appointment.status}')

        conflicts = find_appointment_conflicts(
            db,
            appointment.start_time,
            appointment.end_time,
            manager_id=appointment.manager_id,
            machine_id=appointment.machine_id,
            user_id=appointment.user_id,
            statuses=(STATUS_ACCEPTED,),
            exclude_appointment_id=appointment.id,
        )
        if conflicts:
            raise SlotConflictError('Cannot accept request because the slot is already taken')

        appointment.status = STATUS_ACCEPTED
        appointment.decision_reason = reason
        appointment.reviewed_by = admin.id
        appointment.reviewed_at = now
        record_appointment_event(
            db, appointment, EVENT_ACCEPTED, admin.id, admin.role, STATUS_PENDING, STATUS_ACCEPTED,
            {'reason': reason} if reason else None,
        )

    db.refresh(appointment)
    logger.info('Appointment %s accepted by admin %s', appointment.id, admin.id)
    notifications.notify_user_checkout_request_accepted(db, appointment, admin)
    return appointment


def finalize_appointment(
    db: Session,
    appointment_id: int,
    admin_id: int,
    result: str,
    notes: str | None = None,
    now: datetime | None = None,
) -> FinalizeResult:
    """Record pass/fail for an accepted meeting; a pass grants standing checkout if missing."""
    now = resolve_now(now)
    notes = normalize_text(notes)

    if result not in APPOINTMENT_RESULTS:
        raise InvalidRangeError('Result must be pass or fail')

    admin = _get_admin(db, admin_id)
    appointment = get_appointment(db, appointment_id)

    if appointment.status != STATUS_ACCEPTED:
        raise NotAcceptedError(f'Checkout appointment is {appointment.status}, not accepted')

    checkout_granted = False
    with locked_transaction(db, machine_id=appointment.machine_id, user_id=appointment.user_id):
        db.refresh(appointment)
        if appointment.status != STATUS_ACCEPTED:
            raise NotAcceptedError(f'Checkout appointment is {appointment.status}, not accepted')

        appointment.status = STATUS_COMPLETED
        appointment.result = result
        appointment.result_notes = notes
        appointment.resulted_by = admin.id
        appointment.resulted_at = now

        if result == RESULT_PASS:
            existing_checkout = db.query(ManagerCheckout.id).filter(
                ManagerCheckout.user_id == appointment.user_id,
                ManagerCheckout.machine_id == appointment.machine_id,
            ).first()
            if existing_checkout is None:
                db.add(
                    ManagerCheckout(
                        user_id=appointment.user_id,
                        machine_id=appointment.machine_id,
                        approved_by=admin.id,
                        approved_at=now,
                        notes=notes,
                    )
                )
                checkout_granted = True

        record_appointment_event(
            db,
            appointment,
            EVENT_PASSED if result == RESULT_PASS else EVENT_FAILED,
            admin.id,
            admin.role,
            STATUS_ACCEPTED,
            STATUS_COMPLETED,
            {'result': result, 'notes': notes, 'checkoutGranted': checkout_granted},
        )

    db.refresh(appointment)
    logger.info(
        'Appointment %s finalized as %s by admin %s (checkout granted: %s)',
        appointment.id, result, admin.id, checkout_granted,
    )
    notifications.notify_user_checkout_result(db, appointment, admin, result == RESULT_PASS, notes)
    return FinalizeResult(appointment=appointment, checkout_granted=checkout_granted)


def _ensure_actor_may_cancel(appointment: Appointment, actor_id: int, actor_role: str) -> None:
    if actor_role == ROLE_ADMIN:
        return
    if actor_role == ROLE_MEMBER and appointment.user_id == actor_id:
        return
    if actor_role == ROLE_MANAGER and appointment.manager_id == actor_id:
        return
    raise ForbiddenError('You cannot cancel this checkout appointment')


def cancel_appointment(
    db: Session,
    appointment_id: int,
    actor_id: int,
    actor_role: str,
    reason: str | None = None,
    now: datetime | None = None,
) -> Appointment:
    now = resolve_now(now)
    reason = normalize_text(reason)

    appointment = get_appointment(db, appointment_id)
    _ensure_actor_may_cancel(appointment, actor_id, actor_role)

    if appointment.status not in ACTIVE_APPOINTMENT_STATUSES:
        raise NotCancellableError(f'Checkout appointment is already {appointment.status}')

    if appointment.start_time <= now:
        raise AlreadyStartedError('Only future appointments can be cancelled')

    with locked_transaction(db, machine_id=appointment.machine_id, user_id=appointment.user_id):
        db.refresh(appointment)
        if appointment.status not in ACTIVE_APPOINTMENT_STATUSES:
            raise NotCancellableError(f'Checkout appointment is already {appointment.status}')

        from_status = appointment.status
        appointment.status = STATUS_CANCELLED
        appointment.cancellation_reason = reason
        record_appointment_event(
            db, appointment, EVENT_CANCELLED, actor_id, actor_role, from_status, STATUS_CANCELLED,
            {'reason': reason} if reason else None,
        )

    db.refresh(appointment)
    logger.info('Appointment %s cancelled by %s %s', appointment.id, actor_role, actor_id)

    actor = db.get(User, actor_id)
    recipients = [
        participant_id
        for participant_id in (appointment.user_id, appointment.manager_id)
        if participant_id != actor_id
    ]
    notifications.notify_checkout_appointment_cancelled(db, appointment, actor, recipients, reason)
    return appointment


def _cancel_open_appointments(
    db: Session,
    member_id: int,
    machine_id: int,
    actor_id: int | None,
    actor_role: str | None,
    reason: str | None,
    now: datetime,
) -> list[Appointment]:
    appointments = db.query(Appointment).filter(
        Appointment.user_id == member_id,
        Appointment.machine_id == machine_id,
        Appointment.status.in_(ACTIVE_APPOINTMENT_STATUSES),
        Appointment.start_time > now,
    ).order_by(Appointment.start_time.asc()).all()

    for appointment in appointments:
        from_status = appointment.status
        appointment.status = STATUS_CANCELLED
        appointment.cancellation_reason = reason
        record_appointment_event(
            db, appointment, EVENT_CANCELLED, actor_id, actor_role, from_status, STATUS_CANCELLED,
            {'reason': reason, 'bulk': True},
        )

    return appointments


def cancel_appointments_for_member_machine(
    db: Session,
    member_id: int,
    machine_id: int,
    actor_id: int | None,
    actor_role: str | None = ROLE_ADMIN,
    reason: str | None = None,
    now: datetime | None = None,
    commit: bool = True,
) -> list[Appointment]:
    """
    Cancel every future pending/accepted appointment for one member and machine.

    Used as a side effect of administrative actions such as revoking standing
    checkout. With ``commit=False`` the changes join the caller's transaction
    and no notifications are sent; the caller holds the machine and member
    locks and is responsible for both. Otherwise the cancellation runs in its
    own locked transaction.
    """
    now = resolve_now(now)
    reason = normalize_text(reason)

    if not commit:
        return _cancel_open_appointments(db, member_id, machine_id, actor_id, actor_role, reason, now)

    with locked_transaction(db, machine_id=machine_id, user_id=member_id):
        appointments = _cancel_open_appointments(db, member_id, machine_id, actor_id, actor_role, reason, now)

    notify_bulk_cancellation(db, appointments, actor_id, reason)
    return appointments


def notify_bulk_cancellation(
    db: Session,
    appointments: list[Appointment],
    actor_id: int | None,
    reason: str | None,
) -> None:
    if not appointments:
        return

    logger.info('Cancelled %d checkout appointment(s) in bulk', len(appointments))
    actor = db.get(User, actor_id) if actor_id is not None else None
    for appointment in appointments:
        db.refresh(appointment)
        notifications.notify_checkout_appointment_cancelled(
            db, appointment, actor, [appointment.user_id, appointment.manager_id], reason,
        )
