"""In-app notifications for scheduling decisions.

Callers only notify after the state change has committed. Recording a
notification is best-effort: a failure is logged and rolled back on its own and
never undoes the booking decision that triggered it.
"""

import functools
import logging
from datetime import datetime

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from backend.models.appointment import Appointment
from backend.models.notification import Notification
from backend.models.reservation import Reservation
from backend.models.user import ROLE_ADMIN, STATUS_ACTIVE, User

logger = logging.getLogger(__name__)


def format_time_range(start_time: datetime, end_time: datetime) -> str:
    return f"{start_time:%Y-%m-%d %H:%M} - {end_time:%Y-%m-%d %H:%M} UTC"


def best_effort(func):
    @functools.wraps(func)
    def wrapper(db: Session, *args, **kwargs):
        try:
            return func(db, *args, **kwargs)
        except SQLAlchemyError:
            db.rollback()
            logger.exception('%s failed; booking state is unaffected.', func.__name__)
            return []

    return wrapper


def deliver_notifications(db: Session, payloads: list[dict]) -> list[Notification]:
    if not payloads:
        return []

    notifications = [
        Notification(
            user_id=payload['user_id'],
            type=payload['type'],
            title=payload['title'],
            message=payload['message'],
            notification_metadata=payload.get('metadata', {}),
        )
        for payload in payloads
    ]
    db.add_all(notifications)
    db.commit()
    return notifications


def get_active_admin_ids(db: Session) -> list[int]:
    rows = db.query(User.id).filter(User.role == ROLE_ADMIN, User.status == STATUS_ACTIVE).all()
    return [row.id for row in rows]


def _appointment_metadata(appointment: Appointment) -> dict:
    return {'appointmentId': appointment.id, 'machineId': appointment.machine_id}


@best_effort
def notify_admins_checkout_request_submitted(db: Session, appointment: Appointment) -> list[Notification]:
    member_name = appointment.user.display_name
    time_range = format_time_range(appointment.start_time, appointment.end_time)
    return deliver_notifications(db, [
        {
            'user_id': admin_id,
            'type': 'checkout_request_submitted',
            'title': 'New checkout request',
            'message': f'{member_name} requested an in-person checkout for {appointment.machine.name} ({time_range}).',
            'metadata': {
                **_appointment_metadata(appointment),
                'managerId': appointment.manager_id,
                'requestedByUserId': appointment.user_id,
            },
        }
        for admin_id in get_active_admin_ids(db)
    ])


@best_effort
def notify_user_checkout_request_accepted(db: Session, appointment: Appointment, admin: User) -> list[Notification]:
    time_range = format_time_range(appointment.start_time, appointment.end_time)
    return deliver_notifications(db, [{
        'user_id': appointment.user_id,
        'type': 'checkout_request_accepted',
        'title': 'Checkout request accepted',
        'message': f'{admin.display_name} accepted your checkout request for {appointment.machine.name} ({time_range}).',
        'metadata': _appointment_metadata(appointment),
    }])


@best_effort
def notify_user_checkout_request_rejected(
    db: Session,
    appointment: Appointment,
    admin: User,
    reason: str,
) -> list[Notification]:
    time_range = format_time_range(appointment.start_time, appointment.end_time)
    return deliver_notifications(db, [{
        'user_id': appointment.user_id,
        'type': 'checkout_request_rejected',
        'title': 'Checkout request rejected',
        'message': (
            f'{admin.display_name} rejected your checkout request for {appointment.machine.name} '
            f'({time_range}). Reason: {reason}.'
        ),
        'metadata': _appointment_metadata(appointment),
    }])


@best_effort
def notify_user_checkout_result(
    db: Session,
    appointment: Appointment,
    admin: User,
    passed: bool,
    notes: str | None = None,
) -> list[Notification]:
    time_range = format_time_range(appointment.start_time, appointment.end_time)
    if passed:
        payload = {
            'type': 'checkout_result_passed',
            'title': 'Checkout passed',
            'message': f'{admin.display_name} marked your {appointment.machine.name} checkout as passed ({time_range}).',
        }
    else:
        notes_suffix = f' Notes: {notes}.' if notes else ''
        payload = {
            'type': 'checkout_result_failed',
            'title': 'Checkout requires another attempt',
            'message': (
                f'{admin.display_name} marked your {appointment.machine.name} checkout meeting '
                f'({time_range}) as failed.{notes_suffix}'
            ),
        }

    return deliver_notifications(db, [{
        'user_id': appointment.user_id,
        'metadata': _appointment_metadata(appointment),
        **payload,
    }])


@best_effort
def notify_checkout_appointment_cancelled(
    db: Session,
    appointment: Appointment,
    actor: User | None,
    recipient_ids: list[int],
    reason: str | None = None,
) -> list[Notification]:
    actor_name = actor.display_name if actor else 'An administrator'
    time_range = format_time_range(appointment.start_time, appointment.end_time)
    reason_suffix = f' Reason: {reason}.' if reason else ''
    return deliver_notifications(db, [
        {
            'user_id': recipient_id,
            'type': 'checkout_appointment_cancelled',
            'title': 'Checkout appointment cancelled',
            'message': (
                f'{actor_name} cancelled the checkout appointment for {appointment.machine.name} '
                f'({time_range}).{reason_suffix}'
            ),
            'metadata': _appointment_metadata(appointment),
        }
        for recipient_id in dict.fromkeys(recipient_ids)
    ])


@best_effort
def notify_admins_booking_requested(db: Session, reservation: Reservation) -> list[Notification]:
    member_name = reservation.user.display_name if reservation.user else 'Member'
    time_range = format_time_range(reservation.start_time, reservation.end_time)
    return deliver_notifications(db, [
        {
            'user_id': admin_id,
            'type': 'booking_requested',
            'title': 'New booking request',
            'message': f'{member_name} requested {reservation.machine.name} for {time_range}.',
            'metadata': {
                'reservationId': reservation.id,
                'machineId': reservation.machine_id,
                'requestedByUserId': reservation.user_id,
            },
        }
        for admin_id in get_active_admin_ids(db)
    ])


BOOKING_DECISION_TITLES = {
    'approved': 'Booking approved',
    'rejected': 'Booking rejected',
    'cancelled': 'Booking cancelled',
}


@best_effort
def notify_user_booking_decision(db: Session, reservation: Reservation, status: str) -> list[Notification]:
    machine_name = reservation.machine.name
    if status == 'approved':
        message = (
            f'Your {machine_name} booking request was approved for '
            f'{format_time_range(reservation.start_time, reservation.end_time)}.'
        )
    elif status == 'rejected':
        message = f'Your {machine_name} booking request was rejected.'
    else:
        message = f'Your {machine_name} booking was cancelled.'

    return deliver_notifications(db, [{
        'user_id': reservation.user_id,
        'type': f'booking_{status}',
        'title': BOOKING_DECISION_TITLES.get(status, 'Booking updated'),
        'message': message,
        'metadata': {'reservationId': reservation.id, 'machineId': reservation.machine_id},
    }])
