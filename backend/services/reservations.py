"""Direct machine-time bookings for members with standing checkout.

    pending -> approved | rejected | cancelled

Once an admin has decided, the reservation is final. Members can withdraw
their own reservations while they are still pending (or confirmed) and in the
future.
"""

import logging
from datetime import datetime

from sqlalchemy.orm import Session

from backend.core.clock import ensure_utc, resolve_now
from backend.core.errors import (
    AlreadyStartedError,
    ForbiddenError,
    InactiveResourceError,
    InvalidRangeError,
    NotCancellableError,
    NotEligibleError,
    NotFoundError,
    NotPendingError,
    SlotConflictError,
)
from backend.models.machine import Machine
from backend.models.reservation import (
    STATUS_APPROVED,
    STATUS_CANCELLED,
    STATUS_CONFIRMED,
    STATUS_PENDING,
    STATUS_REJECTED,
    Reservation,
)
from backend.models.user import ROLE_ADMIN, User
from backend.services import notifications
from backend.services.appointments import normalize_text
from backend.services.conflicts import has_reservation_conflict
from backend.services.eligibility import check_eligibility
from backend.services.locks import locked_transaction

logger = logging.getLogger(__name__)

DECISION_STATUSES = {
    'approve': STATUS_APPROVED,
    'reject': STATUS_REJECTED,
    'cancel': STATUS_CANCELLED,
}
MEMBER_CANCELLABLE_STATUSES = (STATUS_PENDING, STATUS_CONFIRMED)


def validate_date_range(start_time: datetime, end_time: datetime) -> str | None:
    if start_time is None or end_time is None:
        return 'Invalid start or end time'

    if end_time <= start_time:
        return 'End time must be after start time'

    return None


def create_booking_request(
    db: Session,
    user_id: int,
    machine_id: int,
    start_time: datetime,
    end_time: datetime,
    now: datetime | None = None,
) -> Reservation:
    now = resolve_now(now)

    range_error = validate_date_range(start_time, end_time)
    if range_error:
        raise InvalidRangeError(range_error)

    start_time = ensure_utc(start_time)
    end_time = ensure_utc(end_time)
    if start_time <= now:
        raise InvalidRangeError('Reservations must start in the future')

    machine = db.get(Machine, machine_id)
    if machine is None:
        raise NotFoundError('Machine or tool not found')

    if not machine.active:
        raise InactiveResourceError('Machine or tool is not available')

    eligibility = check_eligibility(db, user_id, machine_id)
    if not eligibility.eligible:
        raise NotEligibleError(reasons=eligibility.reasons)

    with locked_transaction(db, machine_id=machine_id, user_id=user_id):
        if has_reservation_conflict(db, machine_id, start_time, end_time):
            raise SlotConflictError('Selected time overlaps an existing booking')

        reservation = Reservation(
            user_id=user_id,
            machine_id=machine_id,
            start_time=start_time,
            end_time=end_time,
            status=STATUS_PENDING,
        )
        db.add(reservation)

    db.refresh(reservation)
    logger.info('User %s requested reservation %s on machine %s', user_id, reservation.id, machine_id)
    notifications.notify_admins_booking_requested(db, reservation)
    return reservation


def get_reservation(db: Session, reservation_id: int) -> Reservation:
    reservation = db.get(Reservation, reservation_id)
    if reservation is None:
        raise NotFoundError('Reservation not found')
    return reservation


def list_reservations(
    db: Session,
    status: str | None = None,
    user_id: int | None = None,
    machine_id: int | None = None,
) -> list[Reservation]:
    query = db.query(Reservation)
    if status is not None:
        query = query.filter(Reservation.status == status)
    if user_id is not None:
        query = query.filter(Reservation.user_id == user_id)
    if machine_id is not None:
        query = query.filter(Reservation.machine_id == machine_id)

    return query.order_by(Reservation.start_time.asc(), Reservation.id.asc()).all()


def moderate_booking_request(
    db: Session,
    reservation_id: int,
    reviewer_id: int,
    decision: str,
    notes: str | None = None,
    reason: str | None = None,
    now: datetime | None = None,
) -> Reservation:
    """Approve, reject or cancel a pending reservation; approval re-checks machine conflicts."""
    now = resolve_now(now)

    next_status = DECISION_STATUSES.get(decision)
    if next_status is None:
        raise InvalidRangeError('Decision must be approve, reject or cancel')

    reviewer = db.get(User, reviewer_id)
    if reviewer is None or reviewer.role != ROLE_ADMIN or not reviewer.is_active:
        raise ForbiddenError('Only active admins can review booking requests')

    reservation = get_reservation(db, reservation_id)
    if reservation.status != STATUS_PENDING:
        raise NotPendingError(f'Reservation is already {reservation.status}')

    with locked_transaction(db, machine_id=reservation.machine_id, user_id=reservation.user_id):
        db.refresh(reservation)
        if reservation.status != STATUS_PENDING:
            raise NotPendingError(f'Reservation is already {reservation.status}')

        if next_status == STATUS_APPROVED and has_reservation_conflict(
            db,
            reservation.machine_id,
            reservation.start_time,
            reservation.end_time,
            exclude_reservation_id=reservation.id,
        ):
            raise SlotConflictError('Cannot approve request because the time is already booked')

        reservation.status = next_status
        reservation.reviewed_by = reviewer.id
        reservation.reviewed_at = now
        reservation.review_notes = normalize_text(notes)
        reservation.decision_reason = normalize_text(reason)

    db.refresh(reservation)
    logger.info('Reservation %s %s by admin %s', reservation.id, next_status, reviewer.id)
    notifications.notify_user_booking_decision(db, reservation, next_status)
    return reservation


def cancel_booking_request_by_member(
    db: Session,
    reservation_id: int,
    user_id: int,
    reason: str | None = None,
    now: datetime | None = None,
) -> Reservation:
    now = resolve_now(now)

    reservation = db.query(Reservation).filter(
        Reservation.id == reservation_id,
        Reservation.user_id == user_id,
    ).first()
    if reservation is None:
        raise NotFoundError('Reservation not found')

    if reservation.status not in MEMBER_CANCELLABLE_STATUSES:
        raise NotCancellableError('Reservation is already closed')

    if reservation.start_time <= now:
        raise AlreadyStartedError('Cannot cancel past reservations')

    with locked_transaction(db, machine_id=reservation.machine_id, user_id=reservation.user_id):
        db.refresh(reservation)
        if reservation.status not in MEMBER_CANCELLABLE_STATUSES:
            raise NotCancellableError('Reservation is already closed')

        reservation.status = STATUS_CANCELLED
        reservation.decision_reason = normalize_text(reason)

    db.refresh(reservation)
    logger.info('Reservation %s cancelled by member %s', reservation.id, user_id)
    notifications.notify_user_booking_decision(db, reservation, STATUS_CANCELLED)
    return reservation
