import logging
from datetime import datetime

from sqlalchemy.orm import Session

from backend.core.clock import resolve_now
from backend.core.errors import AlreadyCheckedOutError, ForbiddenError, NotFoundError
from backend.models.checkout import ManagerCheckout
from backend.models.machine import Machine
from backend.models.user import ROLE_ADMIN, User
from backend.services.appointments import (
    cancel_appointments_for_member_machine,
    normalize_text,
    notify_bulk_cancellation,
)
from backend.services.locks import locked_transaction

logger = logging.getLogger(__name__)


def _require_admin(db: Session, admin_id: int) -> User:
    admin = db.get(User, admin_id)
    if admin is None or admin.role != ROLE_ADMIN or not admin.is_active:
        raise ForbiddenError('Only active admins can manage checkouts')
    return admin


def _require_member_and_machine(db: Session, user_id: int, machine_id: int) -> None:
    if db.get(User, user_id) is None:
        raise NotFoundError('User not found')
    if db.get(Machine, machine_id) is None:
        raise NotFoundError('Machine not found')


def list_checkouts(db: Session, user_id: int | None = None) -> list[ManagerCheckout]:
    query = db.query(ManagerCheckout)
    if user_id is not None:
        query = query.filter(ManagerCheckout.user_id == user_id)
    return query.order_by(ManagerCheckout.approved_at.asc(), ManagerCheckout.id.asc()).all()


def grant_checkout(
    db: Session,
    user_id: int,
    machine_id: int,
    approver_id: int,
    notes: str | None = None,
    now: datetime | None = None,
) -> ManagerCheckout:
    """Grant standing access directly, outside the appointment flow."""
    now = resolve_now(now)
    approver = _require_admin(db, approver_id)
    _require_member_and_machine(db, user_id, machine_id)

    with locked_transaction(db, machine_id=machine_id, user_id=user_id):
        existing = db.query(ManagerCheckout.id).filter(
            ManagerCheckout.user_id == user_id,
            ManagerCheckout.machine_id == machine_id,
        ).first()
        if existing is not None:
            raise AlreadyCheckedOutError('User is already checked out for this machine or tool')

        checkout = ManagerCheckout(
            user_id=user_id,
            machine_id=machine_id,
            approved_by=approver.id,
            approved_at=now,
            notes=normalize_text(notes),
        )
        db.add(checkout)

    db.refresh(checkout)
    logger.info('Admin %s granted checkout on machine %s to user %s', approver.id, machine_id, user_id)
    return checkout


def revoke_checkout(
    db: Session,
    user_id: int,
    machine_id: int,
    actor_id: int,
    reason: str | None = None,
    now: datetime | None = None,
) -> list:
    """
    Remove standing access and cancel the pair's future open appointments.

    Both happen in one transaction. Returns the cancelled appointments.
    """
    now = resolve_now(now)
    actor = _require_admin(db, actor_id)

    checkout = db.query(ManagerCheckout).filter(
        ManagerCheckout.user_id == user_id,
        ManagerCheckout.machine_id == machine_id,
    ).first()
    if checkout is None:
        raise NotFoundError('Checkout not found')

    with locked_transaction(db, machine_id=machine_id, user_id=user_id):
        db.delete(checkout)
        cancelled = cancel_appointments_for_member_machine(
            db,
            user_id,
            machine_id,
            actor_id=actor.id,
            actor_role=actor.role,
            reason=reason or 'Checkout access revoked',
            now=now,
            commit=False,
        )

    logger.info('Admin %s revoked checkout on machine %s for user %s', actor.id, machine_id, user_id)
    notify_bulk_cancellation(db, cancelled, actor.id, reason or 'Checkout access revoked')
    return cancelled
