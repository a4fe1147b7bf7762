from datetime import datetime, timezone

import pytest

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
from backend.models.notification import Notification
from backend.models.reservation import Reservation
from backend.services import reservations

NOW = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)


def utc(*args: int) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


@pytest.fixture
def checked_out_member(make_user, machine, admin, grant_standing_checkout):
    member = make_user('member')
    grant_standing_checkout(member, machine, admin)
    return member


def test_create_booking_request_for_checked_out_member(db_session, checked_out_member, machine, admin) -> None:
    reservation = reservations.create_booking_request(
        db_session, checked_out_member.id, machine.id, utc(2026, 3, 5, 18), utc(2026, 3, 5, 20), now=NOW,
    )

    assert reservation.status == 'pending'
    assert reservation.start_time == utc(2026, 3, 5, 18)
    types = [row.type for row in db_session.query(Notification).filter(Notification.user_id == admin.id)]
    assert types == ['booking_requested']


def test_create_booking_request_validates_range(db_session, checked_out_member, machine) -> None:
    with pytest.raises(InvalidRangeError):
        reservations.create_booking_request(
            db_session, checked_out_member.id, machine.id, utc(2026, 3, 5, 20), utc(2026, 3, 5, 18), now=NOW,
        )
    with pytest.raises(InvalidRangeError):
        reservations.create_booking_request(
            db_session, checked_out_member.id, machine.id, utc(2026, 3, 1, 18), utc(2026, 3, 1, 20), now=NOW,
        )


def test_create_booking_request_checks_machine(db_session, checked_out_member, make_machine) -> None:
    retired = make_machine('Old Mill', active=False)

    with pytest.raises(NotFoundError):
        reservations.create_booking_request(
            db_session, checked_out_member.id, 9999, utc(2026, 3, 5, 18), utc(2026, 3, 5, 20), now=NOW,
        )
    with pytest.raises(InactiveResourceError):
        reservations.create_booking_request(
            db_session, checked_out_member.id, retired.id, utc(2026, 3, 5, 18), utc(2026, 3, 5, 20), now=NOW,
        )


def test_create_booking_request_requires_eligibility(db_session, member, machine) -> None:
    with pytest.raises(NotEligibleError) as exception_info:
        reservations.create_booking_request(
            db_session, member.id, machine.id, utc(2026, 3, 5, 18), utc(2026, 3, 5, 20), now=NOW,
        )

    assert exception_info.value.reasons == ['Manager checkout not approved']


def test_create_booking_request_rejects_overlap(db_session, checked_out_member, make_user, machine, admin,
                                                grant_standing_checkout) -> None:
    other = make_user('member')
    grant_standing_checkout(other, machine, admin)
    reservations.create_booking_request(
        db_session, checked_out_member.id, machine.id, utc(2026, 3, 5, 18), utc(2026, 3, 5, 20), now=NOW,
    )

    with pytest.raises(SlotConflictError):
        reservations.create_booking_request(
            db_session, other.id, machine.id, utc(2026, 3, 5, 19), utc(2026, 3, 5, 21), now=NOW,
        )

    adjacent = reservations.create_booking_request(
        db_session, other.id, machine.id, utc(2026, 3, 5, 20), utc(2026, 3, 5, 21), now=NOW,
    )
    assert adjacent.status == 'pending'


def test_moderate_booking_request_decisions(db_session, checked_out_member, machine, admin) -> None:
    reservation = reservations.create_booking_request(
        db_session, checked_out_member.id, machine.id, utc(2026, 3, 5, 18), utc(2026, 3, 5, 20), now=NOW,
    )

    approved = reservations.moderate_booking_request(
        db_session, reservation.id, admin.id, 'approve', notes='Bring your own material', now=NOW,
    )

    assert approved.status == 'approved'
    assert approved.reviewed_by == admin.id
    assert approved.review_notes == 'Bring your own material'

    with pytest.raises(NotPendingError):
        reservations.moderate_booking_request(db_session, reservation.id, admin.id, 'cancel', now=NOW)

    member_types = [row.type for row in db_session.query(Notification).filter(
        Notification.user_id == checked_out_member.id,
    )]
    assert member_types == ['booking_approved']


def test_moderate_booking_request_rechecks_conflicts_on_approval(db_session, checked_out_member, machine, admin) -> None:
    reservation = reservations.create_booking_request(
        db_session, checked_out_member.id, machine.id, utc(2026, 3, 5, 18), utc(2026, 3, 5, 20), now=NOW,
    )
    # A confirmed booking written by another channel after the request was filed.
    db_session.add(
        Reservation(
            user_id=admin.id,
            machine_id=machine.id,
            start_time=utc(2026, 3, 5, 19),
            end_time=utc(2026, 3, 5, 22),
            status='confirmed',
        )
    )
    db_session.commit()

    with pytest.raises(SlotConflictError):
        reservations.moderate_booking_request(db_session, reservation.id, admin.id, 'approve', now=NOW)

    rejected = reservations.moderate_booking_request(
        db_session, reservation.id, admin.id, 'reject', reason='Machine booked', now=NOW,
    )
    assert rejected.status == 'rejected'
    assert rejected.decision_reason == 'Machine booked'


def test_moderate_booking_request_requires_admin_and_known_decision(
    db_session, checked_out_member, machine, manager,
) -> None:
    reservation = reservations.create_booking_request(
        db_session, checked_out_member.id, machine.id, utc(2026, 3, 5, 18), utc(2026, 3, 5, 20), now=NOW,
    )

    with pytest.raises(InvalidRangeError):
        reservations.moderate_booking_request(db_session, reservation.id, manager.id, 'defer', now=NOW)
    with pytest.raises(ForbiddenError):
        reservations.moderate_booking_request(db_session, reservation.id, manager.id, 'approve', now=NOW)


def test_member_cancels_future_pending_reservation(db_session, checked_out_member, machine) -> None:
    reservation = reservations.create_booking_request(
        db_session, checked_out_member.id, machine.id, utc(2026, 3, 5, 18), utc(2026, 3, 5, 20), now=NOW,
    )

    cancelled = reservations.cancel_booking_request_by_member(
        db_session, reservation.id, checked_out_member.id, reason='Project done', now=NOW,
    )

    assert cancelled.status == 'cancelled'
    assert cancelled.decision_reason == 'Project done'

    with pytest.raises(NotCancellableError):
        reservations.cancel_booking_request_by_member(db_session, reservation.id, checked_out_member.id, now=NOW)


def test_member_cannot_cancel_started_or_foreign_reservation(
    db_session, checked_out_member, make_user, machine, admin,
) -> None:
    reservation = reservations.create_booking_request(
        db_session, checked_out_member.id, machine.id, utc(2026, 3, 5, 18), utc(2026, 3, 5, 20), now=NOW,
    )
    stranger = make_user('member')

    with pytest.raises(NotFoundError):
        reservations.cancel_booking_request_by_member(db_session, reservation.id, stranger.id, now=NOW)
    with pytest.raises(AlreadyStartedError):
        reservations.cancel_booking_request_by_member(
            db_session, reservation.id, checked_out_member.id, now=utc(2026, 3, 5, 18, 30),
        )

    reservations.moderate_booking_request(db_session, reservation.id, admin.id, 'approve', now=NOW)
    with pytest.raises(NotCancellableError):
        reservations.cancel_booking_request_by_member(db_session, reservation.id, checked_out_member.id, now=NOW)


def test_list_reservations_filters(db_session, checked_out_member, machine, admin) -> None:
    first = reservations.create_booking_request(
        db_session, checked_out_member.id, machine.id, utc(2026, 3, 5, 18), utc(2026, 3, 5, 20), now=NOW,
    )
    second = reservations.create_booking_request(
        db_session, admin.id, machine.id, utc(2026, 3, 6, 18), utc(2026, 3, 6, 20), now=NOW,
    )
    reservations.moderate_booking_request(db_session, second.id, admin.id, 'reject', now=NOW)

    assert [item.id for item in reservations.list_reservations(db_session)] == [first.id, second.id]
    assert [item.id for item in reservations.list_reservations(db_session, status='pending')] == [first.id]
    assert [item.id for item in reservations.list_reservations(
        db_session, user_id=checked_out_member.id,
    )] == [first.id]
