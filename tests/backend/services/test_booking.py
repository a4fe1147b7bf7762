import random
import threading
import time
from datetime import datetime, timezone

import pytest
from sqlalchemy.orm import sessionmaker

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
from backend.database import Base, build_engine
from backend.models.appointment import Appointment, AppointmentEvent
from backend.models.availability import AvailabilityRule
from backend.models.machine import Machine
from backend.models.notification import Notification
from backend.models.user import User
from backend.services.booking import find_matching_rule, request_appointment
from backend.services.timezone_math import TimeZoneMath

LA = 'America/Los_Angeles'
NOW = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)


def utc(*args: int) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


FIRST_SLOT = utc(2026, 3, 6, 17, 0)


def test_request_appointment_creates_pending_appointment_and_event(
    db_session, member, manager, admin, machine, make_rule,
) -> None:
    rule = make_rule(manager)

    appointment = request_appointment(
        db_session, member.id, machine.id, manager.id, FIRST_SLOT, notes='  First time  ', now=NOW,
    )

    assert appointment.status == 'pending'
    assert appointment.start_time == FIRST_SLOT
    assert appointment.end_time == utc(2026, 3, 6, 17, 30)
    assert appointment.availability_rule_id == rule.id
    assert appointment.notes == 'First time'

    events = db_session.query(AppointmentEvent).filter(AppointmentEvent.appointment_id == appointment.id).all()
    assert len(events) == 1
    assert events[0].event_type == 'requested'
    assert events[0].from_status is None
    assert events[0].to_status == 'pending'
    assert events[0].actor_id == member.id

    notifications = db_session.query(Notification).filter(Notification.user_id == admin.id).all()
    assert [notification.type for notification in notifications] == ['checkout_request_submitted']


def test_request_appointment_truncates_seconds(db_session, member, manager, machine, make_rule) -> None:
    make_rule(manager)

    appointment = request_appointment(
        db_session, member.id, machine.id, manager.id, utc(2026, 3, 6, 17, 30, 42), now=NOW,
    )

    assert appointment.start_time == utc(2026, 3, 6, 17, 30)


def test_request_appointment_accepts_naive_utc_start(db_session, member, manager, machine, make_rule) -> None:
    make_rule(manager)

    appointment = request_appointment(db_session, member.id, machine.id, manager.id, datetime(2026, 3, 6, 17), now=NOW)

    assert appointment.start_time == FIRST_SLOT


def test_request_appointment_requires_existing_active_participants(
    db_session, make_user, make_machine, manager, member, machine, make_rule,
) -> None:
    make_rule(manager)
    suspended_member = make_user('member', status='suspended')
    suspended_manager = make_user('manager', status='suspended')
    retired_machine = make_machine('Old Mill', active=False)

    with pytest.raises(NotFoundError):
        request_appointment(db_session, 9999, machine.id, manager.id, FIRST_SLOT, now=NOW)
    with pytest.raises(InactiveResourceError):
        request_appointment(db_session, suspended_member.id, machine.id, manager.id, FIRST_SLOT, now=NOW)
    with pytest.raises(NotFoundError):
        request_appointment(db_session, member.id, 9999, manager.id, FIRST_SLOT, now=NOW)
    with pytest.raises(InactiveResourceError):
        request_appointment(db_session, member.id, retired_machine.id, manager.id, FIRST_SLOT, now=NOW)
    with pytest.raises(NotFoundError):
        request_appointment(db_session, member.id, machine.id, member.id, FIRST_SLOT, now=NOW)
    with pytest.raises(InactiveResourceError):
        request_appointment(db_session, member.id, machine.id, suspended_manager.id, FIRST_SLOT, now=NOW)


def test_request_appointment_rejects_member_with_standing_checkout(
    db_session, member, manager, admin, machine, make_rule, grant_standing_checkout,
) -> None:
    make_rule(manager)
    grant_standing_checkout(member, machine, admin)

    with pytest.raises(AlreadyCheckedOutError):
        request_appointment(db_session, member.id, machine.id, manager.id, FIRST_SLOT, now=NOW)


def test_request_appointment_rejects_admin_requester(db_session, admin, manager, machine, make_rule) -> None:
    make_rule(manager)

    with pytest.raises(AlreadyCheckedOutError):
        request_appointment(db_session, admin.id, machine.id, manager.id, FIRST_SLOT, now=NOW)


def test_request_appointment_rejects_started_slot(db_session, member, manager, machine, make_rule) -> None:
    make_rule(manager)

    with pytest.raises(SlotUnavailableError):
        request_appointment(db_session, member.id, machine.id, manager.id, FIRST_SLOT, now=FIRST_SLOT)


@pytest.mark.parametrize(
    ('slot_start', 'error'),
    [
        (utc(2026, 3, 6, 17, 10), SlotMisalignedError),
        (utc(2026, 3, 6, 18, 10), SlotMisalignedError),
        (utc(2026, 3, 6, 16, 30), SlotUnavailableError),
        (utc(2026, 3, 6, 19, 0), SlotUnavailableError),
        (utc(2026, 3, 5, 17, 0), SlotUnavailableError),
    ],
)
def test_request_appointment_requires_slot_on_rule_grid(
    db_session, member, manager, machine, make_rule, slot_start: datetime, error: type,
) -> None:
    make_rule(manager)

    with pytest.raises(error):
        request_appointment(db_session, member.id, machine.id, manager.id, slot_start, now=NOW)


def test_request_appointment_ignores_inactive_rules(db_session, member, manager, machine, make_rule) -> None:
    make_rule(manager, active=False)

    with pytest.raises(SlotUnavailableError):
        request_appointment(db_session, member.id, machine.id, manager.id, FIRST_SLOT, now=NOW)


def test_request_appointment_reports_training_reasons(
    db_session, member, manager, machine, make_rule, add_training_requirement, record_progress,
) -> None:
    make_rule(manager)
    module = add_training_requirement(machine, title='Laser Safety', duration_seconds=600)
    record_progress(member, module, 300)

    with pytest.raises(TrainingIncompleteError) as exception_info:
        request_appointment(db_session, member.id, machine.id, manager.id, FIRST_SLOT, now=NOW)

    assert exception_info.value.reasons == ['Training "Laser Safety" not completed (50% of 90% required)']
    assert exception_info.value.to_detail()['error'] == 'training_incomplete'


def test_request_appointment_allows_completed_training(
    db_session, member, manager, machine, make_rule, add_training_requirement, record_progress,
) -> None:
    make_rule(manager)
    module = add_training_requirement(machine, duration_seconds=600)
    record_progress(member, module, 540)

    appointment = request_appointment(db_session, member.id, machine.id, manager.id, FIRST_SLOT, now=NOW)

    assert appointment.status == 'pending'


def test_request_appointment_allows_one_open_request_per_machine(
    db_session, member, manager, machine, make_rule,
) -> None:
    make_rule(manager)
    request_appointment(db_session, member.id, machine.id, manager.id, FIRST_SLOT, now=NOW)

    with pytest.raises(ExistingRequestError):
        request_appointment(db_session, member.id, machine.id, manager.id, utc(2026, 3, 6, 18, 0), now=NOW)


def test_request_appointment_rejects_taken_slot(db_session, make_user, manager, machine, make_rule) -> None:
    make_rule(manager)
    first_member = make_user('member')
    second_member = make_user('member')
    request_appointment(db_session, first_member.id, machine.id, manager.id, FIRST_SLOT, now=NOW)

    with pytest.raises(SlotConflictError):
        request_appointment(db_session, second_member.id, machine.id, manager.id, FIRST_SLOT, now=NOW)

    assert db_session.query(Appointment).count() == 1


def test_request_appointment_rejects_member_double_booking_across_machines(
    db_session, member, make_user, make_machine, make_rule,
) -> None:
    first_manager = make_user('manager')
    second_manager = make_user('manager')
    laser = make_machine('Laser Cutter')
    lathe = make_machine('Lathe')
    make_rule(first_manager)
    make_rule(second_manager)
    request_appointment(db_session, member.id, laser.id, first_manager.id, FIRST_SLOT, now=NOW)

    with pytest.raises(SlotConflictError):
        request_appointment(db_session, member.id, lathe.id, second_manager.id, FIRST_SLOT, now=NOW)


def test_find_matching_rule_respects_rule_timezone(db_session, manager, make_rule) -> None:
    make_rule(manager, zone='America/New_York')
    tz_math = TimeZoneMath()

    # Friday 09:00 EST is 14:00 UTC.
    rule = find_matching_rule(db_session, tz_math, manager.id, utc(2026, 3, 6, 14, 0), 30)
    assert rule.timezone == 'America/New_York'

    with pytest.raises(SlotUnavailableError):
        find_matching_rule(db_session, tz_math, manager.id, FIRST_SLOT, 30)


def _seed_contested_slot(session) -> tuple[int, int, int, int]:
    manager = User(email='manager@makerspace.test', role='manager', status='active')
    first_member = User(email='first@makerspace.test', role='member', status='active')
    second_member = User(email='second@makerspace.test', role='member', status='active')
    machine = Machine(name='Laser Cutter', training_duration_minutes=30, active=True)
    session.add_all([manager, first_member, second_member, machine])
    session.flush()
    session.add(
        AvailabilityRule(
            manager_id=manager.id,
            day_of_week=5,
            start_minute_of_day=9 * 60,
            end_minute_of_day=11 * 60,
            timezone=LA,
            active=True,
        )
    )
    session.commit()
    return manager.id, machine.id, first_member.id, second_member.id


def test_concurrent_requests_for_one_slot_have_exactly_one_winner(tmp_path) -> None:
    engine = build_engine(f'sqlite:///{tmp_path / "booking.db"}')
    Base.metadata.create_all(bind=engine)
    ThreadSession = sessionmaker(autocommit=False, autoflush=False, bind=engine)

    seed_session = ThreadSession()
    manager_id, machine_id, first_member_id, second_member_id = _seed_contested_slot(seed_session)
    seed_session.close()

    tz_math = TimeZoneMath()

    try:
        for _ in range(100):
            barrier = threading.Barrier(2)
            outcomes: list[str] = []
            outcomes_lock = threading.Lock()

            def attempt(member_id: int) -> None:
                session = ThreadSession()
                try:
                    barrier.wait()
                    time.sleep(random.random() / 1000)
                    request_appointment(
                        session, member_id, machine_id, manager_id, FIRST_SLOT, now=NOW, tz_math=tz_math,
                    )
                    outcome = 'won'
                except SlotConflictError:
                    outcome = 'conflict'
                except Exception as exc:
                    outcome = type(exc).__name__
                finally:
                    session.close()
                with outcomes_lock:
                    outcomes.append(outcome)

            threads = [
                threading.Thread(target=attempt, args=(member_id,))
                for member_id in (first_member_id, second_member_id)
            ]
            for thread in threads:
                thread.start()
            for thread in threads:
                thread.join()

            assert sorted(outcomes) == ['conflict', 'won']

            cleanup = ThreadSession()
            try:
                assert cleanup.query(Appointment).count() == 1
                cleanup.query(AppointmentEvent).delete()
                cleanup.query(Appointment).delete()
                cleanup.commit()
            finally:
                cleanup.close()
    finally:
        engine.dispose()
