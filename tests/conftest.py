import os
from datetime import datetime, timezone

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

os.environ.setdefault('DATABASE_URL', 'sqlite:///./test.db')
os.environ.setdefault('MAKERSPACE_TIMEZONE', 'America/Los_Angeles')

from backend.database import Base  # noqa: E402
from backend.models.appointment import Appointment  # noqa: E402
from backend.models.availability import AvailabilityRule  # noqa: E402
from backend.models.checkout import ManagerCheckout  # noqa: E402
from backend.models.machine import Machine, MachineRequirement, TrainingModule, TrainingProgress  # noqa: E402
from backend.models.notification import AppSetting, Notification  # noqa: E402,F401
from backend.models.reservation import Reservation  # noqa: E402,F401
from backend.models.user import ROLE_ADMIN, ROLE_MANAGER, ROLE_MEMBER, User  # noqa: E402
from backend.services.timezone_math import TimeZoneMath  # noqa: E402

# Monday 2026-03-02 04:00 in Los Angeles.
NOW = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)
LA = 'America/Los_Angeles'
FRIDAY = 5


@pytest.fixture
def now() -> datetime:
    return NOW


@pytest.fixture
def tz_math() -> TimeZoneMath:
    return TimeZoneMath()


@pytest.fixture
def db_session():
    engine = create_engine(
        'sqlite://',
        connect_args={'check_same_thread': False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    db = TestingSessionLocal()

    try:
        yield db
    finally:
        db.close()
        engine.dispose()


@pytest.fixture
def make_user(db_session):
    counter = {'value': 0}

    def _make_user(role: str = ROLE_MEMBER, status: str = 'active', name: str | None = None) -> User:
        counter['value'] += 1
        user = User(
            email=f'{role}{counter["value"]}@makerspace.test',
            name=name or f'{role.title()} {counter["value"]}',
            role=role,
            status=status,
        )
        db_session.add(user)
        db_session.commit()
        db_session.refresh(user)
        return user

    return _make_user


@pytest.fixture
def member(make_user) -> User:
    return make_user(ROLE_MEMBER)


@pytest.fixture
def manager(make_user) -> User:
    return make_user(ROLE_MANAGER)


@pytest.fixture
def admin(make_user) -> User:
    return make_user(ROLE_ADMIN)


@pytest.fixture
def make_machine(db_session):
    def _make_machine(name: str = 'Laser Cutter', duration_minutes: int = 30, active: bool = True) -> Machine:
        machine = Machine(name=name, training_duration_minutes=duration_minutes, active=active)
        db_session.add(machine)
        db_session.commit()
        db_session.refresh(machine)
        return machine

    return _make_machine


@pytest.fixture
def machine(make_machine) -> Machine:
    return make_machine()


@pytest.fixture
def make_rule(db_session):
    def _make_rule(
        manager: User,
        day_of_week: int = FRIDAY,
        start_minute_of_day: int = 9 * 60,
        end_minute_of_day: int = 11 * 60,
        zone: str = LA,
        active: bool = True,
    ) -> AvailabilityRule:
        rule = AvailabilityRule(
            manager_id=manager.id,
            day_of_week=day_of_week,
            start_minute_of_day=start_minute_of_day,
            end_minute_of_day=end_minute_of_day,
            timezone=zone,
            active=active,
        )
        db_session.add(rule)
        db_session.commit()
        db_session.refresh(rule)
        return rule

    return _make_rule


@pytest.fixture
def make_appointment(db_session):
    def _make_appointment(
        member: User,
        machine: Machine,
        manager: User,
        start_time: datetime,
        end_time: datetime,
        status: str = 'pending',
    ) -> Appointment:
        appointment = Appointment(
            user_id=member.id,
            machine_id=machine.id,
            manager_id=manager.id,
            start_time=start_time,
            end_time=end_time,
            status=status,
        )
        db_session.add(appointment)
        db_session.commit()
        db_session.refresh(appointment)
        return appointment

    return _make_appointment


@pytest.fixture
def grant_standing_checkout(db_session):
    def _grant(user: User, machine: Machine, approver: User) -> ManagerCheckout:
        checkout = ManagerCheckout(user_id=user.id, machine_id=machine.id, approved_by=approver.id, approved_at=NOW)
        db_session.add(checkout)
        db_session.commit()
        return checkout

    return _grant


@pytest.fixture
def add_training_requirement(db_session):
    def _add(machine: Machine, title: str = 'Laser Safety', duration_seconds: int = 600) -> TrainingModule:
        module = TrainingModule(title=title, duration_seconds=duration_seconds)
        db_session.add(module)
        db_session.flush()
        db_session.add(MachineRequirement(machine_id=machine.id, module_id=module.id, required_watch_percent=90))
        db_session.commit()
        db_session.refresh(module)
        return module

    return _add


@pytest.fixture
def record_progress(db_session):
    def _record(user: User, module: TrainingModule, watched_seconds: int) -> TrainingProgress:
        progress = TrainingProgress(user_id=user.id, module_id=module.id, watched_seconds=watched_seconds)
        db_session.add(progress)
        db_session.commit()
        return progress

    return _record
