"""Checkout appointment model definitions."""

from sqlalchemy import JSON, Column, ForeignKey, Integer, String
from sqlalchemy.orm import relationship

from backend.core.clock import utc_now
from backend.database import Base
from backend.models.availability import AvailabilityRule
from backend.models.machine import Machine
from backend.models.types import UTCDateTime
from backend.models.user import User

STATUS_PENDING = 'pending'
STATUS_ACCEPTED = 'accepted'
STATUS_REJECTED = 'rejected'
STATUS_CANCELLED = 'cancelled'
STATUS_COMPLETED = 'completed'
APPOINTMENT_STATUSES = (STATUS_PENDING, STATUS_ACCEPTED, STATUS_REJECTED, STATUS_CANCELLED, STATUS_COMPLETED)
ACTIVE_APPOINTMENT_STATUSES = (STATUS_PENDING, STATUS_ACCEPTED)
TERMINAL_APPOINTMENT_STATUSES = frozenset({STATUS_REJECTED, STATUS_CANCELLED, STATUS_COMPLETED})

RESULT_PASS = 'pass'
RESULT_FAIL = 'fail'
APPOINTMENT_RESULTS = (RESULT_PASS, RESULT_FAIL)

EVENT_REQUESTED = 'requested'
EVENT_ACCEPTED = 'accepted'
EVENT_REJECTED = 'rejected'
EVENT_CANCELLED = 'cancelled'
EVENT_PASSED = 'passed'
EVENT_FAILED = 'failed'


class Appointment(Base):
    """Represents a member's checkout meeting request with a manager."""
    __tablename__ = "checkout_appointments"

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete='CASCADE'), nullable=False, index=True)
    machine_id = Column(Integer, ForeignKey("machines.id", ondelete='CASCADE'), nullable=False)
    manager_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    availability_rule_id = Column(Integer, ForeignKey("checkout_availability_rules.id"))
    start_time = Column(UTCDateTime, nullable=False)
    end_time = Column(UTCDateTime, nullable=False)
    status = Column(String, nullable=False, default=STATUS_PENDING)
    notes = Column(String)
    decision_reason = Column(String)
    result = Column(String)
    result_notes = Column(String)
    reviewed_by = Column(Integer, ForeignKey("users.id"))
    reviewed_at = Column(UTCDateTime)
    resulted_by = Column(Integer, ForeignKey("users.id"))
    resulted_at = Column(UTCDateTime)
    cancellation_reason = Column(String)
    created_at = Column(UTCDateTime, nullable=False, default=utc_now)
    updated_at = Column(UTCDateTime, nullable=False, default=utc_now, onupdate=utc_now)

    user = relationship(User, foreign_keys=[user_id])
    manager = relationship(User, foreign_keys=[manager_id])
    machine = relationship(Machine)
    availability_rule = relationship(AvailabilityRule)
    events = relationship(
        'AppointmentEvent',
        back_populates='appointment',
        order_by='AppointmentEvent.id',
        passive_deletes=True,
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_APPOINTMENT_STATUSES


class AppointmentEvent(Base):
    """Append-only audit row, one per appointment status transition."""
    __tablename__ = "checkout_appointment_events"

    id = Column(Integer, primary_key=True)
    appointment_id = Column(
        Integer,
        ForeignKey("checkout_appointments.id", ondelete='CASCADE'),
        nullable=False,
        index=True,
    )
    event_type = Column(String, nullable=False)
    actor_id = Column(Integer, ForeignKey("users.id", ondelete='SET NULL'))
    actor_role = Column(String)
    from_status = Column(String)
    to_status = Column(String)
    # "metadata" is reserved on declarative classes.
    event_metadata = Column('metadata', JSON, nullable=False, default=dict)
    created_at = Column(UTCDateTime, nullable=False, default=utc_now)

    appointment = relationship(Appointment, back_populates='events')
