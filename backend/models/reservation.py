"""Reservation model definitions."""

from sqlalchemy import Column, ForeignKey, Index, Integer, String
from sqlalchemy.orm import relationship

from backend.core.clock import utc_now
from backend.database import Base
from backend.models.machine import Machine
from backend.models.types import UTCDateTime
from backend.models.user import User

STATUS_PENDING = 'pending'
STATUS_APPROVED = 'approved'
STATUS_REJECTED = 'rejected'
STATUS_CANCELLED = 'cancelled'
STATUS_CONFIRMED = 'confirmed'
STATUS_COMPLETED = 'completed'
RESERVATION_STATUSES = (
    STATUS_PENDING,
    STATUS_APPROVED,
    STATUS_REJECTED,
    STATUS_CANCELLED,
    STATUS_CONFIRMED,
    STATUS_COMPLETED,
)
CONFLICTING_RESERVATION_STATUSES = (STATUS_PENDING, STATUS_APPROVED, STATUS_CONFIRMED)


class Reservation(Base):
    """Represents a direct booking of machine time."""
    __tablename__ = "reservations"
    __table_args__ = (
        Index('user_start_idx', 'user_id', 'start_time'),
        Index('machine_start_idx', 'machine_id', 'start_time'),
    )

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete='CASCADE'), nullable=False)
    machine_id = Column(Integer, ForeignKey("machines.id", ondelete='CASCADE'), nullable=False)
    start_time = Column(UTCDateTime, nullable=False)
    end_time = Column(UTCDateTime, nullable=False)
    status = Column(String, nullable=False, default=STATUS_PENDING)
    reviewed_by = Column(Integer, ForeignKey("users.id"))
    reviewed_at = Column(UTCDateTime)
    decision_reason = Column(String)
    review_notes = Column(String)
    created_at = Column(UTCDateTime, nullable=False, default=utc_now)
    updated_at = Column(UTCDateTime, nullable=False, default=utc_now, onupdate=utc_now)

    user = relationship(User, foreign_keys=[user_id])
    machine = relationship(Machine)
