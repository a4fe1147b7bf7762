"""Availability rule model definitions."""

from sqlalchemy import Boolean, CheckConstraint, Column, ForeignKey, Integer, String
from sqlalchemy.orm import relationship

from backend.core.clock import utc_now
from backend.database import Base
from backend.models.types import UTCDateTime
from backend.models.user import User

MINUTES_PER_DAY = 24 * 60


class AvailabilityRule(Base):
    """A manager's recurring weekly checkout window, in local wall-clock minutes.

    Rules are deactivated rather than deleted so appointments keep a valid
    reference to the rule they were booked from.
    """
    __tablename__ = "checkout_availability_rules"
    __table_args__ = (
        CheckConstraint('day_of_week >= 0 AND day_of_week <= 6', name='rule_day_of_week_range'),
        CheckConstraint('end_minute_of_day > start_minute_of_day', name='rule_minute_order'),
    )

    id = Column(Integer, primary_key=True)
    manager_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    day_of_week = Column(Integer, nullable=False)  # 0 = Sunday
    start_minute_of_day = Column(Integer, nullable=False)
    end_minute_of_day = Column(Integer, nullable=False)
    timezone = Column(String, nullable=False)
    notes = Column(String)
    active = Column(Boolean, nullable=False, default=True)
    created_at = Column(UTCDateTime, nullable=False, default=utc_now)
    updated_at = Column(UTCDateTime, nullable=False, default=utc_now, onupdate=utc_now)

    manager = relationship(User)
