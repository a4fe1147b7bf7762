"""Standing checkout model definitions."""

from sqlalchemy import Column, ForeignKey, Integer, String, UniqueConstraint
from sqlalchemy.orm import relationship

from backend.core.clock import utc_now
from backend.database import Base
from backend.models.machine import Machine
from backend.models.types import UTCDateTime


class ManagerCheckout(Base):
    """Durable per-member, per-machine access granted after a passed checkout."""
    __tablename__ = "manager_checkouts"
    __table_args__ = (UniqueConstraint('user_id', 'machine_id', name='checkout_user_machine_idx'),)

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete='CASCADE'), nullable=False)
    machine_id = Column(Integer, ForeignKey("machines.id", ondelete='CASCADE'), nullable=False)
    approved_by = Column(Integer, ForeignKey("users.id"), nullable=False)
    approved_at = Column(UTCDateTime, nullable=False, default=utc_now)
    notes = Column(String)

    machine = relationship(Machine)
