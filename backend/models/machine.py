"""Machine and training model definitions."""

from sqlalchemy import Boolean, CheckConstraint, Column, ForeignKey, Integer, String, UniqueConstraint
from sqlalchemy.orm import relationship

from backend.core.clock import utc_now
from backend.database import Base
from backend.models.types import UTCDateTime

DEFAULT_TRAINING_DURATION_MINUTES = 30
DEFAULT_REQUIRED_WATCH_PERCENT = 90


class Machine(Base):
    """A shared machine or tool that members can be checked out on and reserve."""
    __tablename__ = "machines"
    __table_args__ = (
        CheckConstraint('training_duration_minutes > 0', name='machine_training_duration_positive'),
    )

    id = Column(Integer, primary_key=True)
    name = Column(String, nullable=False)
    description = Column(String)
    active = Column(Boolean, nullable=False, default=True)
    training_duration_minutes = Column(Integer, nullable=False, default=DEFAULT_TRAINING_DURATION_MINUTES)
    created_at = Column(UTCDateTime, nullable=False, default=utc_now)
    updated_at = Column(UTCDateTime, nullable=False, default=utc_now, onupdate=utc_now)

    requirements = relationship('MachineRequirement', back_populates='machine', cascade='all, delete-orphan')


class TrainingModule(Base):
    """A training video members must watch before a checkout."""
    __tablename__ = "training_modules"

    id = Column(Integer, primary_key=True)
    title = Column(String, nullable=False)
    duration_seconds = Column(Integer, nullable=False)
    active = Column(Boolean, nullable=False, default=True)


class MachineRequirement(Base):
    __tablename__ = "machine_requirements"
    __table_args__ = (UniqueConstraint('machine_id', 'module_id', name='machine_module_idx'),)

    id = Column(Integer, primary_key=True)
    machine_id = Column(Integer, ForeignKey("machines.id", ondelete='CASCADE'), nullable=False)
    module_id = Column(Integer, ForeignKey("training_modules.id", ondelete='CASCADE'), nullable=False)
    required_watch_percent = Column(Integer, nullable=False, default=DEFAULT_REQUIRED_WATCH_PERCENT)

    machine = relationship('Machine', back_populates='requirements')
    module = relationship('TrainingModule')


class TrainingProgress(Base):
    """Watch progress written by the training player; read-only here."""
    __tablename__ = "training_progress"
    __table_args__ = (UniqueConstraint('user_id', 'module_id', name='user_module_idx'),)

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete='CASCADE'), nullable=False)
    module_id = Column(Integer, ForeignKey("training_modules.id", ondelete='CASCADE'), nullable=False)
    watched_seconds = Column(Integer, nullable=False, default=0)
    updated_at = Column(UTCDateTime, nullable=False, default=utc_now, onupdate=utc_now)
