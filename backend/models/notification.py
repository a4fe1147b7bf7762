"""Notification and application setting model definitions."""

from sqlalchemy import JSON, Column, ForeignKey, Integer, String

from backend.core.clock import utc_now
from backend.database import Base
from backend.models.types import UTCDateTime


class Notification(Base):
    """An in-app notice for one user; delivery to the browser happens elsewhere."""
    __tablename__ = "notifications"

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete='CASCADE'), nullable=False, index=True)
    type = Column(String, nullable=False)
    title = Column(String, nullable=False)
    message = Column(String, nullable=False)
    notification_metadata = Column('metadata', JSON, nullable=False, default=dict)
    read_at = Column(UTCDateTime)
    created_at = Column(UTCDateTime, nullable=False, default=utc_now)


class AppSetting(Base):
    __tablename__ = "app_settings"

    key = Column(String, primary_key=True)
    value = Column(String, nullable=False)
    updated_at = Column(UTCDateTime, nullable=False, default=utc_now, onupdate=utc_now)
