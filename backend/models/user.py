"""User model definitions."""

from sqlalchemy import Column, Integer, String

from backend.core.clock import utc_now
from backend.database import Base
from backend.models.types import UTCDateTime

ROLE_MEMBER = 'member'
ROLE_MANAGER = 'manager'
ROLE_ADMIN = 'admin'
USER_ROLES = (ROLE_MEMBER, ROLE_MANAGER, ROLE_ADMIN)

STATUS_ACTIVE = 'active'
STATUS_SUSPENDED = 'suspended'


class User(Base):
    """Represents a makerspace member, manager or admin."""
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String, unique=True, index=True, nullable=False)
    name = Column(String)
    hashed_password = Column(String)
    role = Column(String, nullable=False, default=ROLE_MEMBER)  # member/manager/admin
    status = Column(String, nullable=False, default=STATUS_ACTIVE)
    created_at = Column(UTCDateTime, nullable=False, default=utc_now)

    @property
    def display_name(self) -> str:
        return self.name or self.email

    @property
    def is_active(self) -> bool:
        return self.status == STATUS_ACTIVE
