# ============================================================================
# FILE: locker/models/user.py
# Read-only view of dashboard users: identity, access level and team
# ============================================================================
from sqlalchemy import Column, String, DateTime, Uuid, Enum as SQLEnum
from sqlalchemy.sql import func
import uuid
import enum
from locker.models.base import Base


class UserRole(str, enum.Enum):
    """Access levels understood by the row-level policies."""
    ATHLETE = "ATHLETE"
    COACH = "COACH"


class User(Base):
    __tablename__ = "users"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    email = Column(String(255), unique=True, nullable=False, index=True)
    full_name = Column(String(255), nullable=True)

    role = Column(SQLEnum(UserRole, name="user_role"), default=UserRole.ATHLETE, nullable=False)

    # Null until the user joins a team
    team_id = Column(Uuid, nullable=True, index=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    def __repr__(self):
        return f"<User {self.email} ({self.role})>"
