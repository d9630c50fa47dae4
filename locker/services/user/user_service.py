# locker/services/user/user_service.py
from typing import Optional
from uuid import UUID

from sqlalchemy.orm import Session

from locker.db.tenant import TenantContext
from locker.models.user import User, UserRole


class UserService:
    """Resolves users to the identity triple the row-level policies use."""

    @staticmethod
    def tenant_context(db: Session, user_id: UUID) -> Optional[TenantContext]:
        user = db.query(User).filter(User.id == user_id).one_or_none()
        if user is None:
            return None
        return TenantContext(user_id=user.id, role=user.role, team_id=user.team_id)

    @staticmethod
    def team_athletes(db: Session, team_id: UUID, athlete_ids=None):
        query = db.query(User).filter(User.role == UserRole.ATHLETE, User.team_id == team_id)
        if athlete_ids:
            query = query.filter(User.id.in_(list(athlete_ids)))
        return query.all()
