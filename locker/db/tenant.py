"""
Tenant-scoped transactions.

Every query against the calendar tables runs inside one of the two scopes
defined here. A scope opens a transaction, publishes the caller's identity
through transaction-local PostgreSQL settings that the row-level policies
read, and clears those settings again before the transaction ends:

    with tenant_session(TenantContext(user_id, UserRole.ATHLETE, None)) as db:
        db.query(CalendarEvent).all()   # only this user's rows are visible

``system_session`` is the elevated variant for trusted background paths
(webhook fan-out lookup, Celery jobs). Request handlers never use it with
user-supplied parameters.
"""
import logging
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Callable, ContextManager, Dict, Iterator, Optional, TypeVar, Union
from uuid import UUID

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from locker.models.user import UserRole

logger = logging.getLogger(__name__)

T = TypeVar("T")

CURRENT_USER_ID = "app.current_user_id"
CURRENT_ROLE = "app.current_role"
CURRENT_TEAM_ID = "app.current_team_id"

SYSTEM_ROLE = "SYSTEM"

_SET_CONFIG = text("SELECT set_config(:name, :value, true)")


@dataclass(frozen=True)
class TenantContext:
    """Identity attached to exactly one transaction."""
    user_id: UUID
    role: Union[UserRole, str]
    team_id: Optional[UUID] = None

    def settings(self) -> Dict[str, str]:
        role = self.role.value if isinstance(self.role, UserRole) else str(self.role)
        if role == SYSTEM_ROLE:
            raise ValueError("Tenant contexts cannot carry the system role")
        return {
            CURRENT_USER_ID: str(self.user_id),
            CURRENT_ROLE: role,
            CURRENT_TEAM_ID: str(self.team_id) if self.team_id else "",
        }


_SYSTEM_SETTINGS = {
    CURRENT_USER_ID: "",
    CURRENT_ROLE: SYSTEM_ROLE,
    CURRENT_TEAM_ID: "",
}

_CLEARED_SETTINGS = {
    CURRENT_USER_ID: "",
    CURRENT_ROLE: "",
    CURRENT_TEAM_ID: "",
}


class TransactionGuard:
    """Opens sessions whose transaction carries tenant settings."""

    def __init__(self, session_factory: Callable[[], Session]):
        self.session_factory = session_factory

    def apply_settings(self, db: Session, values: Dict[str, str]) -> None:
        for name, value in values.items():
            db.execute(_SET_CONFIG, {"name": name, "value": value})

    @contextmanager
    def _scope(self, values: Dict[str, str]) -> Iterator[Session]:
        db = self.session_factory()
        try:
            self.apply_settings(db, values)
            try:
                yield db
            except Exception:
                self._clear_after_failure(db)
                raise
            self.apply_settings(db, _CLEARED_SETTINGS)
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def _clear_after_failure(self, db: Session) -> None:
        # An aborted PostgreSQL transaction rejects further statements; the
        # settings are transaction-local, so the rollback that follows
        # discards them anyway.
        try:
            self.apply_settings(db, _CLEARED_SETTINGS)
        except SQLAlchemyError as exc:
            logger.warning(f"Tenant settings left to rollback after failed transaction: {exc}")

    def tenant(self, context: TenantContext) -> ContextManager[Session]:
        return self._scope(context.settings())

    def system(self) -> ContextManager[Session]:
        return self._scope(dict(_SYSTEM_SETTINGS))

    def with_tenant(self, context: TenantContext, fn: Callable[[Session], T]) -> T:
        with self.tenant(context) as db:
            return fn(db)

    def with_system_access(self, fn: Callable[[Session], T]) -> T:
        with self.system() as db:
            return fn(db)


def _default_session_factory() -> Session:
    from locker.config.database import SessionLocal

    return SessionLocal()


default_guard = TransactionGuard(_default_session_factory)


def tenant_session(context: TenantContext):
    return default_guard.tenant(context)


def system_session():
    return default_guard.system()


def with_tenant(context: TenantContext, fn: Callable[[Session], T]) -> T:
    return default_guard.with_tenant(context, fn)


def with_system_access(fn: Callable[[Session], T]) -> T:
    return default_guard.with_system_access(fn)
