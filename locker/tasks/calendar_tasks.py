# ===== locker/tasks/calendar_tasks.py =====
import logging
from uuid import UUID

from locker.config.celery_config import celery_app
from locker.core.exceptions import CalendarSyncError
from locker.services.calendar.sync_service import CalendarSyncService
from locker.services.calendar.watch_service import WatchChannelService

logger = logging.getLogger(__name__)


@celery_app.task
def sync_user_calendar(user_id: str):
    """Run one sync pass for a user.

    Failures are reported in the outcome and the stored cursor is kept,
    so the next notification or beat run simply tries again.
    """
    outcome = CalendarSyncService().sync_user(UUID(user_id))
    if outcome.error:
        logger.warning(f"Calendar sync for user {user_id} ended {outcome.status.value}: {outcome.error}")
    return {
        "status": outcome.status.value,
        "pages": outcome.pages,
        "upserted": outcome.upserted,
        "tombstoned": outcome.tombstoned,
        "full_resync": outcome.full_resync,
    }


@celery_app.task
def ensure_watch_channel(user_id: str):
    """Create or renew the push channel for a freshly linked user"""
    try:
        state = WatchChannelService().ensure_watch(UUID(user_id))
    except CalendarSyncError as exc:
        logger.error(f"Could not open watch channel for user {user_id}: {exc}")
        return {"status": "failed", "reason": str(exc)}
    if state is None:
        return {"status": "skipped", "reason": "no_credential"}
    return {"status": "renewed" if state.renewed else "active", "channel_id": state.channel_id}


@celery_app.task
def renew_expiring_watch_channels():
    """Periodic: renew channels that expire within the renewal threshold"""
    renewed = WatchChannelService().renew_expiring_watch_channels()
    logger.info(f"Renewed {renewed} watch channels")
    return {"renewed": renewed}


@celery_app.task
def revoke_expired_watch_channels():
    """Periodic: clear subscription state for channels past their expiry"""
    cleared = WatchChannelService().revoke_expired_watch_channels()
    return {"cleared": cleared}
