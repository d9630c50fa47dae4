"""Celery application factory and beat schedule"""
from celery import Celery
from celery.schedules import crontab

from locker.config.settings import get_settings

settings = get_settings()


def create_celery_app() -> Celery:
    """Create and configure the Celery application"""
    app = Celery(
        "locker",
        broker=settings.CELERY_BROKER_URL,
        backend=settings.CELERY_RESULT_BACKEND,
        include=["locker.tasks.calendar_tasks"],
    )

    app.conf.update(
        task_serializer=settings.CELERY_TASK_SERIALIZER,
        result_serializer="json",
        accept_content=["json"],
        timezone="UTC",
        enable_utc=True,
        task_acks_late=True,
        worker_prefetch_multiplier=1,
        task_routes={
            "locker.tasks.calendar_tasks.*": {"queue": "calendar"},
        },
    )

    app.conf.beat_schedule = {
        "renew-expiring-watch-channels": {
            "task": "locker.tasks.calendar_tasks.renew_expiring_watch_channels",
            "schedule": crontab(minute=f"*/{settings.WATCH_RENEWAL_INTERVAL_MINUTES}"),
        },
        "revoke-expired-watch-channels": {
            "task": "locker.tasks.calendar_tasks.revoke_expired_watch_channels",
            "schedule": crontab(minute=15),
        },
    }

    return app


celery_app = create_celery_app()
