"""
Celery worker entry point
Runs calendar sync passes and watch-channel maintenance
"""
import logging
from celery.signals import worker_ready, worker_shutdown

from locker.config.celery_config import celery_app
from locker.utils.my_logging import setup_logging

setup_logging()
logger = logging.getLogger(__name__)


@worker_ready.connect
def worker_ready_handler(sender=None, **kwargs):
    """Handle worker startup"""
    logger.info("🚀 Celery worker ready!")
    logger.info(f"📋 Registered tasks: {list(celery_app.tasks.keys())}")


@worker_shutdown.connect
def worker_shutdown_handler(sender=None, **kwargs):
    """Handle worker shutdown"""
    logger.info("🛑 Celery worker shutting down...")


if __name__ == "__main__":
    celery_app.start([
        'worker',
        '--loglevel=info',
        '--concurrency=4',
        '--max-tasks-per-child=1000',
        '-Q', 'calendar',
    ])
