# locker/services/webhook/webhook_service.py
"""
Ingress for provider push notifications.

A notification only says "something changed on channel X". The receiver maps
the channel to the credentials that reference it and starts a sync pass for
each owner. Per-user failures are logged here and never reach the provider,
whose redelivery logic must not be driven by one tenant's internal error.
"""
import hmac
import logging
from concurrent.futures import Executor, ThreadPoolExecutor, wait
from dataclasses import dataclass
from typing import Callable, List, Optional, Tuple
from uuid import UUID

from locker.config.settings import Settings, get_settings
from locker.core.exceptions import UntrustedNotification
from locker.db.tenant import TransactionGuard, default_guard
from locker.services.calendar.token_store import TokenStore

logger = logging.getLogger(__name__)


@dataclass
class NotificationReceipt:
    channel_id: str
    matched: int = 0
    dispatched: int = 0
    untrusted: int = 0
    lookup_failed: bool = False


class CalendarWebhookService:
    def __init__(
            self,
            sync_user: Callable[[UUID], object],
            token_store: Optional[TokenStore] = None,
            guard: Optional[TransactionGuard] = None,
            executor: Optional[Executor] = None,
            settings: Optional[Settings] = None,
    ):
        self.settings = settings or get_settings()
        self._sync_user = sync_user
        self.token_store = token_store or TokenStore()
        self.guard = guard or default_guard
        self.executor = executor or ThreadPoolExecutor(
            max_workers=self.settings.WEBHOOK_FANOUT_WORKERS,
            thread_name_prefix="calendar-webhook",
        )

    def handle_notification(
            self, channel_id: str, resource_id: Optional[str], channel_token: Optional[str],
    ) -> NotificationReceipt:
        receipt = NotificationReceipt(channel_id=channel_id)

        try:
            subscribers: List[Tuple[UUID, Optional[str], Optional[str]]] = self.guard.with_system_access(
                lambda db: [
                    (c.user_id, c.watch_resource_id, c.watch_channel_token)
                    for c in self.token_store.find_by_channel(db, channel_id)
                ]
            )
        except Exception:
            # The sender still gets its acknowledgement; the next notification or renewal retries
            logger.exception(f"Channel lookup failed for notification on {channel_id}")
            receipt.lookup_failed = True
            return receipt
        receipt.matched = len(subscribers)
        if not subscribers:
            # Superseded or unknown channel
            logger.info(f"Notification for unreferenced channel {channel_id}")
            return receipt

        trusted: List[UUID] = []
        for user_id, stored_resource, stored_token in subscribers:
            try:
                self._verify(channel_id, resource_id, channel_token, stored_resource, stored_token)
            except UntrustedNotification as exc:
                logger.warning(f"Ignoring notification for user {user_id}: {exc}")
                receipt.untrusted += 1
                continue
            trusted.append(user_id)

        futures = [self.executor.submit(self._run_sync, user_id) for user_id in trusted]
        receipt.dispatched = len(futures)
        if futures:
            _, pending = wait(futures, timeout=self.settings.WEBHOOK_FANOUT_DEADLINE_SECONDS)
            if pending:
                logger.info(f"{len(pending)} sync passes for channel {channel_id} continue in the background")
        return receipt

    @staticmethod
    def _verify(
            channel_id: str,
            resource_id: Optional[str],
            channel_token: Optional[str],
            stored_resource: Optional[str],
            stored_token: Optional[str],
    ) -> None:
        if stored_token is not None:
            if channel_token is None or not hmac.compare_digest(channel_token.encode(), stored_token.encode()):
                raise UntrustedNotification(f"channel token mismatch on {channel_id}")
        if stored_resource is not None and resource_id is not None and resource_id != stored_resource:
            raise UntrustedNotification(f"resource id mismatch on {channel_id}")

    def _run_sync(self, user_id: UUID) -> None:
        try:
            outcome = self._sync_user(user_id)
        except Exception:
            logger.exception(f"Webhook-triggered sync failed for user {user_id}")
            return
        logger.info(f"Webhook-triggered sync for user {user_id}: {getattr(outcome, 'status', outcome)}")

    def shutdown(self) -> None:
        self.executor.shutdown(wait=False)
