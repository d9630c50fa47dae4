"""Error taxonomy for calendar sync, feed import and webhook ingress"""
from typing import Optional


class CalendarSyncError(Exception):
    """Base class for calendar synchronization errors"""


# ---------------------------------------------------------------------------
# Sync engine outcomes
# ---------------------------------------------------------------------------

class CredentialRevoked(CalendarSyncError):
    """Refresh token is invalid or revoked; terminal until the user re-links."""


class RecoverableSyncFailure(CalendarSyncError):
    """Transient failure; the stored cursor is kept and the next trigger resumes."""


# ---------------------------------------------------------------------------
# Provider client
# ---------------------------------------------------------------------------

class ProviderError(CalendarSyncError):
    """Non-retryable error returned by the calendar provider"""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class TransientProviderError(ProviderError):
    """Rate limit, 5xx or timeout; retried with backoff"""


class ProviderAuthError(ProviderError):
    """Refresh token rejected by the provider (invalid_grant)"""


class SyncCursorRejected(ProviderError):
    """Provider no longer accepts the stored sync cursor (HTTP 410)"""


# ---------------------------------------------------------------------------
# Feed import
# ---------------------------------------------------------------------------

class FeedImportError(CalendarSyncError):
    """Whole-feed failure reported to the caller"""


class FeedUnreachable(FeedImportError):
    """Feed could not be fetched"""


class FeedMalformed(FeedImportError):
    """Feed was fetched but is not a parseable calendar document"""


class EntryMalformed(CalendarSyncError):
    """A single event entry could not be normalized"""


# ---------------------------------------------------------------------------
# Webhook ingress
# ---------------------------------------------------------------------------

class UntrustedNotification(CalendarSyncError):
    """Notification whose channel token or resource id does not match"""
