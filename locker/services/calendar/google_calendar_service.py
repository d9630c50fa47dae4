import logging
import socket
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import httplib2
from google.auth.exceptions import RefreshError, TransportError
from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials
from google_auth_httplib2 import AuthorizedHttp
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError
from tenacity import Retrying, before_sleep_log, retry_if_exception_type, stop_after_attempt, wait_exponential

from locker.config.settings import Settings, get_settings
from locker.core.exceptions import ProviderAuthError, ProviderError, SyncCursorRejected, TransientProviderError

logger = logging.getLogger(__name__)

_RATE_LIMIT_REASONS = {"rateLimitExceeded", "userRateLimitExceeded"}
_REVOKED_GRANT_ERRORS = ("invalid_grant", "unauthorized_client")


@dataclass
class ChangePage:
    """One page of events.list: a continuation token or a terminal sync token."""
    items: List[Dict[str, Any]] = field(default_factory=list)
    next_page_token: Optional[str] = None
    next_sync_token: Optional[str] = None


@dataclass
class WatchChannel:
    channel_id: str
    resource_id: str
    expires_at: datetime


@dataclass
class RefreshedToken:
    access_token: str
    expires_at: Optional[datetime]
    refresh_token: Optional[str] = None


class _TimeoutRequest(Request):
    """Token-endpoint transport with a bounded timeout."""

    def __init__(self, timeout: float):
        super().__init__()
        self._timeout = timeout

    def __call__(self, *args, **kwargs):
        kwargs["timeout"] = self._timeout
        return super().__call__(*args, **kwargs)


class GoogleCalendarService:
    SCOPES = ['https://www.googleapis.com/auth/calendar']

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self.client_config = {
            "client_id": self.settings.GOOGLE_CLIENT_ID,
            "client_secret": self.settings.GOOGLE_CLIENT_SECRET,
            "token_uri": self.settings.GOOGLE_TOKEN_URI,
        }

    # ------------------------------------------------------------------
    # Tokens
    # ------------------------------------------------------------------

    def refresh_access_token(self, refresh_token: str) -> RefreshedToken:
        """Exchange the refresh token for a fresh access token"""
        credentials = Credentials(
            token=None,
            refresh_token=refresh_token,
            token_uri=self.client_config['token_uri'],
            client_id=self.client_config['client_id'],
            client_secret=self.client_config['client_secret'],
            scopes=self.SCOPES,
        )
        try:
            credentials.refresh(_TimeoutRequest(self.settings.PROVIDER_TIMEOUT_SECONDS))
        except RefreshError as exc:
            if any(code in str(exc) for code in _REVOKED_GRANT_ERRORS):
                raise ProviderAuthError(f"Refresh token rejected: {exc}") from exc
            if getattr(exc, "retryable", False):
                raise TransientProviderError(f"Token refresh failed: {exc}") from exc
            raise ProviderError(f"Token refresh failed: {exc}") from exc
        except TransportError as exc:
            raise TransientProviderError(f"Token endpoint unreachable: {exc}") from exc

        expiry = credentials.expiry
        if expiry is not None and expiry.tzinfo is None:
            # google-auth reports expiry as naive UTC
            expiry = expiry.replace(tzinfo=timezone.utc)

        rotated = credentials.refresh_token if credentials.refresh_token != refresh_token else None
        return RefreshedToken(access_token=credentials.token, expires_at=expiry, refresh_token=rotated)

    # ------------------------------------------------------------------
    # Calendar API
    # ------------------------------------------------------------------

    def _calendar(self, access_token: str):
        http = AuthorizedHttp(
            Credentials(token=access_token),
            http=httplib2.Http(timeout=self.settings.PROVIDER_TIMEOUT_SECONDS),
        )
        return build('calendar', 'v3', http=http, cache_discovery=False)

    def list_changes(
            self,
            access_token: str,
            resource_id: str,
            sync_token: Optional[str] = None,
            page_token: Optional[str] = None,
            time_min: Optional[datetime] = None,
            time_max: Optional[datetime] = None,
    ) -> ChangePage:
        """Fetch one page of changes.

        With a sync token only changes since that token are returned; without
        one the visible window [time_min, time_max) is listed in full.
        """
        params: Dict[str, Any] = {
            'calendarId': resource_id,
            'singleEvents': True,
            'showDeleted': True,
            'maxResults': 250,
        }
        if sync_token:
            # Google rejects time bounds combined with a sync token
            params['syncToken'] = sync_token
        else:
            if time_min is not None:
                params['timeMin'] = time_min.isoformat()
            if time_max is not None:
                params['timeMax'] = time_max.isoformat()
        if page_token:
            params['pageToken'] = page_token

        service = self._calendar(access_token)
        response = self._execute(lambda: service.events().list(**params).execute())
        return ChangePage(
            items=response.get('items', []),
            next_page_token=response.get('nextPageToken'),
            next_sync_token=response.get('nextSyncToken'),
        )

    def watch(
            self,
            access_token: str,
            resource_id: str,
            channel_id: str,
            address: str,
            channel_token: str,
            ttl_seconds: int,
    ) -> WatchChannel:
        """Register a push-notification channel for the calendar"""
        body = {
            'id': channel_id,
            'type': 'web_hook',
            'address': address,
            'token': channel_token,
            'params': {'ttl': str(ttl_seconds)},
        }
        service = self._calendar(access_token)
        response = self._execute(
            lambda: service.events().watch(calendarId=resource_id, body=body).execute()
        )
        expiration_ms = int(response.get('expiration') or 0)
        if expiration_ms:
            expires_at = datetime.fromtimestamp(expiration_ms / 1000, tz=timezone.utc)
        else:
            expires_at = datetime.now(timezone.utc) + timedelta(seconds=ttl_seconds)
        return WatchChannel(
            channel_id=response.get('id', channel_id),
            resource_id=response['resourceId'],
            expires_at=expires_at,
        )

    def stop_channel(self, access_token: str, channel_id: str, resource_id: str) -> None:
        service = self._calendar(access_token)
        self._execute(
            lambda: service.channels().stop(body={'id': channel_id, 'resourceId': resource_id}).execute()
        )

    def insert_event(self, access_token: str, resource_id: str, body: Dict[str, Any]) -> Dict[str, Any]:
        service = self._calendar(access_token)
        return self._execute(
            lambda: service.events().insert(calendarId=resource_id, body=body).execute()
        )

    # ------------------------------------------------------------------
    # Error translation and retry
    # ------------------------------------------------------------------

    def _execute(self, call):
        retrying = Retrying(
            stop=stop_after_attempt(self.settings.SYNC_MAX_ATTEMPTS),
            wait=wait_exponential(
                multiplier=self.settings.SYNC_BACKOFF_MIN_SECONDS,
                min=self.settings.SYNC_BACKOFF_MIN_SECONDS,
                max=self.settings.SYNC_BACKOFF_MAX_SECONDS,
            ),
            retry=retry_if_exception_type(TransientProviderError),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )
        return retrying(self._execute_once, call)

    @staticmethod
    def _execute_once(call):
        try:
            return call()
        except HttpError as exc:
            raise _translate_http_error(exc) from exc
        except (socket.timeout, TimeoutError, ConnectionError, httplib2.HttpLib2Error) as exc:
            raise TransientProviderError(f"Calendar API unreachable: {exc}") from exc


def _http_error_reason(exc: HttpError) -> Optional[str]:
    details = getattr(exc, "error_details", None)
    if isinstance(details, list) and details and isinstance(details[0], dict):
        return details[0].get("reason")
    return None


def _translate_http_error(exc: HttpError) -> ProviderError:
    status = int(exc.resp.status)
    if status == 410:
        return SyncCursorRejected("Sync token is no longer valid", status=status)
    if status == 429 or status >= 500:
        return TransientProviderError(f"Calendar API returned {status}", status=status)
    if status == 403 and _http_error_reason(exc) in _RATE_LIMIT_REASONS:
        return TransientProviderError("Calendar API rate limit exceeded", status=status)
    return ProviderError(f"Calendar API returned {status}: {exc}", status=status)
