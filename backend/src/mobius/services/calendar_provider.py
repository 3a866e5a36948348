"""
Calendar provider clients for remediation events.

The reconciler talks to a ``CalendarProvider``; two implementations exist:
- GoogleCalendarProvider: Google Calendar v3 over httpx, authenticated with a
  domain-wide-delegated service account impersonating the attendee
- MockCalendarProvider: in-memory events for development and tests

``build_calendar_provider`` picks one for a configured integration.
"""

from __future__ import annotations

import asyncio
import itertools
from collections.abc import Awaitable, Callable
from datetime import datetime
from typing import Any, Protocol, runtime_checkable

import httpx
from google.auth.transport.requests import Request as GoogleAuthRequest
from google.oauth2 import service_account

from ..core.config import Settings
from ..core.exceptions import CalendarConfigurationError, CalendarProviderError
from ..core.logging import get_logger
from ..schemas.calendar import GoogleCalendarIntegration, ProviderEvent

logger = get_logger(__name__)

CALENDAR_SCOPES = ["https://www.googleapis.com/auth/calendar.events"]

# Integrations configured with this service account email never reach Google
CALENDAR_MOCK_EMAIL = "calendar-mock@example.com"

TokenSource = Callable[[str], Awaitable[str]]

# Shared across cycles so mock events outlive a single reconciliation run
_mock_provider: MockCalendarProvider | None = None


@runtime_checkable
class CalendarProvider(Protocol):
    """Creates and deletes events on an end user's calendar."""

    async def create_event(
        self,
        email: str,
        start_time: datetime,
        end_time: datetime,
        body: str,
        *,
        summary: str,
        timezone: str | None = None,
    ) -> ProviderEvent:
        """Create an event on ``email``'s calendar and return what the provider stored.

        Raises:
            CalendarProviderError: If the provider rejects the request.
        """
        ...

    async def delete_event(self, email: str, event_id: str) -> None:
        """Delete ``event_id`` from ``email``'s calendar; an already-missing event is not an error.

        Raises:
            CalendarProviderError: If the provider rejects the request.
        """
        ...

    async def aclose(self) -> None:
        """Release network resources held by the provider."""
        ...


class MockCalendarProvider:
    """In-memory calendar provider.

    Event ids are sequential strings ("1", "2", ...). ``fail_create_for`` and
    ``fail_delete_for`` hold emails whose operations raise
    ``CalendarProviderError``.
    """

    def __init__(self) -> None:
        self._events: dict[str, dict[str, Any]] = {}
        self._ids = itertools.count(1)
        self._lock = asyncio.Lock()
        self.fail_create_for: set[str] = set()
        self.fail_delete_for: set[str] = set()

    async def create_event(
        self,
        email: str,
        start_time: datetime,
        end_time: datetime,
        body: str,
        *,
        summary: str,
        timezone: str | None = None,
    ) -> ProviderEvent:
        if email in self.fail_create_for:
            raise CalendarProviderError("create_event", f"injected failure for {email}")

        async with self._lock:
            event_id = str(next(self._ids))
            data = {
                "id": event_id,
                "email": email,
                "summary": summary,
                "description": body,
                "start": start_time.isoformat(),
                "end": end_time.isoformat(),
                "timezone": timezone,
            }
            self._events[event_id] = data

        logger.debug("Mock calendar event created", extra={"event_id": event_id, "email": email})
        return ProviderEvent(
            id=event_id, start_time=start_time, end_time=end_time, timezone=timezone, data=dict(data)
        )

    async def delete_event(self, email: str, event_id: str) -> None:
        if email in self.fail_delete_for:
            raise CalendarProviderError("delete_event", f"injected failure for {email}")
        async with self._lock:
            self._events.pop(event_id, None)
        logger.debug("Mock calendar event deleted", extra={"event_id": event_id, "email": email})

    def list_events(self) -> dict[str, dict[str, Any]]:
        """Return a copy of the stored events keyed by event id."""
        return {event_id: dict(data) for event_id, data in self._events.items()}

    def clear(self) -> None:
        self._events.clear()

    async def aclose(self) -> None:
        pass


class GoogleCalendarProvider:
    """Google Calendar v3 client acting on the attendee's primary calendar."""

    def __init__(
        self,
        service_account_info: dict[str, str],
        *,
        base_url: str = "https://www.googleapis.com/calendar/v3",
        timeout: float = 30.0,
        client: httpx.AsyncClient | None = None,
        token_source: TokenSource | None = None,
    ) -> None:
        if not service_account_info.get("client_email") or not service_account_info.get("private_key"):
            if token_source is None:
                raise CalendarConfigurationError("service account key missing client_email or private_key")
        self._service_account_info = dict(service_account_info)
        self._base_url = base_url.rstrip("/")
        self._client = client or httpx.AsyncClient(timeout=httpx.Timeout(timeout))
        self._owns_client = client is None
        self._token_source = token_source or self._service_account_token
        self._credentials: dict[str, service_account.Credentials] = {}

    async def _service_account_token(self, subject: str) -> str:
        """Return an access token impersonating ``subject``, refreshing when expired."""
        creds = self._credentials.get(subject)
        if creds is None:
            info = dict(self._service_account_info)
            if "\\n" in info.get("private_key", ""):
                info["private_key"] = info["private_key"].replace("\\n", "\n")
            try:
                creds = service_account.Credentials.from_service_account_info(
                    info, scopes=CALENDAR_SCOPES, subject=subject
                )
            except ValueError as e:
                raise CalendarConfigurationError(f"invalid service account key: {e}") from e
            self._credentials[subject] = creds

        if not creds.valid:
            try:
                # google-auth refreshes synchronously over requests
                await asyncio.to_thread(creds.refresh, GoogleAuthRequest())
            except Exception as e:
                raise CalendarProviderError("authenticate", str(e)) from e
        return str(creds.token)

    async def _headers(self, email: str) -> dict[str, str]:
        token = await self._token_source(email)
        return {"Authorization": f"Bearer {token}", "Accept": "application/json"}

    async def create_event(
        self,
        email: str,
        start_time: datetime,
        end_time: datetime,
        body: str,
        *,
        summary: str,
        timezone: str | None = None,
    ) -> ProviderEvent:
        payload: dict[str, Any] = {
            "summary": summary,
            "description": body,
            "start": {"dateTime": start_time.isoformat()},
            "end": {"dateTime": end_time.isoformat()},
            "transparency": "opaque",
            "reminders": {"useDefault": False, "overrides": [{"method": "popup", "minutes": 10}]},
        }
        if timezone:
            payload["start"]["timeZone"] = timezone
            payload["end"]["timeZone"] = timezone

        url = f"{self._base_url}/calendars/primary/events"
        try:
            resp = await self._client.post(url, json=payload, headers=await self._headers(email))
        except httpx.HTTPError as e:
            raise CalendarProviderError("create_event", f"network error: {e}") from e

        if resp.status_code >= 400:
            raise CalendarProviderError(
                "create_event", f"HTTP {resp.status_code}: {resp.text[:300]}", status_code=resp.status_code
            )

        data = resp.json()
        event_id = data.get("id")
        if not event_id:
            raise CalendarProviderError("create_event", "response did not include an event id")

        logger.info("Calendar event created", extra={"event_id": event_id, "email": email})
        return ProviderEvent(id=str(event_id), start_time=start_time, end_time=end_time, timezone=timezone, data=data)

    async def delete_event(self, email: str, event_id: str) -> None:
        url = f"{self._base_url}/calendars/primary/events/{event_id}"
        try:
            resp = await self._client.delete(url, headers=await self._headers(email))
        except httpx.HTTPError as e:
            raise CalendarProviderError("delete_event", f"network error: {e}") from e

        if resp.status_code in (404, 410):
            logger.debug("Calendar event already gone", extra={"event_id": event_id, "email": email})
            return
        if resp.status_code >= 400:
            raise CalendarProviderError(
                "delete_event", f"HTTP {resp.status_code}: {resp.text[:300]}", status_code=resp.status_code
            )
        logger.info("Calendar event deleted", extra={"event_id": event_id, "email": email})

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()


def build_calendar_provider(integration: GoogleCalendarIntegration, settings: Settings) -> CalendarProvider:
    """Return the provider serving ``integration``."""
    if settings.calendar_provider == "mock" or integration.service_account_email == CALENDAR_MOCK_EMAIL:
        return get_mock_calendar_provider()
    return GoogleCalendarProvider(
        integration.api_key,
        base_url=settings.calendar_api_base_url,
        timeout=settings.calendar_api_timeout,
    )


def get_mock_calendar_provider() -> MockCalendarProvider:
    """Return the process-wide mock provider, creating it on first use."""
    global _mock_provider  # noqa: PLW0603
    if _mock_provider is None:
        logger.info("Using mock calendar provider")
        _mock_provider = MockCalendarProvider()
    return _mock_provider


def reset_mock_calendar_provider() -> None:
    """Drop the shared mock provider (for testing only)."""
    global _mock_provider  # noqa: PLW0603
    _mock_provider = None
