"""Calendar event reconciliation.

One reconciliation pass keeps exactly one remediation event per non-compliant
end user in sync with policy compliance across every calendar-enabled team:

- a failing host whose email has no event gets one created;
- a failing host whose email already has an event bound to it is left alone;
- an event bound to a different host than the one being reconciled is never
  touched;
- a passing host whose email has an event bound to it gets that event deleted;
- an event left with no host bound to it is removed when its email is next
  reconciled.

Teams are processed concurrently (bounded), hosts within a team concurrently
(bounded), and work for the same email is serialized for the whole pass.
A provider write and its stored record are never split by cancellation:
when the pass is cut short the in-flight write finishes first.
Running a pass requires holding the distributed run lock; see
``calendar_scheduler``.
"""

from __future__ import annotations

import asyncio
import uuid
from collections import defaultdict
from collections.abc import Callable, Coroutine
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any
from zoneinfo import ZoneInfo

from ..core.config import Settings
from ..core.exceptions import CalendarConfigurationError, ComplianceSnapshotError, DatastoreError
from ..core.logging import get_logger
from ..schemas.calendar import (
    CalendarEvent,
    CalendarWebhookStatus,
    CycleSkipReason,
    CycleSummary,
    GoogleCalendarIntegration,
    HostComplianceRow,
    Team,
)
from .calendar_body import generate_event_body, resolve_policy_details
from .calendar_datastore import CalendarDatastore
from .calendar_dates import event_time_range
from .calendar_provider import CalendarProvider, build_calendar_provider
from .compliance_snapshot import load_snapshot

logger = get_logger(__name__)

ProviderFactory = Callable[[GoogleCalendarIntegration], CalendarProvider]


@dataclass
class _Pass:
    """State shared by every team and host of one reconciliation pass."""

    provider: CalendarProvider
    org_name: str
    domain: str
    summary: CycleSummary
    email_locks: defaultdict[str, asyncio.Lock] = field(default_factory=lambda: defaultdict(asyncio.Lock))


class CalendarReconciler:
    """Maps compliance state to calendar events for every calendar-enabled team."""

    def __init__(
        self,
        datastore: CalendarDatastore,
        settings: Settings,
        provider_factory: ProviderFactory | None = None,
        now: Callable[[], datetime] | None = None,
    ) -> None:
        self.datastore = datastore
        self.settings = settings
        self._provider_factory = provider_factory or (lambda integration: build_calendar_provider(integration, settings))
        self._now = now or (lambda: datetime.now(UTC))
        self._tz = ZoneInfo(settings.calendar_event_timezone)

    async def reconcile(self, summary: CycleSummary | None = None) -> CycleSummary:
        """Run one reconciliation pass.

        ``summary`` is filled in as the pass progresses, so a caller that
        cancels the pass still sees the work done so far.

        Raises:
            CalendarConfigurationError: If the app configuration cannot be loaded.
        """
        summary = summary if summary is not None else CycleSummary()

        try:
            app_config = await self.datastore.get_app_config()
        except Exception as e:
            raise CalendarConfigurationError(str(e)) from e

        integration = app_config.google_calendar
        if integration is None:
            logger.debug("Google Calendar integration not configured, skipping calendar cycle")
            summary.skipped_reason = CycleSkipReason.NOT_CONFIGURED
            return summary

        teams = [team for team in await self.datastore.list_calendar_enabled_teams() if team.calendar_enabled]
        if not teams:
            logger.debug("No calendar-enabled teams")
            return summary

        provider = self._provider_factory(integration)
        state = _Pass(
            provider=provider,
            org_name=app_config.org_info.org_name,
            domain=integration.domain,
            summary=summary,
        )
        team_slots = asyncio.Semaphore(self.settings.calendar_team_concurrency)

        async def run_team(team: Team) -> None:
            async with team_slots:
                await self._reconcile_team(state, team)

        try:
            await asyncio.gather(*(run_team(team) for team in teams))
        finally:
            await provider.aclose()

        logger.info(
            "Calendar reconciliation pass finished",
            extra={
                "teams_processed": summary.teams_processed,
                "teams_failed": summary.teams_failed,
                "events_created": summary.events_created,
                "events_deleted": summary.events_deleted,
                "hosts_failed": summary.hosts_failed,
                "hosts_skipped": summary.hosts_skipped,
            },
        )
        return summary

    async def _reconcile_team(self, state: _Pass, team: Team) -> None:
        try:
            snapshot = await load_snapshot(self.datastore, team, state.domain)
        except ComplianceSnapshotError as e:
            logger.error(
                "Failed to load compliance snapshot: %s",
                e.message,
                extra={"team_id": team.id, "stage": e.stage},
            )
            state.summary.teams_failed += 1
            return
        except Exception:
            logger.exception("Unexpected error loading compliance snapshot", extra={"team_id": team.id})
            state.summary.teams_failed += 1
            return

        if not snapshot.policies:
            state.summary.teams_processed += 1
            return

        if snapshot.hosts_without_email:
            logger.debug(
                "Failing hosts without an email in the calendar domain",
                extra={
                    "team_id": team.id,
                    "domain": state.domain,
                    "host_ids": [host.host_id for host in snapshot.hosts_without_email],
                },
            )

        host_slots = asyncio.Semaphore(self.settings.calendar_host_concurrency)

        async def run_host(host: HostComplianceRow, failing: bool) -> None:
            async with host_slots, state.email_locks[host.email]:
                try:
                    if failing:
                        await self._reconcile_failing_host(state, host)
                    else:
                        await self._reconcile_passing_host(state, host)
                except Exception as e:
                    state.summary.hosts_failed += 1
                    logger.error(
                        "Calendar reconciliation failed for host: %s",
                        e,
                        extra={"team_id": team.id, "host_id": host.host_id, "email": host.email},
                    )

        await asyncio.gather(*(run_host(host, True) for host in snapshot.failing_hosts))
        await asyncio.gather(*(run_host(host, False) for host in snapshot.passing_hosts))
        state.summary.teams_processed += 1

    async def _reconcile_failing_host(self, state: _Pass, host: HostComplianceRow) -> None:
        existing = await self.datastore.get_event_by_email(host.email)
        if existing.is_ok:
            host_event, event = existing.unwrap()
            if host_event is not None:
                if host_event.host_id != host.host_id:
                    logger.debug(
                        "Calendar event for email belongs to another host, leaving it",
                        extra={"host_id": host.host_id, "owner_host_id": host_event.host_id, "email": host.email},
                    )
                    state.summary.hosts_skipped += 1
                return
            # Left behind when its host moved to another email
            logger.info(
                "Removing unbound calendar event before rescheduling",
                extra={"host_id": host.host_id, "email": host.email, "calendar_event_id": event.id},
            )
            await _run_to_completion(self._delete_event(state, host, event))
        elif not existing.is_not_found:
            raise DatastoreError("get_event_by_email", existing.error_message or "lookup failed")

        details = await resolve_policy_details(self.datastore, host.failing_policy_id_list())
        body = generate_event_body(state.org_name, host.host_display_name, details)
        start, end = event_time_range(
            self._now(),
            start_hour=self.settings.calendar_event_start_hour,
            duration_minutes=self.settings.calendar_event_duration_minutes,
            tz=self._tz,
        )
        await _run_to_completion(self._create_event(state, host, body, start, end))

    async def _create_event(
        self, state: _Pass, host: HostComplianceRow, body: str, start: datetime, end: datetime
    ) -> None:
        token = str(uuid.uuid4())
        created = await state.provider.create_event(
            host.email,
            start,
            end,
            body,
            summary=self.settings.calendar_event_summary,
            timezone=self.settings.calendar_event_timezone,
        )
        data = {**created.data, "id": created.id}
        try:
            await self.datastore.upsert_event(
                token,
                host.email,
                created.start_time,
                created.end_time,
                data,
                created.timezone,
                host.host_id,
                CalendarWebhookStatus.NONE,
            )
        except BaseException:
            await self._discard_remote_event(state, host, created.id)
            raise

        state.summary.events_created += 1
        logger.info(
            "Calendar event created for failing host",
            extra={"host_id": host.host_id, "email": host.email, "event_id": created.id, "uuid": token},
        )

    async def _discard_remote_event(self, state: _Pass, host: HostComplianceRow, event_id: str) -> None:
        try:
            await state.provider.delete_event(host.email, event_id)
        except Exception as e:
            logger.warning(
                "Failed to delete calendar event after store failure: %s",
                e,
                extra={"host_id": host.host_id, "email": host.email, "event_id": event_id},
            )

    async def _reconcile_passing_host(self, state: _Pass, host: HostComplianceRow) -> None:
        existing = await self.datastore.get_event_by_email(host.email)
        if existing.is_not_found:
            return
        if not existing.is_ok:
            raise DatastoreError("get_event_by_email", existing.error_message or "lookup failed")

        host_event, event = existing.unwrap()
        if host_event is not None and host_event.host_id != host.host_id:
            return

        await _run_to_completion(self._delete_event(state, host, event))
        logger.info(
            "Calendar event deleted for passing host",
            extra={"host_id": host.host_id, "email": host.email, "calendar_event_id": event.id},
        )

    async def _delete_event(self, state: _Pass, host: HostComplianceRow, event: CalendarEvent) -> None:
        event_id = event.provider_event_id
        if event_id:
            await state.provider.delete_event(host.email, event_id)
        else:
            logger.warning(
                "Stored calendar event has no provider id, deleting the record only",
                extra={"host_id": host.host_id, "email": host.email, "calendar_event_id": event.id},
            )
        await self.datastore.delete_event(event.id)
        state.summary.events_deleted += 1


async def _run_to_completion(coro: Coroutine[Any, Any, None]) -> None:
    """Await ``coro`` without letting a cancelled caller interrupt it.

    Provider writes and the stored record must land together. When the
    caller is cancelled (the cycle deadline) the work is finished first and
    the cancellation is re-raised afterwards.
    """
    task = asyncio.ensure_future(coro)
    try:
        await asyncio.shield(task)
    except asyncio.CancelledError:
        await asyncio.wait({task})
        if not task.cancelled() and task.exception() is not None:
            logger.warning("Calendar write failed while the pass was being cancelled: %s", task.exception())
        raise
