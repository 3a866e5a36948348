"""Datastore access for the calendar reconciliation cron.

``CalendarDatastore`` is the contract the reconciler depends on. Lookups that
can legitimately miss return a ``Result`` with ``ErrorKind.NOT_FOUND``; every
other failure raises ``DatastoreError``.

``SQLAlchemyCalendarDatastore`` implements it on top of the models in
``mobius.models`` using one short-lived session per call.
"""

from __future__ import annotations

from collections import defaultdict
from collections.abc import Sequence
from datetime import datetime
from typing import Any, Protocol

from sqlalchemy import and_, delete, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..core.exceptions import DatastoreError
from ..core.logging import get_logger
from ..core.result import Result
from ..models import (
    AppConfigRow,
    CalendarEventRecord,
    Host,
    HostCalendarEventRecord,
    HostEmail,
    Policy,
    PolicyMembership,
)
from ..models import Team as TeamRecord
from ..schemas.calendar import (
    AppConfig,
    CalendarEvent,
    CalendarPolicy,
    CalendarWebhookStatus,
    HostCalendarEvent,
    HostComplianceRow,
    PolicyDetail,
    Team,
)

logger = get_logger(__name__)

APP_CONFIG_ROW_ID = 1


class CalendarDatastore(Protocol):
    """Everything the reconciliation cron reads from or writes to storage."""

    async def get_app_config(self) -> AppConfig:
        """Return the app-wide configuration."""
        ...

    async def list_calendar_enabled_teams(self) -> list[Team]:
        """Return teams whose Google Calendar integration is enabled."""
        ...

    async def get_calendar_policies(self, team_id: int) -> list[CalendarPolicy]:
        """Return the team's calendar-relevant policies, ordered by id."""
        ...

    async def get_policy_detail(self, policy_id: int) -> Result[PolicyDetail]:
        """Return the policy's description/resolution, or NOT_FOUND."""
        ...

    async def get_team_host_compliance(
        self, domain: str, team_id: int, policy_ids: Sequence[int]
    ) -> list[HostComplianceRow]:
        """Return one row per team host with its pass/fail state against ``policy_ids``.

        ``email`` is set only when the host has an email in ``domain``.
        """
        ...

    async def get_event_by_email(self, email: str) -> Result[tuple[HostCalendarEvent | None, CalendarEvent]]:
        """Return the event stored for ``email`` and its host binding, or NOT_FOUND.

        The binding is None for an event no host is bound to any more.
        """
        ...

    async def upsert_event(
        self,
        uuid: str,
        email: str,
        start_time: datetime,
        end_time: datetime,
        data: dict[str, Any],
        timezone: str | None,
        host_id: int,
        webhook_status: CalendarWebhookStatus,
    ) -> CalendarEvent:
        """Create or update the event for ``email`` and bind it to ``host_id`` atomically."""
        ...

    async def delete_event(self, calendar_event_id: int) -> None:
        """Delete the calendar event and its host binding."""
        ...


def _escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


class SQLAlchemyCalendarDatastore:
    """``CalendarDatastore`` backed by the relational database."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def get_app_config(self) -> AppConfig:
        try:
            async with self._session_factory() as session:
                row = await session.get(AppConfigRow, APP_CONFIG_ROW_ID)
        except SQLAlchemyError as e:
            raise DatastoreError("get_app_config", str(e)) from e
        if row is None:
            return AppConfig()
        return AppConfig.model_validate(row.json_value or {})

    async def list_calendar_enabled_teams(self) -> list[Team]:
        try:
            async with self._session_factory() as session:
                result = await session.execute(select(TeamRecord).order_by(TeamRecord.id))
                records = list(result.scalars().all())
        except SQLAlchemyError as e:
            raise DatastoreError("list_calendar_enabled_teams", str(e)) from e

        teams = []
        for record in records:
            team = Team.model_validate({"id": record.id, "name": record.name, "config": record.config or {}})
            if team.calendar_enabled:
                teams.append(team)
        return teams

    async def get_calendar_policies(self, team_id: int) -> list[CalendarPolicy]:
        stmt = (
            select(Policy.id, Policy.name)
            .where(and_(Policy.team_id == team_id, Policy.calendar_events_enabled.is_(True)))
            .order_by(Policy.id)
        )
        try:
            async with self._session_factory() as session:
                result = await session.execute(stmt)
                rows = result.all()
        except SQLAlchemyError as e:
            raise DatastoreError("get_calendar_policies", str(e), details={"team_id": team_id}) from e
        return [CalendarPolicy(id=row.id, name=row.name) for row in rows]

    async def get_policy_detail(self, policy_id: int) -> Result[PolicyDetail]:
        try:
            async with self._session_factory() as session:
                policy = await session.get(Policy, policy_id)
        except SQLAlchemyError as e:
            raise DatastoreError("get_policy_detail", str(e), details={"policy_id": policy_id}) from e
        if policy is None:
            return Result.not_found(f"policy {policy_id} not found")
        return Result.ok(
            PolicyDetail(id=policy.id, description=policy.description or "", resolution=policy.resolution)
        )

    async def get_team_host_compliance(
        self, domain: str, team_id: int, policy_ids: Sequence[int]
    ) -> list[HostComplianceRow]:
        team_hosts = select(Host.id).where(Host.team_id == team_id).scalar_subquery()
        hosts_stmt = select(Host).where(Host.team_id == team_id).order_by(Host.id)
        failing_stmt = select(PolicyMembership.host_id, PolicyMembership.policy_id).where(
            and_(
                PolicyMembership.host_id.in_(team_hosts),
                PolicyMembership.policy_id.in_(list(policy_ids)),
                PolicyMembership.passes.is_(False),
            )
        )
        domain = (domain or "").strip().lower()

        try:
            async with self._session_factory() as session:
                hosts = list((await session.execute(hosts_stmt)).scalars().all())
                failing_rows = (await session.execute(failing_stmt)).all() if policy_ids else []
                email_rows = []
                if domain:
                    email_stmt = (
                        select(HostEmail.host_id, func.min(HostEmail.email).label("email"))
                        .where(
                            and_(
                                HostEmail.host_id.in_(team_hosts),
                                func.lower(HostEmail.email).like(f"%@{_escape_like(domain)}", escape="\\"),
                            )
                        )
                        .group_by(HostEmail.host_id)
                    )
                    email_rows = (await session.execute(email_stmt)).all()
        except SQLAlchemyError as e:
            raise DatastoreError("get_team_host_compliance", str(e), details={"team_id": team_id}) from e

        failing: dict[int, set[int]] = defaultdict(set)
        for row in failing_rows:
            failing[row.host_id].add(row.policy_id)
        emails = {row.host_id: row.email for row in email_rows}

        compliance = []
        for host in hosts:
            # Keep the caller's policy order in the comma-joined list
            failing_ids = [pid for pid in policy_ids if pid in failing.get(host.id, ())]
            compliance.append(
                HostComplianceRow(
                    host_id=host.id,
                    host_display_name=host.display_name,
                    host_hardware_serial=host.hardware_serial or "",
                    email=emails.get(host.id, ""),
                    passing=not failing_ids,
                    failing_policy_ids=",".join(str(pid) for pid in failing_ids),
                )
            )
        return compliance

    async def get_event_by_email(self, email: str) -> Result[tuple[HostCalendarEvent | None, CalendarEvent]]:
        stmt = (
            select(CalendarEventRecord, HostCalendarEventRecord)
            .outerjoin(HostCalendarEventRecord, HostCalendarEventRecord.calendar_event_id == CalendarEventRecord.id)
            .where(CalendarEventRecord.email == email)
            .limit(1)
        )
        try:
            async with self._session_factory() as session:
                row = (await session.execute(stmt)).first()
        except SQLAlchemyError as e:
            raise DatastoreError("get_event_by_email", str(e), details={"email": email}) from e
        if row is None:
            return Result.not_found(f"no calendar event for {email}")
        event_record, host_record = row
        host_event = _host_event_from_record(host_record) if host_record is not None else None
        return Result.ok((host_event, _event_from_record(event_record)))

    async def upsert_event(
        self,
        uuid: str,
        email: str,
        start_time: datetime,
        end_time: datetime,
        data: dict[str, Any],
        timezone: str | None,
        host_id: int,
        webhook_status: CalendarWebhookStatus,
    ) -> CalendarEvent:
        try:
            async with self._session_factory() as session, session.begin():
                event = await self._find_event_for_upsert(session, uuid, email)
                if event is None:
                    event = CalendarEventRecord(uuid=uuid, email=email)
                    session.add(event)
                event.uuid = uuid
                event.email = email
                event.start_time = start_time
                event.end_time = end_time
                event.event = dict(data)
                event.timezone = timezone
                await session.flush()

                # An event belongs to exactly one host
                await session.execute(
                    delete(HostCalendarEventRecord).where(
                        and_(
                            HostCalendarEventRecord.calendar_event_id == event.id,
                            HostCalendarEventRecord.host_id != host_id,
                        )
                    )
                )
                binding = (
                    await session.execute(
                        select(HostCalendarEventRecord).where(HostCalendarEventRecord.host_id == host_id)
                    )
                ).scalar_one_or_none()
                if binding is None:
                    binding = HostCalendarEventRecord(host_id=host_id)
                    session.add(binding)
                binding.calendar_event_id = event.id
                binding.webhook_status = webhook_status.value
                await session.flush()
                stored = _event_from_record(event)
        except SQLAlchemyError as e:
            raise DatastoreError("upsert_event", str(e), details={"email": email, "host_id": host_id}) from e

        logger.debug(
            "Calendar event stored",
            extra={"calendar_event_id": stored.id, "host_id": host_id, "uuid": uuid},
        )
        return stored

    async def _find_event_for_upsert(
        self, session: AsyncSession, uuid: str, email: str
    ) -> CalendarEventRecord | None:
        # A retried create carries the same token; otherwise one event per email
        for clause in (CalendarEventRecord.uuid == uuid, CalendarEventRecord.email == email):
            result = await session.execute(select(CalendarEventRecord).where(clause).with_for_update())
            record = result.scalar_one_or_none()
            if record is not None:
                return record
        return None

    async def delete_event(self, calendar_event_id: int) -> None:
        try:
            async with self._session_factory() as session, session.begin():
                await session.execute(
                    delete(HostCalendarEventRecord).where(
                        HostCalendarEventRecord.calendar_event_id == calendar_event_id
                    )
                )
                await session.execute(delete(CalendarEventRecord).where(CalendarEventRecord.id == calendar_event_id))
        except SQLAlchemyError as e:
            raise DatastoreError(
                "delete_event", str(e), details={"calendar_event_id": calendar_event_id}
            ) from e


def _event_from_record(record: CalendarEventRecord) -> CalendarEvent:
    return CalendarEvent(
        id=record.id,
        uuid=record.uuid,
        email=record.email,
        start_time=record.start_time,
        end_time=record.end_time,
        data=dict(record.event or {}),
        timezone=record.timezone,
        created_at=record.created_at,
        updated_at=record.updated_at,
    )


def _host_event_from_record(record: HostCalendarEventRecord) -> HostCalendarEvent:
    return HostCalendarEvent(
        id=record.id,
        host_id=record.host_id,
        calendar_event_id=record.calendar_event_id,
        webhook_status=CalendarWebhookStatus(record.webhook_status),
    )
