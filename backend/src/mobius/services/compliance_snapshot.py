"""Per-team compliance snapshot for calendar reconciliation."""

from __future__ import annotations

from dataclasses import dataclass, field

from ..core.exceptions import ComplianceSnapshotError
from ..core.logging import get_logger
from ..schemas.calendar import CalendarPolicy, HostComplianceRow, Team
from .calendar_datastore import CalendarDatastore

logger = get_logger(__name__)


@dataclass
class ComplianceSnapshot:
    """A team's calendar policies and every host's state against them."""

    team: Team
    policies: list[CalendarPolicy] = field(default_factory=list)
    hosts: list[HostComplianceRow] = field(default_factory=list)

    @property
    def policy_ids(self) -> list[int]:
        return [policy.id for policy in self.policies]

    @property
    def failing_hosts(self) -> list[HostComplianceRow]:
        """Failing hosts that can be scheduled (they have an in-domain email)."""
        return [host for host in self.hosts if not host.passing and host.email]

    @property
    def passing_hosts(self) -> list[HostComplianceRow]:
        """Passing hosts with an email, one per (email, host) pair."""
        seen: set[tuple[str, int]] = set()
        hosts = []
        for host in self.hosts:
            key = (host.email, host.host_id)
            if host.passing and host.email and key not in seen:
                seen.add(key)
                hosts.append(host)
        return hosts

    @property
    def hosts_without_email(self) -> list[HostComplianceRow]:
        """Failing hosts that cannot be scheduled for lack of an in-domain email."""
        return [host for host in self.hosts if not host.passing and not host.email]


async def load_snapshot(datastore: CalendarDatastore, team: Team, domain: str) -> ComplianceSnapshot:
    """Load ``team``'s calendar policies and host compliance.

    A team without calendar policies yields a snapshot with no hosts.

    Raises:
        ComplianceSnapshotError: If either query fails.
    """
    try:
        policies = await datastore.get_calendar_policies(team.id)
    except Exception as e:
        raise ComplianceSnapshotError(team.id, "calendar policies", str(e)) from e

    if not policies:
        logger.debug("No calendar policies for team", extra={"team_id": team.id})
        return ComplianceSnapshot(team=team)

    snapshot = ComplianceSnapshot(team=team, policies=list(policies))
    try:
        snapshot.hosts = list(await datastore.get_team_host_compliance(domain, team.id, snapshot.policy_ids))
    except Exception as e:
        raise ComplianceSnapshotError(team.id, "host compliance", str(e)) from e
    return snapshot
