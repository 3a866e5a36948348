"""
Calendar reconciliation schemas for Mobius.

This module defines the Pydantic schemas exchanged between the reconciliation
cron and its collaborators:
- AppConfig / Team: which integrations are configured and enabled
- CalendarPolicy / PolicyDetail: calendar-relevant policies and their texts
- HostComplianceRow: one host's pass/fail state against those policies
- CalendarEvent / HostCalendarEvent: stored events and their host binding
- CycleSummary: counters reported by one reconciliation cycle
"""

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

# Key in GoogleCalendarIntegration.api_key holding the service account email
GOOGLE_CALENDAR_EMAIL_KEY = "client_email"


# ============================================================================
# Enums
# ============================================================================


class CalendarWebhookStatus(str, Enum):
    """Delivery state of the webhook tied to a host calendar event."""

    NONE = "none"
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"


# ============================================================================
# App / team configuration
# ============================================================================


class GoogleCalendarIntegration(BaseModel):
    """Global Google Calendar credentials and the email domain they serve."""

    domain: str = ""
    api_key: dict[str, str] = Field(default_factory=dict)

    @property
    def service_account_email(self) -> str:
        return self.api_key.get(GOOGLE_CALENDAR_EMAIL_KEY, "")


class Integrations(BaseModel):
    google_calendar: list[GoogleCalendarIntegration] = Field(default_factory=list)


class OrgInfo(BaseModel):
    org_name: str = ""


class AppConfig(BaseModel):
    """App-wide configuration subset used by the calendar cron."""

    org_info: OrgInfo = Field(default_factory=OrgInfo)
    integrations: Integrations = Field(default_factory=Integrations)

    @property
    def google_calendar(self) -> GoogleCalendarIntegration | None:
        """The first configured Google Calendar integration, if any."""
        if not self.integrations.google_calendar:
            return None
        return self.integrations.google_calendar[0]


class TeamGoogleCalendarIntegration(BaseModel):
    enable: bool = False
    webhook_url: str = ""


class TeamIntegrations(BaseModel):
    google_calendar: TeamGoogleCalendarIntegration | None = None


class TeamConfig(BaseModel):
    integrations: TeamIntegrations = Field(default_factory=TeamIntegrations)


class Team(BaseModel):
    id: int
    name: str = ""
    config: TeamConfig = Field(default_factory=TeamConfig)

    @property
    def calendar_enabled(self) -> bool:
        integration = self.config.integrations.google_calendar
        return integration is not None and integration.enable


# ============================================================================
# Policies and compliance
# ============================================================================


class CalendarPolicy(BaseModel):
    """A policy whose failure triggers a remediation meeting."""

    id: int
    name: str = ""


class PolicyDetail(BaseModel):
    id: int
    description: str = ""
    resolution: str | None = None


class HostComplianceRow(BaseModel):
    """A host's aggregate pass/fail state against a team's calendar policies.

    ``email`` is empty when none of the host's emails belong to the
    configured domain; such hosts are never scheduled.
    """

    host_id: int
    host_display_name: str = ""
    host_hardware_serial: str = ""
    email: str = ""
    passing: bool = True
    failing_policy_ids: str = ""

    def failing_policy_id_list(self) -> list[int]:
        """Parse the comma-joined failing policy ids, ignoring blanks and junk."""
        ids: list[int] = []
        for part in self.failing_policy_ids.split(","):
            part = part.strip()  # noqa: PLW2901
            if part.isdigit():
                ids.append(int(part))
        return ids


# ============================================================================
# Calendar events
# ============================================================================


class CalendarEvent(BaseModel):
    """A stored calendar event; at most one exists per email."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    uuid: str = ""
    email: str
    start_time: datetime
    end_time: datetime
    data: dict[str, Any] = Field(default_factory=dict)
    timezone: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def provider_event_id(self) -> str | None:
        """Provider-assigned event id embedded in the detail blob."""
        value = self.data.get("id")
        return str(value) if value else None


class HostCalendarEvent(BaseModel):
    """Binds exactly one host to one calendar event."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    host_id: int
    calendar_event_id: int
    webhook_status: CalendarWebhookStatus = CalendarWebhookStatus.NONE


class ProviderEvent(BaseModel):
    """What the calendar provider returns after creating an event."""

    id: str
    start_time: datetime
    end_time: datetime
    timezone: str | None = None
    data: dict[str, Any] = Field(default_factory=dict)


# ============================================================================
# Cycle reporting
# ============================================================================


class CycleSkipReason(str, Enum):
    LOCK_HELD = "lock_held"
    NOT_CONFIGURED = "not_configured"


class CycleSummary(BaseModel):
    """Counters describing one reconciliation cycle."""

    teams_processed: int = 0
    teams_failed: int = 0
    events_created: int = 0
    events_deleted: int = 0
    hosts_failed: int = 0
    hosts_skipped: int = 0
    skipped_reason: CycleSkipReason | None = None
    timed_out: bool = False
