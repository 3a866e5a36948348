"""Database models for Mobius."""

from .base import Base, TimestampMixin
from .calendar_event import CalendarEventRecord, HostCalendarEventRecord
from .fleet import AppConfigRow, Host, HostEmail, Policy, PolicyMembership, Team

__all__ = [
    "AppConfigRow",
    "Base",
    "CalendarEventRecord",
    "Host",
    "HostCalendarEventRecord",
    "HostEmail",
    "Policy",
    "PolicyMembership",
    "Team",
    "TimestampMixin",
]
