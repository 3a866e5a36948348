"""Fleet inventory models read by the calendar reconciliation cron.

Only the columns the cron needs are mapped: teams with their integration
config, hosts with their device-mapped emails, policies and per-host policy
results. The app-wide configuration lives in a single JSON row.
"""

from sqlalchemy import Boolean, Column, ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.ext.mutable import MutableDict
from sqlalchemy.types import JSON

from .base import Base, TimestampMixin


class Team(TimestampMixin, Base):
    """A team; ``config`` holds integration settings as JSON."""

    __tablename__ = "teams"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(255), nullable=False, unique=True)
    config = Column(MutableDict.as_mutable(JSON), nullable=False, default=dict)

    def __repr__(self) -> str:
        return f"<Team(id={self.id}, name='{self.name}')>"


class Host(TimestampMixin, Base):
    __tablename__ = "hosts"

    id = Column(Integer, primary_key=True, autoincrement=True)
    team_id = Column(Integer, ForeignKey("teams.id", ondelete="SET NULL"), nullable=True, index=True)
    hostname = Column(String(255), nullable=False, default="")
    computer_name = Column(String(255), nullable=False, default="")
    hardware_serial = Column(String(255), nullable=False, default="")

    @property
    def display_name(self) -> str:
        """Computer name when set, otherwise the hostname."""
        return self.computer_name or self.hostname

    def __repr__(self) -> str:
        return f"<Host(id={self.id}, hostname='{self.hostname}')>"


class HostEmail(TimestampMixin, Base):
    """An email associated with a host (from IdP, MDM enrollment or a custom source)."""

    __tablename__ = "host_emails"

    id = Column(Integer, primary_key=True, autoincrement=True)
    host_id = Column(Integer, ForeignKey("hosts.id", ondelete="CASCADE"), nullable=False, index=True)
    email = Column(String(255), nullable=False, index=True)
    source = Column(String(64), nullable=False, default="custom")

    __table_args__ = (UniqueConstraint("host_id", "email", name="uq_host_emails_host_email"),)


class Policy(TimestampMixin, Base):
    __tablename__ = "policies"

    id = Column(Integer, primary_key=True, autoincrement=True)
    team_id = Column(Integer, ForeignKey("teams.id", ondelete="CASCADE"), nullable=True, index=True)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=False, default="")
    resolution = Column(Text, nullable=True)
    calendar_events_enabled = Column(Boolean, nullable=False, default=False)

    def __repr__(self) -> str:
        return f"<Policy(id={self.id}, name='{self.name}')>"


class PolicyMembership(Base):
    """Latest result of a policy on a host."""

    __tablename__ = "policy_membership"

    policy_id = Column(Integer, ForeignKey("policies.id", ondelete="CASCADE"), primary_key=True)
    host_id = Column(Integer, ForeignKey("hosts.id", ondelete="CASCADE"), primary_key=True, index=True)
    passes = Column(Boolean, nullable=True)


class AppConfigRow(TimestampMixin, Base):
    """Single-row table holding the app-wide configuration as JSON."""

    __tablename__ = "app_config"

    id = Column(Integer, primary_key=True, default=1)
    json_value = Column(MutableDict.as_mutable(JSON), nullable=False, default=dict)
