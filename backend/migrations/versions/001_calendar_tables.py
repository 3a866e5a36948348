"""Migration 001: Fleet inventory and calendar event tables.

Creates the tables read by the calendar reconciliation cron (teams, hosts,
host emails, policies, policy membership, app config) and the two tables it
writes (calendar_events, host_calendar_events).
"""

import sqlalchemy as sa
from alembic import op

from migrations.helpers import drop_table_if_exists, table_exists

# revision identifiers, used by Alembic.
revision = "001"
down_revision = None
branch_labels = None
depends_on = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    ]


def upgrade() -> None:
    inspector = sa.inspect(op.get_bind())

    if not table_exists(inspector, "teams"):
        op.create_table(
            "teams",
            sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
            sa.Column("name", sa.String(255), nullable=False, unique=True),
            sa.Column("config", sa.JSON, nullable=False),
            *_timestamps(),
        )

    if not table_exists(inspector, "hosts"):
        op.create_table(
            "hosts",
            sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
            sa.Column("team_id", sa.Integer, sa.ForeignKey("teams.id", ondelete="SET NULL"), nullable=True),
            sa.Column("hostname", sa.String(255), nullable=False, server_default=""),
            sa.Column("computer_name", sa.String(255), nullable=False, server_default=""),
            sa.Column("hardware_serial", sa.String(255), nullable=False, server_default=""),
            *_timestamps(),
        )
        op.create_index("ix_hosts_team_id", "hosts", ["team_id"])

    if not table_exists(inspector, "host_emails"):
        op.create_table(
            "host_emails",
            sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
            sa.Column("host_id", sa.Integer, sa.ForeignKey("hosts.id", ondelete="CASCADE"), nullable=False),
            sa.Column("email", sa.String(255), nullable=False),
            sa.Column("source", sa.String(64), nullable=False, server_default="custom"),
            *_timestamps(),
            sa.UniqueConstraint("host_id", "email", name="uq_host_emails_host_email"),
        )
        op.create_index("ix_host_emails_host_id", "host_emails", ["host_id"])
        op.create_index("ix_host_emails_email", "host_emails", ["email"])

    if not table_exists(inspector, "policies"):
        op.create_table(
            "policies",
            sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
            sa.Column("team_id", sa.Integer, sa.ForeignKey("teams.id", ondelete="CASCADE"), nullable=True),
            sa.Column("name", sa.String(255), nullable=False),
            sa.Column("description", sa.Text, nullable=False, server_default=""),
            sa.Column("resolution", sa.Text, nullable=True),
            sa.Column("calendar_events_enabled", sa.Boolean, nullable=False, server_default=sa.false()),
            *_timestamps(),
        )
        op.create_index("ix_policies_team_id", "policies", ["team_id"])

    if not table_exists(inspector, "policy_membership"):
        op.create_table(
            "policy_membership",
            sa.Column(
                "policy_id", sa.Integer, sa.ForeignKey("policies.id", ondelete="CASCADE"), primary_key=True
            ),
            sa.Column("host_id", sa.Integer, sa.ForeignKey("hosts.id", ondelete="CASCADE"), primary_key=True),
            sa.Column("passes", sa.Boolean, nullable=True),
        )
        op.create_index("ix_policy_membership_host_id", "policy_membership", ["host_id"])

    if not table_exists(inspector, "app_config"):
        op.create_table(
            "app_config",
            sa.Column("id", sa.Integer, primary_key=True),
            sa.Column("json_value", sa.JSON, nullable=False),
            *_timestamps(),
        )

    if not table_exists(inspector, "calendar_events"):
        op.create_table(
            "calendar_events",
            sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
            sa.Column("uuid", sa.String(36), nullable=False, unique=True),
            sa.Column("email", sa.String(255), nullable=False, unique=True),
            sa.Column("start_time", sa.DateTime(timezone=True), nullable=False),
            sa.Column("end_time", sa.DateTime(timezone=True), nullable=False),
            sa.Column("event", sa.JSON, nullable=False),
            sa.Column("timezone", sa.String(64), nullable=True),
            *_timestamps(),
        )

    if not table_exists(inspector, "host_calendar_events"):
        op.create_table(
            "host_calendar_events",
            sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
            sa.Column("host_id", sa.Integer, nullable=False, unique=True),
            sa.Column(
                "calendar_event_id",
                sa.Integer,
                sa.ForeignKey("calendar_events.id", ondelete="CASCADE"),
                nullable=False,
            ),
            sa.Column("webhook_status", sa.String(16), nullable=False, server_default="none"),
            *_timestamps(),
        )
        op.create_index(
            "ix_host_calendar_events_calendar_event_id", "host_calendar_events", ["calendar_event_id"]
        )


def downgrade() -> None:
    inspector = sa.inspect(op.get_bind())
    for table in (
        "host_calendar_events",
        "calendar_events",
        "app_config",
        "policy_membership",
        "policies",
        "host_emails",
        "hosts",
        "teams",
    ):
        drop_table_if_exists(inspector, table)
