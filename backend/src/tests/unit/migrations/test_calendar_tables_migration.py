"""
Tests for migration 001, which creates the fleet and calendar event tables.

The migration is idempotent: each table is created only when the inspector
reports it missing, and downgrade drops only what exists.
"""

import importlib
import sys
from pathlib import Path
from unittest.mock import MagicMock, patch

BACKEND_DIR = Path(__file__).resolve().parents[4]
if str(BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(BACKEND_DIR))

MODULE_NAME = "migrations.versions.001_calendar_tables"

ALL_TABLES = {
    "teams",
    "hosts",
    "host_emails",
    "policies",
    "policy_membership",
    "app_config",
    "calendar_events",
    "host_calendar_events",
}


def _fresh_import():
    sys.modules.pop(MODULE_NAME, None)
    return importlib.import_module(MODULE_NAME)


def _run(migration, fn_name: str, existing: set[str]) -> MagicMock:
    inspector = MagicMock()
    inspector.get_table_names.return_value = sorted(existing)
    op = MagicMock()
    with (
        patch.object(migration, "op", op),
        patch.object(migration.sa, "inspect", return_value=inspector),
        patch("migrations.helpers.op", op),
    ):
        getattr(migration, fn_name)()
    return op


def _created_tables(op: MagicMock) -> set[str]:
    return {c.args[0] for c in op.create_table.call_args_list}


class TestUpgrade:
    def test_creates_every_table_on_empty_database(self):
        migration = _fresh_import()

        op = _run(migration, "upgrade", existing=set())

        assert _created_tables(op) == ALL_TABLES

    def test_rerun_is_a_noop(self):
        migration = _fresh_import()

        op = _run(migration, "upgrade", existing=ALL_TABLES)

        op.create_table.assert_not_called()
        op.create_index.assert_not_called()

    def test_creates_only_missing_tables(self):
        migration = _fresh_import()

        op = _run(migration, "upgrade", existing=ALL_TABLES - {"calendar_events", "host_calendar_events"})

        assert _created_tables(op) == {"calendar_events", "host_calendar_events"}

    def test_calendar_events_unique_per_email(self):
        migration = _fresh_import()

        op = _run(migration, "upgrade", existing=set())

        call = next(c for c in op.create_table.call_args_list if c.args[0] == "calendar_events")
        columns = {col.name: col for col in call.args[1:] if hasattr(col, "unique")}
        assert columns["email"].unique
        assert columns["uuid"].unique


class TestDowngrade:
    def test_drops_dependents_first(self):
        migration = _fresh_import()

        op = _run(migration, "downgrade", existing=ALL_TABLES)

        dropped = [c.args[0] for c in op.drop_table.call_args_list]
        assert set(dropped) == ALL_TABLES
        assert dropped.index("host_calendar_events") < dropped.index("calendar_events")
        assert dropped.index("hosts") < dropped.index("teams")

    def test_skips_missing_tables(self):
        migration = _fresh_import()

        op = _run(migration, "downgrade", existing={"teams"})

        assert [c.args[0] for c in op.drop_table.call_args_list] == ["teams"]
