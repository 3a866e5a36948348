"""Tests for the log formatters and logger namespacing."""

import json
import logging
import sys

from mobius.core.logging import ColoredFormatter, JSONFormatter, get_logger


def _record(msg: str = "Calendar cycle complete", **extra) -> logging.LogRecord:
    record = logging.LogRecord(
        name="mobius.services.calendar_reconciler",
        level=logging.INFO,
        pathname=__file__,
        lineno=10,
        msg=msg,
        args=(),
        exc_info=None,
    )
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestJSONFormatter:
    def test_includes_standard_and_extra_fields(self):
        payload = json.loads(JSONFormatter().format(_record(team_id=7, email="alice@example.com")))

        assert payload["level"] == "INFO"
        assert payload["logger"] == "mobius.services.calendar_reconciler"
        assert payload["message"] == "Calendar cycle complete"
        assert payload["team_id"] == 7
        assert payload["email"] == "alice@example.com"
        assert "msg" not in payload
        assert "exception" not in payload

    def test_exception_details(self):
        try:
            raise RuntimeError("provider unavailable")
        except RuntimeError:
            record = _record()
            record.exc_info = sys.exc_info()

        payload = json.loads(JSONFormatter().format(record))

        assert payload["exception"]["type"] == "RuntimeError"
        assert payload["exception"]["message"] == "provider unavailable"

    def test_non_serializable_extra_is_stringified(self):
        payload = json.loads(JSONFormatter().format(_record(policy_ids={1, 2})))

        assert payload["policy_ids"] == "{1, 2}"


class TestColoredFormatter:
    def test_appends_short_scalar_extras(self):
        line = ColoredFormatter(use_colors=False).format(_record(team_id=7, summary={"teams": 1}))

        assert "Calendar cycle complete | team_id=7" in line
        assert "summary=" not in line


class TestGetLogger:
    def test_namespaces_under_mobius(self):
        assert get_logger("calendar").name == "mobius.calendar"

    def test_keeps_existing_namespace(self):
        assert get_logger("mobius.services.calendar_scheduler").name == "mobius.services.calendar_scheduler"
        assert get_logger("mobius").name == "mobius"
