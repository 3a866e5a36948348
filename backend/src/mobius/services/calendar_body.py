"""Event body generation for remediation meetings.

What the calendar provider calls the event "description" is the body built
here: a header naming the organization and the host, then the description
and resolution of every failing calendar policy.
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import TYPE_CHECKING

from ..core.logging import get_logger
from ..schemas.calendar import PolicyDetail

if TYPE_CHECKING:
    from .calendar_datastore import CalendarDatastore

logger = get_logger(__name__)

CALENDAR_BODY_STATIC_HEADER = "reserved this time to make some changes to your work computer"
CALENDAR_DEFAULT_DESCRIPTION = "needs to make sure your device meets the organization's requirements."
CALENDAR_DEFAULT_RESOLUTION = (
    "During this maintenance window, you can expect updates to be applied automatically. "
    "Your device may be unavailable during this time."
)
CALENDAR_BODY_POWER_NOTE = "Please leave your device on and connected to power."


def _policy_texts(detail: PolicyDetail | None, org_name: str) -> tuple[str, str]:
    """Return (description, resolution) for one failing policy, applying defaults."""
    default_description = f"{org_name} {CALENDAR_DEFAULT_DESCRIPTION}".strip()
    if detail is None or not detail.description.strip():
        # Without a description the resolution has no context either
        return default_description, CALENDAR_DEFAULT_RESOLUTION
    resolution = (detail.resolution or "").strip()
    return detail.description.strip(), resolution or CALENDAR_DEFAULT_RESOLUTION


def generate_event_body(
    org_name: str,
    host_display_name: str,
    policies: Sequence[PolicyDetail | None],
) -> str:
    """Build the event body for a host failing ``policies``.

    ``policies`` keeps the order of the host's failing policy ids; a ``None``
    entry stands for a policy whose detail could not be looked up. Such
    entries, and entries with a blank description or resolution, get the
    default texts instead of being dropped.
    """
    header = f"{org_name} {CALENDAR_BODY_STATIC_HEADER} ({host_display_name}).".strip()
    sections = [header, CALENDAR_BODY_POWER_NOTE]

    if not policies:
        policies = [None]

    for detail in policies:
        description, resolution = _policy_texts(detail, org_name)
        sections.append(f"Why it matters\n{description}\n\nWhat we'll do\n{resolution}")

    return "\n\n".join(sections)


async def resolve_policy_details(
    datastore: CalendarDatastore,
    policy_ids: Sequence[int],
) -> list[PolicyDetail | None]:
    """Look up the detail of each failing policy.

    Never raises: a missing policy (deleted since the compliance query ran)
    or a failed lookup yields ``None`` so the body falls back to defaults.
    """
    details: list[PolicyDetail | None] = []
    for policy_id in policy_ids:
        try:
            result = await datastore.get_policy_detail(policy_id)
        except Exception as e:
            logger.warning(
                "Policy detail lookup failed, using default text",
                extra={"policy_id": policy_id, "error": str(e)},
            )
            details.append(None)
            continue

        if result.is_ok:
            details.append(result.unwrap())
        else:
            logger.debug(
                "Policy detail unavailable, using default text",
                extra={"policy_id": policy_id, "error_kind": result.error_kind.value if result.error_kind else None},
            )
            details.append(None)
    return details
