"""Shared lifecycle event helper utilities."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any


def domain_utc_now() -> datetime:
    """Return the current timezone-aware UTC timestamp."""

    return datetime.now(timezone.utc)


def domain_build_lifecycle_event(
    service: str,
    event: str,
    details: dict[str, Any] | None = None,
) -> dict[str, object]:
    """Build one structured lifecycle event payload.

    Args:
        service: Service name, or `stack` for stack-wide events.
        event: Event marker such as `started` or `timed_out`.
        details: Optional structured details object.

    Returns:
        dict[str, object]: Structured lifecycle event.

    Raises:
        RuntimeError: This helper does not raise runtime errors.
    """

    event_payload: dict[str, object] = {
        "service": service,
        "event": event,
        "at_utc": domain_utc_now().isoformat(),
    }
    if details is not None:
        event_payload["details"] = details
    return event_payload
