"""SSE stream parser — turns raw text/event-stream lines into ChangeEvents."""

from __future__ import annotations

import json
import logging

from skillswap.contracts.json_types import JSONValue
from skillswap.services.change_feed import ChangeEvent, ChangeKind

logger = logging.getLogger(__name__)


def parse_sse_line(line: str) -> dict[str, JSONValue] | None:
    """Parse a single SSE data line into its JSON object.

    SSE format:
        data: {"type": "INSERT", "table": "messages", "record": {...}}

    Returns None for comments (heartbeats), empty lines, non-data lines, and
    data that is not a JSON object.
    """
    line = line.strip()
    if not line or line.startswith(":"):
        return None

    if not line.startswith("data:"):
        return None

    json_str = line[5:].lstrip()
    try:
        data = json.loads(json_str)
    except json.JSONDecodeError as e:
        logger.warning("Failed to parse SSE JSON: %s (line: %s)", e, json_str[:200])
        return None
    if not isinstance(data, dict):
        return None
    return data


def to_change_event(data: dict[str, JSONValue], default_resource: str) -> ChangeEvent | None:
    """Build a ChangeEvent from a change payload.

    Accepts both the webhook shape (``type`` / ``record`` / ``old_record``)
    and the realtime-client shape (``eventType`` / ``new`` / ``old``).
    Unknown event types are ignored.
    """
    raw_kind = data.get("type") or data.get("eventType")
    try:
        kind = ChangeKind(str(raw_kind).upper())
    except ValueError:
        logger.debug("Ignoring SSE payload with type %r", raw_kind)
        return None

    record = data.get("record", data.get("new")) or {}
    old_record = data.get("old_record", data.get("old"))
    resource = data.get("table") or default_resource
    if not isinstance(record, dict) or (old_record is not None and not isinstance(old_record, dict)):
        logger.warning("Malformed %s payload on %s", kind.value, resource)
        return None
    return ChangeEvent(
        kind=kind,
        resource=str(resource),
        record=record,
        old_record=old_record or None,
    )


def parse_change_line(line: str, default_resource: str) -> ChangeEvent | None:
    """Parse one SSE line straight into a ChangeEvent (None when not an event)."""
    data = parse_sse_line(line)
    if data is None:
        return None
    return to_change_event(data, default_resource)
