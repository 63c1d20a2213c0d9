"""
JSON encoding of UsageSnapshot for the `gemini_key_models.usage` column.

Wire shape (matches existing rows, which use millisecond timestamps):

    {
      "rpm": {"used": 3, "limit": 15, "windowStart": "2026-10-19T08:00:00.000Z"},
      "rph": {...}, "rpd": {...}, "tpm": {...}
    }

Decoding rules:
  • Empty / NULL blob          → all windows at model defaults.
  • Missing window             → that window at the model default.
  • Missing or non-positive limit, or "limit": null → model default limit.
  • Unknown keys (used, lastUpdated, exhaustedAt, …) → ignored.
  • Anything else that doesn't fit → MalformedUsageRecord.

`load_usage` is the lenient entrypoint used on the request path: a
malformed blob is logged and replaced with a zeroed snapshot rather than
failing the request.
"""

from __future__ import annotations

import datetime
import json
import logging
from typing import Any

from keyrotation.services.errors import MalformedUsageRecord
from keyrotation.services.model_defaults import default_snapshot, default_window
from keyrotation.services.usage_windows import WINDOW_DURATIONS, UsageSnapshot, Window

logger = logging.getLogger(__name__)


# ── Timestamps ──────────────────────────────────────────────
def format_timestamp(value: datetime.datetime) -> str:
    """UTC ISO-8601 with a `Z` suffix. Naive datetimes are taken as UTC."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=datetime.timezone.utc)
    value = value.astimezone(datetime.timezone.utc)
    return value.isoformat().replace("+00:00", "Z")


def parse_timestamp(raw: str) -> datetime.datetime:
    """Parse an ISO-8601 timestamp (with or without `Z`) as an aware UTC datetime."""
    text = raw.strip()
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    parsed = datetime.datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=datetime.timezone.utc)
    return parsed.astimezone(datetime.timezone.utc)


# ── Encoding ────────────────────────────────────────────────
def _window_to_dict(window: Window) -> dict[str, Any]:
    return {
        "used": window.used,
        "limit": window.limit,
        "windowStart": (
            format_timestamp(window.window_start)
            if window.window_start is not None
            else None
        ),
    }


def encode_usage(snapshot: UsageSnapshot) -> str:
    """Serialize a snapshot to the JSON text stored on the row."""
    return json.dumps(
        {name: _window_to_dict(snapshot.window(name)) for name in WINDOW_DURATIONS}
    )


# ── Decoding ────────────────────────────────────────────────
def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _decode_window(model_name: str, name: str, entry: Any) -> Window:
    if entry is None:
        return default_window(model_name, name)
    if not isinstance(entry, dict):
        raise MalformedUsageRecord(f"{name} window is not an object")

    used = entry.get("used", 0)
    if used is None:
        used = 0
    if not _is_int(used) or used < 0:
        raise MalformedUsageRecord(f"{name}.used must be a non-negative integer")

    limit = entry.get("limit")
    if limit is not None and not _is_int(limit):
        raise MalformedUsageRecord(f"{name}.limit must be an integer")
    if limit is None or limit <= 0:
        limit = default_window(model_name, name).limit

    raw_start = entry.get("windowStart")
    window_start: datetime.datetime | None = None
    if raw_start is not None:
        if not isinstance(raw_start, str):
            raise MalformedUsageRecord(f"{name}.windowStart must be a string")
        try:
            window_start = parse_timestamp(raw_start)
        except ValueError as exc:
            raise MalformedUsageRecord(f"{name}.windowStart is not ISO-8601") from exc

    return Window(used=used, limit=limit, window_start=window_start)


def decode_usage(raw: str | None, model_name: str) -> UsageSnapshot:
    """
    Strictly decode a usage blob.

    Raises:
        MalformedUsageRecord: If the blob is not valid JSON of the expected shape.
    """
    if raw is None or not raw.strip():
        return default_snapshot(model_name)

    try:
        data = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise MalformedUsageRecord(f"invalid JSON: {exc.msg}") from exc

    if not isinstance(data, dict):
        raise MalformedUsageRecord("usage blob is not a JSON object")

    return UsageSnapshot(
        **{
            name: _decode_window(model_name, name, data.get(name))
            for name in WINDOW_DURATIONS
        }
    )


def load_usage(raw: str | None, model_name: str) -> UsageSnapshot:
    """Decode leniently: a malformed blob resets every window to zero."""
    try:
        return decode_usage(raw, model_name)
    except MalformedUsageRecord as exc:
        logger.warning(
            "Malformed usage for model %s (%d chars), resetting windows: %s",
            model_name, len(raw or ""), exc,
        )
        return default_snapshot(model_name)
