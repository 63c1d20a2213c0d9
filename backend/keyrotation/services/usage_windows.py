"""
Multi-window usage tracking for one (key, model) pair.

Pure logic — no I/O, no clock. Callers pass `now` explicitly.

Four independent windows, each a rolling counter anchored at the first
request after it expired:
  • rpm — requests per minute
  • rph — requests per hour
  • rpd — requests per day (sliding 24 h from window_start, not UTC midnight)
  • tpm — tokens per minute

Window lifecycle: fresh → accumulating → expired → fresh.
An expired (or never-started) window is reset on the next update instead of
accumulated, and always admits that first cost, even one larger than the
limit. Tracking is best-effort accounting, not a hard gate.
"""

from __future__ import annotations

import datetime
import logging
from dataclasses import dataclass, replace
from typing import NamedTuple

logger = logging.getLogger(__name__)

# ── Window durations ────────────────────────────────────────
WINDOW_DURATIONS: dict[str, datetime.timedelta] = {
    "rpm": datetime.timedelta(minutes=1),
    "rph": datetime.timedelta(hours=1),
    "rpd": datetime.timedelta(days=1),
    "tpm": datetime.timedelta(minutes=1),
}

REQUEST_WINDOWS = ("rpm", "rph", "rpd")
TOKEN_WINDOW = "tpm"


@dataclass(frozen=True, slots=True)
class Window:
    """One time-windowed counter."""

    used: int
    limit: int
    window_start: datetime.datetime | None = None


@dataclass(frozen=True, slots=True)
class UsageSnapshot:
    """Accounting state of one (key, model) pair."""

    rpm: Window
    rph: Window
    rpd: Window
    tpm: Window

    def window(self, name: str) -> Window:
        return getattr(self, name)


class AdvanceResult(NamedTuple):
    allowed: bool
    next_window: Window


def is_expired(
    window: Window,
    now: datetime.datetime,
    duration: datetime.timedelta,
) -> bool:
    """True if the window never started or its duration has fully elapsed."""
    if window.window_start is None:
        return True
    return now - window.window_start >= duration


def check_and_advance(
    window: Window,
    cost: int,
    now: datetime.datetime,
    duration: datetime.timedelta,
) -> AdvanceResult:
    """
    Decide admission of `cost` and compute the next window state.

    Expired window → reset to {used: cost, window_start: now}, always allowed.
    Active window  → allowed iff used + cost <= limit; on rejection the
                     window is returned unchanged (no partial commit).
    """
    if is_expired(window, now, duration):
        return AdvanceResult(True, Window(used=cost, limit=window.limit, window_start=now))

    candidate = window.used + cost
    if candidate <= window.limit:
        return AdvanceResult(True, replace(window, used=candidate))

    return AdvanceResult(False, window)


def update_usage(
    snapshot: UsageSnapshot,
    tokens_used: int,
    now: datetime.datetime,
) -> UsageSnapshot:
    """
    Account one completed model call against all four windows.

    rpm/rph/rpd each cost 1 request; tpm costs `tokens_used`. The call has
    already happened, so this never blocks. A window that would overflow
    is left as-is and logged.
    """
    costs = {name: 1 for name in REQUEST_WINDOWS}
    costs[TOKEN_WINDOW] = tokens_used

    updated: dict[str, Window] = {}
    for name, cost in costs.items():
        current = snapshot.window(name)
        result = check_and_advance(current, cost, now, WINDOW_DURATIONS[name])
        if not result.allowed:
            logger.warning(
                "Usage over %s limit not recorded (used=%d cost=%d limit=%d)",
                name, current.used, cost, current.limit,
            )
        updated[name] = result.next_window

    return UsageSnapshot(**updated)


def has_headroom(
    window: Window,
    now: datetime.datetime,
    duration: datetime.timedelta,
) -> bool:
    """An expired window always has headroom; an active one needs used < limit."""
    if is_expired(window, now, duration):
        return True
    return window.used < window.limit


def snapshot_has_headroom(snapshot: UsageSnapshot, now: datetime.datetime) -> bool:
    """True only if every window has headroom."""
    return all(
        has_headroom(snapshot.window(name), now, duration)
        for name, duration in WINDOW_DURATIONS.items()
    )


def remaining(window: Window, now: datetime.datetime, duration: datetime.timedelta) -> int:
    """Units left in the window right now (full limit if expired)."""
    if is_expired(window, now, duration):
        return window.limit
    return max(window.limit - window.used, 0)


def used_now(window: Window, now: datetime.datetime, duration: datetime.timedelta) -> int:
    """Units consumed in the current window (0 if it expired)."""
    if is_expired(window, now, duration):
        return 0
    return window.used


def exhaust_window(
    snapshot: UsageSnapshot,
    name: str,
    now: datetime.datetime,
    limit: int | None = None,
) -> UsageSnapshot:
    """
    Mark one window as fully used after the provider refused a call.

    `limit` is the provider-reported quota, if any; it replaces the stored
    limit. An active window keeps its start, an expired one restarts at `now`.
    """
    current = snapshot.window(name)
    new_limit = limit if limit is not None and limit > 0 else current.limit
    start = current.window_start
    if is_expired(current, now, WINDOW_DURATIONS[name]):
        start = now
    exhausted = Window(used=new_limit, limit=new_limit, window_start=start)
    return replace(snapshot, **{name: exhausted})
