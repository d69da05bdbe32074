"""Resolve a human-typed subagent id to exactly one run.

Tokens are tried against these rules, first match wins:

1. blank -> error
2. ``last`` -> newest run (active first)
3. digits -> 1-based index into :func:`numeric_order`, the same numbering
   ``list`` prints
4. contains ``:`` -> exact child session key
5. exact display label (case-insensitive)
6. display label prefix (case-insensitive)
7. run id prefix
8. unknown

Rules 5-7 fall through on zero matches and fail on more than one.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass

from subagent_control.exceptions import ResolutionError
from subagent_control.formatting import format_run_label, sort_runs
from subagent_control.models import RunRecord, now_ms

RECENT_WINDOW_MINUTES = 30


@dataclass
class TargetResolution:
    """Matched run or the reason there is none."""

    entry: RunRecord | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.entry is not None

    def unwrap(self) -> RunRecord:
        if self.entry is None:
            raise ResolutionError(self.error or "Unknown subagent.")
        return self.entry


def recent_cutoff_ms(now: int, window_minutes: int = RECENT_WINDOW_MINUTES) -> int:
    return now - window_minutes * 60_000


def partition_runs(
    runs: list[RunRecord],
    *,
    now: int | None = None,
    window_minutes: int = RECENT_WINDOW_MINUTES,
) -> tuple[list[RunRecord], list[RunRecord]]:
    """Split runs into (active, recently ended), each newest first."""
    cutoff = recent_cutoff_ms(now if now is not None else now_ms(), window_minutes)
    ordered = sort_runs(runs)
    active = [entry for entry in ordered if entry.is_active]
    recent = [entry for entry in ordered if entry.ended_at is not None and entry.ended_at >= cutoff]
    return active, recent


def numeric_order(
    runs: list[RunRecord],
    *,
    now: int | None = None,
    window_minutes: int = RECENT_WINDOW_MINUTES,
) -> list[RunRecord]:
    """Ordering used for numeric indices and for ``list`` numbering."""
    active, recent = partition_runs(runs, now=now, window_minutes=window_minutes)
    return active + recent


def _match_unique(
    runs: list[RunRecord],
    predicate: Callable[[RunRecord], bool],
    ambiguous_message: str,
) -> TargetResolution | None:
    matches = [entry for entry in runs if predicate(entry)]
    if len(matches) == 1:
        return TargetResolution(entry=matches[0])
    if len(matches) > 1:
        return TargetResolution(error=ambiguous_message)
    return None


def resolve_subagent_target(
    runs: list[RunRecord],
    token: str | None,
    *,
    now: int | None = None,
    window_minutes: int = RECENT_WINDOW_MINUTES,
) -> TargetResolution:
    trimmed = (token or "").strip()
    if not trimmed:
        return TargetResolution(error="Missing subagent id.")

    if trimmed == "last":
        ordered = sort_runs(runs)
        if not ordered:
            return TargetResolution(error="No subagents to target.")
        return TargetResolution(entry=ordered[0])

    if trimmed.isdigit() and trimmed.isascii():
        ordered = numeric_order(runs, now=now, window_minutes=window_minutes)
        index = int(trimmed)
        if index <= 0 or index > len(ordered):
            return TargetResolution(error=f"Invalid subagent index: {trimmed}")
        return TargetResolution(entry=ordered[index - 1])

    if ":" in trimmed:
        for entry in runs:
            if entry.child_session_key == trimmed:
                return TargetResolution(entry=entry)
        return TargetResolution(error=f"Unknown subagent session: {trimmed}")

    lowered = trimmed.lower()
    for predicate, message in (
        (lambda entry: format_run_label(entry).lower() == lowered, f"Ambiguous subagent label: {trimmed}"),
        (
            lambda entry: format_run_label(entry).lower().startswith(lowered),
            f"Ambiguous subagent label prefix: {trimmed}",
        ),
        (lambda entry: entry.run_id.startswith(trimmed), f"Ambiguous run id prefix: {trimmed}"),
    ):
        resolved = _match_unique(runs, predicate, message)
        if resolved is not None:
            return resolved

    return TargetResolution(error=f"Unknown subagent id: {trimmed}")
