"""Human-readable rendering of runs, durations, tokens and timestamps."""

from __future__ import annotations

import math
import re
from datetime import UTC, datetime

from subagent_control.models import RunRecord, SessionEntry, now_ms


def _positive(value: int | float | None) -> bool:
    return isinstance(value, (int, float)) and math.isfinite(value) and value > 0


def format_duration_compact(value_ms: int | float | None) -> str:
    """Render a duration as ``5m``, ``1h30m`` or ``2d3h`` (``n/a`` when unknown)."""
    if not _positive(value_ms):
        return "n/a"
    minutes = max(1, round(value_ms / 60_000))
    if minutes < 60:
        return f"{minutes}m"
    hours, minutes_rem = divmod(minutes, 60)
    if hours < 24:
        return f"{hours}h{minutes_rem}m" if minutes_rem else f"{hours}h"
    days, hours_rem = divmod(hours, 24)
    return f"{days}d{hours_rem}h" if hours_rem else f"{days}d"


def _strip_zero(text: str) -> str:
    return text[:-2] if text.endswith(".0") else text


def format_token_short(value: int | float | None) -> str | None:
    if not _positive(value):
        return None
    n = int(value)
    if n < 1_000:
        return str(n)
    if n < 10_000:
        return _strip_zero(f"{n / 1_000:.1f}") + "k"
    if n < 1_000_000:
        return f"{round(n / 1_000)}k"
    return _strip_zero(f"{n / 1_000_000:.1f}") + "m"


def truncate_line(value: str, max_length: int) -> str:
    if len(value) <= max_length:
        return value
    return value[:max_length].rstrip() + "..."


def compact_line(value: str) -> str:
    return re.sub(r"\s+", " ", value or "").strip()


def format_run_label(entry: RunRecord, max_length: int | None = None) -> str:
    raw = (entry.label or "").strip() or (entry.task or "").strip() or "subagent"
    if max_length:
        return truncate_line(raw, max_length)
    return raw


def format_run_status(entry: RunRecord) -> str:
    if entry.is_active:
        return "running"
    status = entry.outcome.status if entry.outcome else "ok"
    if status == "ok":
        return "done"
    if status == "superseded":
        return "steered"
    return status or "done"


def resolve_display_status(entry: RunRecord) -> str:
    status = format_run_status(entry)
    return "failed" if status == "error" else status


def sort_runs(runs: list[RunRecord]) -> list[RunRecord]:
    """Active runs first, then most recent start (or creation) first.

    ``sorted`` is stable, so equal keys keep their snapshot order.
    """
    return sorted(runs, key=lambda entry: (not entry.is_active, -entry.effective_start))


def _join_model(model: str | None, provider: str | None) -> str:
    model_text = (model or "").strip()
    provider_text = (provider or "").strip()
    if "/" in model_text:
        return model_text
    if model_text and provider_text:
        return f"{provider_text}/{model_text}"
    return model_text


def resolve_model_display(entry: SessionEntry | None, fallback_model: str | None = None) -> str:
    combined = ""
    if entry is not None:
        combined = _join_model(entry.model, entry.model_provider)
        if not combined:
            # Overrides are written at spawn time, before the first run reports its model.
            combined = _join_model(entry.model_override, entry.provider_override)
    if not combined:
        combined = (fallback_model or "").strip()
    if not combined:
        return "model n/a"
    slash = combined.rfind("/")
    if 0 <= slash < len(combined) - 1:
        return combined[slash + 1:]
    return combined


def resolve_usage_display(entry: SessionEntry | None) -> str:
    if entry is None:
        return ""
    io_input = entry.input_tokens or 0
    io_output = entry.output_tokens or 0
    io_total = io_input + io_output
    prompt_cache = entry.total_tokens
    if prompt_cache is None and io_total > 0:
        prompt_cache = io_total
    parts: list[str] = []
    if io_total > 0:
        parts.append(
            f"tokens {format_token_short(io_total)} "
            f"(in {format_token_short(io_input) or '0'} / out {format_token_short(io_output) or '0'})"
        )
    elif prompt_cache:
        parts.append(f"tokens {format_token_short(prompt_cache)} prompt/cache")
    if prompt_cache and io_total > 0 and prompt_cache > io_total:
        parts.append(f"prompt/cache {format_token_short(prompt_cache)}")
    return ", ".join(parts)


def format_time_ago(delta_ms: int | float) -> str:
    if not math.isfinite(delta_ms):
        return "n/a"
    future = delta_ms < 0
    seconds = abs(delta_ms) / 1000
    if seconds < 60:
        return "just now"
    minutes = round(seconds / 60)
    if minutes < 60:
        text = f"{minutes}m"
    elif minutes < 60 * 24:
        text = f"{round(minutes / 60)}h"
    else:
        text = f"{round(minutes / (60 * 24))}d"
    return f"in {text}" if future else f"{text} ago"


def format_timestamp(value_ms: int | None) -> str:
    if not _positive(value_ms):
        return "n/a"
    stamp = datetime.fromtimestamp(value_ms / 1000, tz=UTC)
    return stamp.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def format_timestamp_with_age(value_ms: int | None, now: int | None = None) -> str:
    if not _positive(value_ms):
        return "n/a"
    current = now if now is not None else now_ms()
    return f"{format_timestamp(value_ms)} ({format_time_ago(current - value_ms)})"
