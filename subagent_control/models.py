"""Run records and session entries."""

from __future__ import annotations

import time
from dataclasses import dataclass, field, replace
from typing import Any


def now_ms() -> int:
    """Return current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


def _int_or_none(value: Any) -> int | None:
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        return int(value)
    return None


@dataclass
class RunOutcome:
    """Terminal outcome of a run."""

    status: str  # "ok", "error", "timeout", "killed", "superseded"
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"status": self.status}
        if self.error:
            data["error"] = self.error
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> RunOutcome | None:
        if not isinstance(data, dict) or not data.get("status"):
            return None
        error = data.get("error")
        return cls(status=str(data["status"]), error=str(error) if error else None)


@dataclass
class RunRecord:
    """One subagent execution lineage entry."""

    run_id: str
    child_session_key: str
    requester_session_key: str
    task: str
    created_at: int
    label: str | None = None
    model: str | None = None
    model_provider: str | None = None
    started_at: int | None = None
    ended_at: int | None = None
    outcome: RunOutcome | None = None
    cleanup: str = "keep"
    archive_at_ms: int | None = None
    cleanup_handled: bool = False
    # Set before a steer interrupt; completion announcements are skipped while set.
    suppress_announce_reason: str | None = None
    superseded_by: str | None = None

    @property
    def is_active(self) -> bool:
        return self.ended_at is None

    @property
    def effective_start(self) -> int:
        return self.started_at if self.started_at is not None else self.created_at

    def copy(self, **changes: Any) -> RunRecord:
        """Return a detached copy, optionally with changed fields."""
        outcome = self.outcome
        if outcome is not None and "outcome" not in changes:
            changes["outcome"] = RunOutcome(status=outcome.status, error=outcome.error)
        return replace(self, **changes)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "run_id": self.run_id,
            "child_session_key": self.child_session_key,
            "requester_session_key": self.requester_session_key,
            "task": self.task,
            "created_at": self.created_at,
            "label": self.label,
            "model": self.model,
            "model_provider": self.model_provider,
            "started_at": self.started_at,
            "ended_at": self.ended_at,
            "outcome": self.outcome.to_dict() if self.outcome else None,
            "cleanup": self.cleanup,
            "archive_at_ms": self.archive_at_ms,
            "cleanup_handled": self.cleanup_handled,
            "suppress_announce_reason": self.suppress_announce_reason,
            "superseded_by": self.superseded_by,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RunRecord:
        """Create from dictionary."""
        return cls(
            run_id=str(data["run_id"]),
            child_session_key=str(data["child_session_key"]),
            requester_session_key=str(data["requester_session_key"]),
            task=str(data.get("task", "")),
            created_at=_int_or_none(data.get("created_at")) or 0,
            label=data.get("label") or None,
            model=data.get("model") or None,
            model_provider=data.get("model_provider") or None,
            started_at=_int_or_none(data.get("started_at")),
            ended_at=_int_or_none(data.get("ended_at")),
            outcome=RunOutcome.from_dict(data.get("outcome")),
            cleanup=str(data.get("cleanup") or "keep"),
            archive_at_ms=_int_or_none(data.get("archive_at_ms")),
            cleanup_handled=bool(data.get("cleanup_handled", False)),
            suppress_announce_reason=data.get("suppress_announce_reason") or None,
            superseded_by=data.get("superseded_by") or None,
        )


@dataclass
class SessionEntry:
    """Persisted metadata for one session key."""

    session_id: str | None = None
    session_file: str | None = None
    input_tokens: int | None = None
    output_tokens: int | None = None
    total_tokens: int | None = None
    model: str | None = None
    model_provider: str | None = None
    model_override: str | None = None
    provider_override: str | None = None
    aborted_last_run: bool = False
    updated_at: int | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    _FIELDS = {
        "sessionId": "session_id",
        "sessionFile": "session_file",
        "inputTokens": "input_tokens",
        "outputTokens": "output_tokens",
        "totalTokens": "total_tokens",
        "model": "model",
        "modelProvider": "model_provider",
        "modelOverride": "model_override",
        "providerOverride": "provider_override",
        "abortedLastRun": "aborted_last_run",
        "updatedAt": "updated_at",
    }

    def to_dict(self) -> dict[str, Any]:
        """Convert to the stored (camelCase) representation."""
        data = dict(self.extra)
        for key, attr in self._FIELDS.items():
            value = getattr(self, attr)
            if value is not None:
                data[key] = value
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SessionEntry:
        """Create from the stored representation, keeping unknown keys."""
        extra = {k: v for k, v in data.items() if k not in cls._FIELDS}
        entry = cls(extra=extra)
        for key, attr in cls._FIELDS.items():
            if key not in data:
                continue
            value = data[key]
            if attr in {"input_tokens", "output_tokens", "total_tokens", "updated_at"}:
                value = _int_or_none(value)
            elif attr == "aborted_last_run":
                value = bool(value)
            elif value is not None:
                value = str(value)
            setattr(entry, attr, value)
        return entry
