"""Subagent run registry.

Holds ``RunRecord`` entries grouped by requester session. Command handlers
only ever see detached copies, so a snapshot taken at the top of a command
never changes under the resolver.
"""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Protocol

from subagent_control.logging import get_logger
from subagent_control.models import RunOutcome, RunRecord, now_ms

log = get_logger(__name__)

STEER_RESTART_REASON = "steer-restart"


class RunRegistry(Protocol):
    """Capability the command engine needs from the run registry."""

    def list_runs_for_requester(self, requester_session_key: str) -> list[RunRecord]: ...

    def get_run(self, run_id: str) -> RunRecord | None: ...

    def find_active_run(self, child_session_key: str) -> RunRecord | None: ...

    def mark_for_steer_restart(self, run_id: str) -> bool: ...

    def replace_after_steer(
        self,
        previous_run_id: str,
        next_run_id: str,
        fallback: RunRecord | None = None,
    ) -> RunRecord | None: ...

    def mark_terminated(self, run_id: str, reason: str = "killed") -> bool: ...


class InMemoryRunRegistry:
    """In-process run registry with optional JSON persistence."""

    _PERSIST_VERSION = 1

    def __init__(self, persistence_path: Path | str | None = None, archive_after_ms: int | None = None):
        self._runs: dict[str, RunRecord] = {}
        self.archive_after_ms = archive_after_ms
        self._persistence_path = Path(persistence_path).expanduser() if persistence_path else None
        self._load_from_disk()

    # -- persistence ---------------------------------------------------------

    def _load_from_disk(self) -> None:
        path = self._persistence_path
        if path is None or not path.exists():
            return
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            log.warning("Failed to read run registry", path=str(path), error=str(e))
            return
        runs = data.get("runs") if isinstance(data, dict) else None
        if not isinstance(runs, list):
            return
        for raw in runs:
            if not isinstance(raw, dict):
                continue
            try:
                record = RunRecord.from_dict(raw)
            except (KeyError, TypeError, ValueError) as e:
                log.warning("Skipping malformed run record", error=str(e))
                continue
            self._runs[record.run_id] = record
        log.debug("Loaded run registry", path=str(path), runs=len(self._runs))

    def _persist(self) -> None:
        path = self._persistence_path
        if path is None:
            return
        path.parent.mkdir(parents=True, exist_ok=True)
        payload = {
            "version": self._PERSIST_VERSION,
            "runs": [record.to_dict() for record in self._runs.values()],
        }
        tmp_path = path.with_suffix(f"{path.suffix}.tmp")
        tmp_path.write_text(json.dumps(payload, indent=2), encoding="utf-8")
        os.replace(tmp_path, path)

    # -- queries -------------------------------------------------------------

    def list_runs_for_requester(
        self,
        requester_session_key: str,
        *,
        include_superseded: bool = False,
    ) -> list[RunRecord]:
        """Snapshot of runs owned by a requester, in registration order."""
        key = requester_session_key.strip()
        if not key:
            return []
        return [
            record.copy()
            for record in self._runs.values()
            if record.requester_session_key == key
            and (include_superseded or record.superseded_by is None)
        ]

    def get_run(self, run_id: str) -> RunRecord | None:
        record = self._runs.get(run_id)
        return record.copy() if record else None

    def find_active_run(self, child_session_key: str) -> RunRecord | None:
        for record in self._runs.values():
            if record.child_session_key == child_session_key and record.is_active:
                return record.copy()
        return None

    # -- lifecycle -----------------------------------------------------------

    def register_run(
        self,
        *,
        run_id: str,
        child_session_key: str,
        requester_session_key: str,
        task: str,
        label: str | None = None,
        model: str | None = None,
        model_provider: str | None = None,
        cleanup: str = "keep",
        created_at: int | None = None,
    ) -> RunRecord:
        """Register a freshly spawned run."""
        if run_id in self._runs:
            raise ValueError(f"Run already registered: {run_id}")
        active = self.find_active_run(child_session_key)
        if active is not None:
            raise ValueError(f"Session already has an active run: {child_session_key}")
        record = RunRecord(
            run_id=run_id,
            child_session_key=child_session_key,
            requester_session_key=requester_session_key,
            task=task,
            created_at=created_at if created_at is not None else now_ms(),
            label=label,
            model=model,
            model_provider=model_provider,
            cleanup=cleanup,
        )
        self._runs[run_id] = record
        self._persist()
        log.info("Registered subagent run", run_id=run_id, child=child_session_key)
        return record.copy()

    def mark_started(self, run_id: str, started_at: int | None = None) -> bool:
        record = self._runs.get(run_id)
        if record is None or not record.is_active:
            return False
        record.started_at = started_at if started_at is not None else now_ms()
        self._persist()
        return True

    def complete_run(
        self,
        run_id: str,
        outcome: RunOutcome,
        *,
        ended_at: int | None = None,
        archive_after_ms: int | None = None,
    ) -> bool:
        """Record a run's end. Returns True when the completion should be announced."""
        record = self._runs.get(run_id)
        if record is None:
            return False
        if record.ended_at is None:
            record.ended_at = ended_at if ended_at is not None else now_ms()
            record.outcome = outcome
            archive_ms = archive_after_ms if archive_after_ms is not None else self.archive_after_ms
            if archive_ms is not None and record.cleanup != "keep":
                record.archive_at_ms = record.ended_at + max(0, archive_ms)
            self._persist()
        if record.suppress_announce_reason:
            log.info(
                "Suppressed completion announce",
                run_id=run_id,
                reason=record.suppress_announce_reason,
            )
            return False
        return True

    def mark_terminated(self, run_id: str, reason: str = "killed") -> bool:
        record = self._runs.get(run_id)
        if record is None or not record.is_active:
            return False
        record.ended_at = now_ms()
        record.outcome = RunOutcome(status="killed", error=reason if reason != "killed" else None)
        self._persist()
        return True

    def mark_for_steer_restart(self, run_id: str) -> bool:
        """Flag a run so its late completion is not announced."""
        record = self._runs.get(run_id)
        if record is None or not record.is_active:
            return False
        record.suppress_announce_reason = STEER_RESTART_REASON
        self._persist()
        return True

    def clear_steer_restart(self, run_id: str) -> bool:
        record = self._runs.get(run_id)
        if record is None or record.suppress_announce_reason != STEER_RESTART_REASON:
            return False
        record.suppress_announce_reason = None
        self._persist()
        return True

    def replace_after_steer(
        self,
        previous_run_id: str,
        next_run_id: str,
        fallback: RunRecord | None = None,
    ) -> RunRecord | None:
        """Supersede ``previous_run_id`` with a fresh record for ``next_run_id``."""
        previous = self._runs.get(previous_run_id) or fallback
        if previous is None:
            return None
        if previous_run_id == next_run_id:
            return previous.copy()
        now = now_ms()
        stored_previous = self._runs.get(previous_run_id)
        if stored_previous is not None and stored_previous.outcome and stored_previous.outcome.status == "killed":
            log.info("Refusing to replace killed run", previous_run_id=previous_run_id, next_run_id=next_run_id)
            return None
        if stored_previous is not None:
            if stored_previous.is_active:
                stored_previous.ended_at = now
                stored_previous.outcome = RunOutcome(status="superseded")
            stored_previous.superseded_by = next_run_id
        existing = self._runs.get(next_run_id)
        replacement = RunRecord(
            run_id=next_run_id,
            child_session_key=previous.child_session_key,
            requester_session_key=previous.requester_session_key,
            task=(existing.task if existing and existing.task else previous.task),
            created_at=now,
            label=(existing.label if existing and existing.label else previous.label),
            model=(existing.model if existing and existing.model else previous.model),
            model_provider=(
                existing.model_provider if existing and existing.model_provider else previous.model_provider
            ),
            started_at=now,
            cleanup=previous.cleanup,
        )
        self._runs.pop(next_run_id, None)
        self._runs[next_run_id] = replacement
        self._persist()
        log.info("Replaced run after steer", previous_run_id=previous_run_id, next_run_id=next_run_id)
        return replacement.copy()

    def sweep_archived(self, now: int | None = None) -> int:
        """Drop records whose archive time has passed."""
        current = now if now is not None else now_ms()
        expired = [
            run_id
            for run_id, record in self._runs.items()
            if record.archive_at_ms is not None and record.archive_at_ms <= current
        ]
        for run_id in expired:
            self._runs.pop(run_id, None)
        if expired:
            self._persist()
            log.info("Swept archived runs", count=len(expired))
        return len(expired)
