"""Stopping subagent runs, including everything they spawned."""

from __future__ import annotations

import asyncio
from pathlib import Path

from subagent_control.config import Config, get_config
from subagent_control.exceptions import BackendError, SessionStoreError
from subagent_control.execution_queue import SessionQueues
from subagent_control.gateway import ExecutionBackend
from subagent_control.logging import get_logger
from subagent_control.models import RunRecord, now_ms
from subagent_control.registry import RunRegistry
from subagent_control.session import SessionStore, SessionStoreCache, SessionStoreMap

log = get_logger(__name__)


class SubagentStopper:
    """Cancels runs at the backend and cascades to their own children."""

    def __init__(
        self,
        registry: RunRegistry,
        backend: ExecutionBackend,
        session_store: SessionStore,
        queues: SessionQueues,
        config: Config | None = None,
    ):
        self.registry = registry
        self.backend = backend
        self.session_store = session_store
        self.queues = queues
        self.config = config or get_config()
        self._locks: dict[str, asyncio.Lock] = {}

    async def cancel_backend_run(self, session_id: str | None, *, reason: str) -> bool:
        """Best-effort interrupt of the backend run behind ``session_id``."""
        if not session_id:
            return False
        try:
            return await self.backend.cancel(session_id, timeout_ms=self.config.gateway.timeout_ms)
        except BackendError as e:
            log.warning("Backend cancel failed", session_id=session_id, reason=reason, error=str(e))
            return False

    async def _mark_aborted(self, store_path: Path, child_key: str) -> None:
        def _mutate(store: SessionStoreMap) -> None:
            entry = store.get(child_key)
            if entry is None:
                return
            entry.aborted_last_run = True
            entry.updated_at = now_ms()

        try:
            await self.session_store.update(store_path, _mutate)
        except SessionStoreError as e:
            log.warning("Failed to persist aborted flag", session_key=child_key, error=str(e))

    def lineage_lock(self, child_session_key: str) -> asyncio.Lock:
        """Lock shared by stops and steers of one child session."""
        lock = self._locks.get(child_session_key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[child_session_key] = lock
        return lock

    def _current_run(self, run: RunRecord) -> RunRecord | None:
        current = self.registry.get_run(run.run_id)
        if current is None:
            return None
        if not current.is_active and current.superseded_by:
            # Steered while we waited; the replacement carries on the lineage.
            return self.registry.find_active_run(current.child_session_key)
        if not current.is_active:
            return None
        return current

    async def stop_run(self, run: RunRecord, *, _seen: set[str] | None = None) -> int:
        """Stop one run and its descendants. Returns how many runs were stopped."""
        seen = _seen if _seen is not None else set()
        child_key = run.child_session_key
        async with self.lineage_lock(child_key):
            current = self._current_run(run)
            if current is None:
                return 0
            seen.add(child_key)
            stopped = await self._stop_one(current)

        stopped += await self.stop_for_requester(child_key, _seen=seen)
        return stopped

    async def _stop_one(self, current: RunRecord) -> int:
        child_key = current.child_session_key
        cache = SessionStoreCache(self.session_store, self.config)
        store_path: Path | None = None
        session_id = None
        try:
            store_path, entry = await cache.load_entry(child_key)
            session_id = entry.session_id if entry else None
        except SessionStoreError as e:
            log.warning("Session store unavailable during stop", session_key=child_key, error=str(e))
            entry = None

        await self.cancel_backend_run(session_id, reason="stop")
        cleared = self.queues.clear_session_queues([child_key, session_id])
        if cleared.followup_cleared > 0 or cleared.lane_cleared > 0:
            log.info(
                "subagents stop: cleared queues",
                followups=cleared.followup_cleared,
                lane=cleared.lane_cleared,
                keys=",".join(cleared.keys),
            )
        if entry is not None and store_path is not None:
            await self._mark_aborted(store_path, child_key)
        return 1 if self.registry.mark_terminated(current.run_id, "killed") else 0

    async def stop_for_requester(self, requester_session_key: str, *, _seen: set[str] | None = None) -> int:
        """Stop every active run owned by a requester, recursively."""
        seen = _seen if _seen is not None else set()
        stopped = 0
        for run in self.registry.list_runs_for_requester(requester_session_key):
            if not run.is_active or run.child_session_key in seen:
                continue
            stopped += await self.stop_run(run, _seen=seen)
        if stopped:
            log.info("Stopped subagents", requester=requester_session_key, count=stopped)
        return stopped
