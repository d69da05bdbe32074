"""Lane-based async execution queues and follow-up queues for child sessions.

Steering and stopping a subagent must drop whatever work is still queued for
it, so both queue kinds expose a clear operation keyed by session key or
backend session id. ``SessionQueues.clear_session_queues`` does both at once.
"""

import asyncio
from collections import deque
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from typing import Any, Literal, TypeVar

from subagent_control.logging import get_logger

log = get_logger(__name__)

T = TypeVar("T")

QueueDropPolicy = Literal["old", "new"]


class CommandLane:
    """Built-in global command lanes."""

    MAIN = "main"
    SUBAGENT = "subagent"
    NESTED = "nested"


class CommandLaneClearedError(RuntimeError):
    """Raised when queued tasks are rejected after a lane clear."""

    def __init__(self, lane: str | None = None):
        message = f'Command lane "{lane}" cleared' if lane else "Command lane cleared"
        super().__init__(message)
        self.lane = lane or ""


@dataclass
class QueueEntry:
    task: Callable[[], Awaitable[object]]
    future: asyncio.Future[object]


@dataclass
class LaneState:
    lane: str
    queue: deque[QueueEntry] = field(default_factory=deque)
    active: int = 0
    max_concurrent: int = 1


class CommandQueueManager:
    """In-process async lane queue with per-lane concurrency limits."""

    def __init__(self):
        self._lanes: dict[str, LaneState] = {}

    def _lane(self, lane: str) -> LaneState:
        cleaned = lane.strip() or CommandLane.MAIN
        state = self._lanes.get(cleaned)
        if state is None:
            state = LaneState(lane=cleaned)
            self._lanes[cleaned] = state
        return state

    def _pump(self, state: LaneState) -> None:
        while state.queue and state.active < state.max_concurrent:
            entry = state.queue.popleft()
            state.active += 1
            asyncio.create_task(self._run_entry(state, entry))

    async def _run_entry(self, state: LaneState, entry: QueueEntry) -> None:
        try:
            result = await entry.task()
        except Exception as e:
            log.error("lane task failed", lane=state.lane, error=str(e))
            if not entry.future.done():
                entry.future.set_exception(e)
        else:
            if not entry.future.done():
                entry.future.set_result(result)
        finally:
            state.active -= 1
            self._pump(state)

    async def enqueue_in_lane(self, lane: str, task: Callable[[], Awaitable[T]]) -> T:
        state = self._lane(lane)
        future: asyncio.Future[object] = asyncio.get_running_loop().create_future()
        state.queue.append(QueueEntry(task=task, future=future))
        self._pump(state)
        return await future  # type: ignore[return-value]

    def set_lane_concurrency(self, lane: str, max_concurrent: int) -> None:
        state = self._lane(lane)
        state.max_concurrent = max(1, int(max_concurrent))
        self._pump(state)

    def get_queue_size(self, lane: str = CommandLane.MAIN) -> int:
        state = self._lanes.get(lane.strip() or CommandLane.MAIN)
        if state is None:
            return 0
        return len(state.queue) + state.active

    def clear_lane(self, lane: str = CommandLane.MAIN) -> int:
        """Reject queued (not yet running) entries; returns how many were dropped."""
        cleaned = lane.strip() or CommandLane.MAIN
        state = self._lanes.get(cleaned)
        if state is None:
            return 0
        removed = len(state.queue)
        while state.queue:
            entry = state.queue.popleft()
            if not entry.future.done():
                entry.future.set_exception(CommandLaneClearedError(cleaned))
        return removed


@dataclass
class QueueSettings:
    """Follow-up queue behavior settings."""

    cap: int = 20
    drop_policy: QueueDropPolicy = "old"


@dataclass
class FollowupRun:
    """Follow-up prompt waiting for a busy session."""

    prompt: str
    enqueued_at_ms: int
    message_id: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)


class FollowupQueueManager:
    """Deferred follow-up prompts per session key."""

    def __init__(self, settings: QueueSettings | None = None):
        self.settings = settings or QueueSettings()
        self._queues: dict[str, deque[FollowupRun]] = {}
        self._draining: set[str] = set()

    def enqueue_followup(self, key: str, run: FollowupRun, settings: QueueSettings | None = None) -> bool:
        cleaned = key.strip()
        if not cleaned:
            return False
        opts = settings or self.settings
        items = self._queues.setdefault(cleaned, deque())
        if run.message_id and any(item.message_id == run.message_id for item in items):
            return False
        if len(items) >= max(1, opts.cap):
            if opts.drop_policy == "new":
                return False
            items.popleft()
        items.append(run)
        return True

    def get_queue_depth(self, key: str) -> int:
        return len(self._queues.get(key.strip(), ()))

    def clear_queue(self, key: str) -> int:
        cleaned = key.strip()
        if not cleaned:
            return 0
        items = self._queues.pop(cleaned, None)
        return len(items) if items else 0

    def schedule_drain(self, key: str, run_followup: Callable[[FollowupRun], Awaitable[None]]) -> None:
        """Run queued follow-ups in order on a background task."""
        cleaned = key.strip()
        if not cleaned or cleaned in self._draining or cleaned not in self._queues:
            return
        self._draining.add(cleaned)

        async def _drain() -> None:
            try:
                while True:
                    items = self._queues.get(cleaned)
                    if not items:
                        break
                    await run_followup(items.popleft())
            except Exception as e:
                log.error("followup queue drain failed", key=cleaned, error=str(e))
            finally:
                self._draining.discard(cleaned)
                if not self._queues.get(cleaned):
                    self._queues.pop(cleaned, None)

        asyncio.create_task(_drain())


def resolve_session_lane(key: str) -> str:
    cleaned = key.strip() if key else ""
    if not cleaned:
        return "session:default"
    if cleaned.startswith("session:"):
        return cleaned
    return f"session:{cleaned}"


@dataclass
class ClearSessionQueuesResult:
    followup_cleared: int = 0
    lane_cleared: int = 0
    keys: list[str] = field(default_factory=list)


class SessionQueues:
    """Follow-up queues and session lanes shared by the running process."""

    def __init__(
        self,
        command_queue: CommandQueueManager | None = None,
        followup_queue: FollowupQueueManager | None = None,
    ):
        self.command_queue = command_queue or CommandQueueManager()
        self.followup_queue = followup_queue or FollowupQueueManager()

    def clear_session_queues(self, keys: Iterable[str | None]) -> ClearSessionQueuesResult:
        """Clear queued follow-ups and pending lane work for each distinct key."""
        result = ClearSessionQueuesResult()
        seen: set[str] = set()
        for key in keys:
            cleaned = (key or "").strip()
            if not cleaned or cleaned in seen:
                continue
            seen.add(cleaned)
            result.keys.append(cleaned)
            result.followup_cleared += self.followup_queue.clear_queue(cleaned)
            result.lane_cleared += self.command_queue.clear_lane(resolve_session_lane(cleaned))
        return result
