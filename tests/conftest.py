import asyncio
from pathlib import Path
from typing import Any

import pytest
import pytest_asyncio
import structlog

from subagent_control.config import Config
from subagent_control.exceptions import BackendError, BackendTimeoutError
from subagent_control.execution_queue import SessionQueues
from subagent_control.gateway import WaitResult
from subagent_control.models import RunOutcome, RunRecord, now_ms
from subagent_control.registry import InMemoryRunRegistry
from subagent_control.session import SessionStore

REQUESTER = "agent:main:main"


class FakeBackend:
    """Records every call in order; responses are configurable per test."""

    def __init__(self, events: list[str] | None = None):
        self.events: list[str] = events if events is not None else []
        self.calls: list[tuple[str, dict[str, Any]]] = []
        self.next_run_id: str | None = "run-next-0001"
        self.dispatch_error: str | None = None
        self.cancel_error: str | None = None
        self.history_error: str | None = None
        self.wait_result = WaitResult(status="ok")
        self.wait_raises_timeout = False
        self.messages: list[Any] = []
        self.dispatch_gate: asyncio.Event | None = None
        self.dispatch_entered = asyncio.Event()

    async def cancel(self, session_id: str, *, timeout_ms: int | None = None) -> bool:
        self.events.append(f"cancel:{session_id}")
        self.calls.append(("cancel", {"session_id": session_id}))
        if self.cancel_error:
            raise BackendError(self.cancel_error, method="agent.abort")
        return True

    async def dispatch(self, **kwargs: Any) -> str | None:
        self.events.append(f"dispatch:{kwargs['session_key']}")
        self.calls.append(("dispatch", kwargs))
        self.dispatch_entered.set()
        if self.dispatch_gate is not None:
            await self.dispatch_gate.wait()
        if self.dispatch_error:
            raise BackendError(self.dispatch_error, method="agent")
        return self.next_run_id

    async def wait(self, run_id: str, timeout_ms: int, *, call_timeout_ms: int | None = None) -> WaitResult:
        self.events.append(f"wait:{run_id}")
        self.calls.append(("wait", {"run_id": run_id, "timeout_ms": timeout_ms}))
        if self.wait_raises_timeout:
            raise BackendTimeoutError("agent.wait", timeout_ms)
        return self.wait_result

    async def history(self, session_key: str, limit: int, *, timeout_ms: int | None = None) -> list[Any]:
        self.events.append(f"history:{session_key}")
        self.calls.append(("history", {"session_key": session_key, "limit": limit}))
        if self.history_error:
            raise BackendError(self.history_error, method="chat.history")
        return list(self.messages)


class RecordingQueues(SessionQueues):
    def __init__(self, events: list[str]):
        super().__init__()
        self.events = events

    def clear_session_queues(self, keys):
        result = super().clear_session_queues(keys)
        self.events.append("clear:" + ",".join(result.keys))
        return result


def make_run(
    run_id: str,
    *,
    label: str | None = None,
    task: str = "do something",
    child: str | None = None,
    requester: str = REQUESTER,
    created_at: int | None = None,
    started_at: int | None = None,
    ended_at: int | None = None,
    outcome: RunOutcome | None = None,
) -> RunRecord:
    base = created_at if created_at is not None else now_ms() - 60_000
    return RunRecord(
        run_id=run_id,
        child_session_key=child or f"agent:main:subagent:{run_id}",
        requester_session_key=requester,
        task=task,
        created_at=base,
        label=label,
        started_at=started_at,
        ended_at=ended_at,
        outcome=outcome if outcome is not None or ended_at is None else RunOutcome(status="ok"),
    )


def add_run(registry: InMemoryRunRegistry, record: RunRecord) -> RunRecord:
    registry._runs[record.run_id] = record
    return record


@pytest.fixture(autouse=True)
def _reset_structlog(monkeypatch):
    # configure_logging() binds structlog to the current sys.stderr, which the
    # CLI runner closes afterwards. Keep module loggers from caching that
    # binding and restore defaults so later tests can still log.
    configure = structlog.configure

    def _configure_uncached(*args, **kwargs):
        kwargs["cache_logger_on_first_use"] = False
        configure(*args, **kwargs)

    monkeypatch.setattr(structlog, "configure", _configure_uncached)
    yield
    structlog.reset_defaults()


@pytest.fixture
def config(tmp_path: Path) -> Config:
    cfg = Config()
    cfg.session.store = str(tmp_path / "agents" / "{agent_id}" / "sessions.db")
    return cfg


@pytest.fixture
def events() -> list[str]:
    return []


@pytest.fixture
def backend(events) -> FakeBackend:
    return FakeBackend(events)


@pytest.fixture
def registry() -> InMemoryRunRegistry:
    return InMemoryRunRegistry()


@pytest.fixture
def queues(events) -> RecordingQueues:
    return RecordingQueues(events)


@pytest_asyncio.fixture
async def session_store():
    store = SessionStore()
    try:
        yield store
    finally:
        await store.close()


@pytest.fixture
def run_factory():
    return make_run


@pytest.fixture
def seed(registry):
    def _seed(*records: RunRecord) -> list[RunRecord]:
        return [add_run(registry, record) for record in records]

    return _seed


@pytest.fixture
def requester() -> str:
    return REQUESTER


@pytest.fixture
def handler(registry, backend, session_store, queues, config):
    from subagent_control.commands import SubagentCommandHandler

    return SubagentCommandHandler(registry, backend, session_store=session_store, queues=queues, config=config)


@pytest.fixture
def put_session_entry(session_store, config):
    from subagent_control.models import SessionEntry
    from subagent_control.session import resolve_store_path

    async def _put(session_key: str, **fields: Any) -> SessionEntry:
        entry = SessionEntry(**fields)

        def _mutate(store):
            store[session_key] = entry

        await session_store.update(resolve_store_path(session_key, config), _mutate)
        return entry

    return _put
