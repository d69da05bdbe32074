"""Send and steer coordination for running subagents.

A steer interrupts the active run of a child session and starts a
replacement run in the same session::

    RUNNING -> STEER_REQUESTED -> INTERRUPTED -> DISPATCHED -> RUNNING (new run)
                                         \\-> FAILED      \\-> FAILED

The run is flagged in the registry before the interrupt so its late
completion is never announced. The interrupt and queue clearing always
finish before the replacement is dispatched. A run that ends while it is
being interrupted, or is killed before the replacement is recorded, leaves
the attempt FAILED instead of resurrecting the lineage.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from enum import Enum

from subagent_control.abort import SubagentStopper
from subagent_control.config import Config, get_config
from subagent_control.exceptions import AlreadyFinishedError, BackendError, BackendTimeoutError
from subagent_control.execution_queue import CommandLane, SessionQueues
from subagent_control.formatting import format_run_label
from subagent_control.gateway import INTERNAL_MESSAGE_CHANNEL, ExecutionBackend, WaitResult
from subagent_control.logging import get_logger
from subagent_control.models import RunRecord
from subagent_control.registry import RunRegistry

log = get_logger(__name__)


class SteerState(str, Enum):
    RUNNING = "running"
    STEER_REQUESTED = "steer_requested"
    INTERRUPTED = "interrupted"
    DISPATCHED = "dispatched"
    FAILED = "failed"


@dataclass
class SteerAttempt:
    """One steer attempt against a child session lineage."""

    child_session_key: str
    previous_run_id: str
    state: SteerState = SteerState.RUNNING
    next_run_id: str | None = None
    error: str | None = None
    transitions: list[SteerState] = field(default_factory=lambda: [SteerState.RUNNING])

    def advance(self, state: SteerState) -> None:
        self.state = state
        self.transitions.append(state)
        log.debug(
            "steer transition",
            child=self.child_session_key,
            run_id=self.previous_run_id,
            state=state.value,
        )


@dataclass
class SendOutcome:
    run_id: str
    wait: WaitResult


class SteerCoordinator:
    """Dispatches messages to child sessions, optionally interrupting them first."""

    def __init__(
        self,
        registry: RunRegistry,
        backend: ExecutionBackend,
        queues: SessionQueues,
        stopper: SubagentStopper,
        config: Config | None = None,
    ):
        self.registry = registry
        self.backend = backend
        self.queues = queues
        self.stopper = stopper
        self.config = config or get_config()
        self.attempts: dict[str, SteerAttempt] = {}

    async def _dispatch(self, run: RunRecord, message: str) -> str:
        idempotency_key = str(uuid.uuid4())
        run_id = await self.backend.dispatch(
            message=message,
            session_key=run.child_session_key,
            idempotency_key=idempotency_key,
            deliver=False,
            channel=INTERNAL_MESSAGE_CHANNEL,
            lane=CommandLane.SUBAGENT,
            timeout_ms=self.config.subagents.dispatch_timeout_ms,
        )
        return run_id or idempotency_key

    async def steer(self, run: RunRecord, message: str, session_id: str | None) -> SteerAttempt:
        """Interrupt ``run`` and replace it with a new run carrying ``message``.

        Holds the lineage lock shared with :class:`SubagentStopper`, so a kill
        of the same child waits for the steer and then stops the replacement.

        Raises:
            AlreadyFinishedError: the lineage has no active run any more
            BackendError: dispatch of the replacement failed (attempt is FAILED)
        """
        async with self.stopper.lineage_lock(run.child_session_key):
            # A steer that raced ahead of us may already have replaced the run.
            current = self.registry.find_active_run(run.child_session_key)
            if current is None:
                raise AlreadyFinishedError(format_run_label(run))

            attempt = SteerAttempt(
                child_session_key=current.child_session_key,
                previous_run_id=current.run_id,
            )
            self.attempts[current.child_session_key] = attempt

            if not self.registry.mark_for_steer_restart(current.run_id):
                raise AlreadyFinishedError(format_run_label(current))
            attempt.advance(SteerState.STEER_REQUESTED)

            await self.stopper.cancel_backend_run(session_id, reason="steer")
            cleared = self.queues.clear_session_queues([current.child_session_key, session_id])
            if cleared.followup_cleared > 0 or cleared.lane_cleared > 0:
                log.info(
                    "subagents steer: cleared queues",
                    followups=cleared.followup_cleared,
                    lane=cleared.lane_cleared,
                    keys=",".join(cleared.keys),
                )
            attempt.advance(SteerState.INTERRUPTED)

            latest = self.registry.get_run(current.run_id)
            if latest is None or not latest.is_active:
                attempt.error = "run ended before the steer was dispatched"
                attempt.advance(SteerState.FAILED)
                raise AlreadyFinishedError(format_run_label(current))

            try:
                next_run_id = await self._dispatch(current, message)
            except BackendError as e:
                attempt.error = str(e)
                attempt.advance(SteerState.FAILED)
                log.warning("Steer dispatch failed", run_id=current.run_id, error=str(e))
                raise
            attempt.advance(SteerState.DISPATCHED)

            replacement = self.registry.replace_after_steer(current.run_id, next_run_id, current)
            if replacement is None:
                attempt.error = "run was killed during the steer"
                attempt.advance(SteerState.FAILED)
                await self.stopper.cancel_backend_run(session_id, reason="steer-after-kill")
                raise AlreadyFinishedError(format_run_label(current))
            attempt.next_run_id = next_run_id
            attempt.advance(SteerState.RUNNING)
            log.info("Steered subagent", previous_run_id=current.run_id, next_run_id=next_run_id)
            return attempt

    async def send(self, run: RunRecord, message: str) -> SendOutcome:
        """Dispatch ``message`` to the child session and wait for it to settle."""
        current = self.registry.get_run(run.run_id)
        if current is None or not current.is_active:
            raise AlreadyFinishedError(format_run_label(run))

        run_id = await self._dispatch(current, message)

        wait_ms = self.config.subagents.send_wait_ms
        try:
            waited = await self.backend.wait(
                run_id,
                wait_ms,
                call_timeout_ms=wait_ms + self.config.subagents.wait_grace_ms,
            )
        except BackendTimeoutError:
            waited = WaitResult(status="timeout")
        return SendOutcome(run_id=run_id, wait=waited)
