"""``/subagents`` text command handling.

Entry point is :meth:`SubagentCommandHandler.handle`. Every verb is terminal
(``should_continue`` is always False) and every failure ends as reply text.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

from subagent_control.abort import SubagentStopper
from subagent_control.config import Config, get_config
from subagent_control.exceptions import (
    AlreadyFinishedError,
    BackendError,
    ResolutionError,
    SessionStoreError,
    UsageError,
)
from subagent_control.execution_queue import SessionQueues
from subagent_control.formatting import (
    compact_line,
    format_duration_compact,
    format_run_label,
    format_timestamp_with_age,
    resolve_display_status,
    resolve_model_display,
    resolve_usage_display,
    truncate_line,
)
from subagent_control.gateway import ExecutionBackend
from subagent_control.logging import command_context, get_logger
from subagent_control.models import RunRecord, SessionEntry, now_ms
from subagent_control.registry import RunRegistry
from subagent_control.resolver import partition_runs, resolve_subagent_target
from subagent_control.session import SessionStore, SessionStoreCache, get_session_store
from subagent_control.steer import SteerCoordinator
from subagent_control.transcript import extract_assistant_text, format_log_lines, strip_tool_messages

log = get_logger(__name__)

COMMAND = "/subagents"
COMMAND_KILL = "/kill"
COMMAND_STEER = "/steer"
COMMAND_TELL = "/tell"
ACTIONS = {"list", "stop", "kill", "log", "send", "steer", "info", "help"}
LABEL_MAX_LENGTH = 48


@dataclass
class CommandParams:
    """Raw command as delivered by the transport."""

    command_body: str
    session_key: str | None = None
    target_session_key: str | None = None
    sender_id: str = ""
    is_authorized_sender: bool = True


@dataclass
class CommandResult:
    should_continue: bool = False
    reply: str | None = None


@dataclass
class _Invocation:
    prefix: str
    action: str
    tokens: list[str]
    steer_requested: bool
    requester_key: str
    runs: list[RunRecord]
    now: int
    store_cache: SessionStoreCache


def build_subagents_help() -> str:
    return "\n".join([
        "Subagents",
        "Usage:",
        "- /subagents list",
        "- /subagents stop <id|#|all>",
        "- /subagents kill <id|#|all>",
        "- /subagents log <id|#> [limit] [tools]",
        "- /subagents info <id|#>",
        "- /subagents send <id|#> <message>",
        "- /subagents steer <id|#> <message>",
        "- /kill <id|#|all>",
        "- /steer <id|#> <message>",
        "- /tell <id|#> <message>",
        "",
        "Ids: use the list index (#), runId prefix, label, or full session key.",
    ])


def _match_prefix(normalized: str) -> str | None:
    for prefix in (COMMAND, COMMAND_KILL, COMMAND_STEER, COMMAND_TELL):
        if normalized == prefix or normalized.startswith(prefix + " "):
            return prefix
    return None


class SubagentCommandHandler:
    """Dispatches ``/subagents`` verbs against the run registry and backend."""

    def __init__(
        self,
        registry: RunRegistry,
        backend: ExecutionBackend,
        session_store: SessionStore | None = None,
        queues: SessionQueues | None = None,
        config: Config | None = None,
    ):
        self.registry = registry
        self.backend = backend
        self.session_store = session_store or get_session_store()
        self.queues = queues or SessionQueues()
        self.config = config or get_config()
        self.stopper = SubagentStopper(registry, backend, self.session_store, self.queues, self.config)
        self.coordinator = SteerCoordinator(registry, backend, self.queues, self.stopper, self.config)

    # -- entry point ---------------------------------------------------------

    async def handle(self, params: CommandParams, allow_text_commands: bool = True) -> CommandResult | None:
        """Handle one command. Returns None when the text is not a subagents command."""
        if not allow_text_commands:
            return None
        normalized = (params.command_body or "").strip()
        prefix = _match_prefix(normalized)
        if prefix is None:
            return None
        if not params.is_authorized_sender:
            log.info(
                "Ignoring subagents command from unauthorized sender",
                command=prefix,
                sender=params.sender_id or "<unknown>",
            )
            return CommandResult(should_continue=False)

        tokens = normalized[len(prefix):].split()
        steer_requested = False
        if prefix == COMMAND:
            action = tokens.pop(0).lower() if tokens else "list"
            if action not in ACTIONS:
                return CommandResult(reply=build_subagents_help())
        elif prefix == COMMAND_KILL:
            action = "stop"
        else:
            action = "steer"
        if action == "kill":
            action = "stop"
        if action == "steer":
            steer_requested = True

        requester_key = self.resolve_requester_session_key(params)
        if not requester_key:
            return CommandResult(reply="⚠️ Missing session key.")
        if action == "help":
            return CommandResult(reply=build_subagents_help())

        invocation = _Invocation(
            prefix=prefix,
            action=action,
            tokens=tokens,
            steer_requested=steer_requested,
            requester_key=requester_key,
            runs=self.registry.list_runs_for_requester(requester_key),
            now=now_ms(),
            store_cache=SessionStoreCache(self.session_store, self.config),
        )
        handlers = {
            "list": self._handle_list,
            "stop": self._handle_stop,
            "info": self._handle_info,
            "log": self._handle_log,
            "send": self._handle_send,
            "steer": self._handle_send,
        }
        with command_context(action, requester_key):
            try:
                reply = await handlers[action](invocation)
            except UsageError as e:
                reply = e.usage
            except ResolutionError as e:
                reply = f"⚠️ {e}"
            except AlreadyFinishedError as e:
                reply = str(e)
            except BackendError as e:
                log.warning("Backend call failed", method=e.method, error=str(e))
                reply = f"{action} failed: {e}"
            except Exception as e:
                log.error("Subagents command failed", error=str(e))
                reply = f"⚠️ subagents {action} failed: {e}"
        return CommandResult(should_continue=False, reply=reply)

    def resolve_requester_session_key(self, params: CommandParams) -> str | None:
        raw = (params.session_key or "").strip() or (params.target_session_key or "").strip()
        if not raw:
            return None
        main_key = self.config.session.main_key.strip() or "main"
        if raw.lower() in {"main", main_key.lower()}:
            return f"agent:{self.config.session.default_agent_id}:{main_key}"
        return raw

    # -- helpers -------------------------------------------------------------

    def _resolve(self, inv: _Invocation, token: str | None) -> RunRecord:
        resolved = resolve_subagent_target(
            inv.runs,
            token,
            now=inv.now,
            window_minutes=self.config.subagents.recent_window_minutes,
        )
        return resolved.unwrap()

    async def _session_entry(self, inv: _Invocation, session_key: str) -> SessionEntry | None:
        try:
            _, entry = await inv.store_cache.load_entry(session_key)
        except SessionStoreError as e:
            log.warning("Session store unavailable", session_key=session_key, error=str(e))
            return None
        return entry

    # -- verbs ---------------------------------------------------------------

    async def _format_list_line(self, inv: _Invocation, index: int, entry: RunRecord) -> str:
        session_entry = await self._session_entry(inv, entry.child_session_key)
        usage = resolve_usage_display(session_entry)
        label = truncate_line(format_run_label(entry, LABEL_MAX_LENGTH), LABEL_MAX_LENGTH)
        task = compact_line(entry.task)
        end = entry.ended_at if entry.ended_at is not None else inv.now
        runtime = format_duration_compact(end - entry.effective_start)
        model = resolve_model_display(session_entry, entry.model)
        details = f"{model}, {runtime}" + (f", {usage}" if usage else "")
        line = f"{index}. {label} ({details}) {resolve_display_status(entry)}"
        if task.lower() != label.lower():
            line += f" - {task}"
        return line

    async def _handle_list(self, inv: _Invocation) -> str:
        window = self.config.subagents.recent_window_minutes
        active, recent = partition_runs(inv.runs, now=inv.now, window_minutes=window)
        lines = ["active subagents:"]
        index = 1
        for bucket, heading in ((active, None), (recent, f"recent (last {window}m):")):
            if heading:
                lines.append(heading)
            if not bucket:
                lines.append("(none)")
            for entry in bucket:
                lines.append(await self._format_list_line(inv, index, entry))
                index += 1
        return "\n".join(lines)

    async def _handle_stop(self, inv: _Invocation) -> str:
        target = inv.tokens[0] if inv.tokens else ""
        if not target:
            usage = "Usage: /subagents stop <id|#|all>" if inv.prefix == COMMAND else "Usage: /kill <id|#|all>"
            raise UsageError(usage)
        if target in {"all", "*"}:
            stopped = await self.stopper.stop_for_requester(inv.requester_key)
            if stopped == 0:
                return "No active subagents to stop."
            return f"⚙️ Stopped {stopped} subagent{'s' if stopped != 1 else ''}."

        entry = self._resolve(inv, target)
        label = format_run_label(entry)
        if not entry.is_active:
            raise AlreadyFinishedError(label)
        stopped = await self.stopper.stop_run(entry)
        if stopped == 0:
            raise AlreadyFinishedError(label)
        nested = stopped - 1
        suffix = f" ({nested} nested subagent{'s' if nested != 1 else ''} stopped)" if nested > 0 else ""
        return f"⚙️ Stop requested for {label}.{suffix}"

    async def _handle_info(self, inv: _Invocation) -> str:
        target = inv.tokens[0] if inv.tokens else ""
        if not target:
            raise UsageError("ℹ️ Usage: /subagents info <id|#>")
        run = self._resolve(inv, target)
        session_entry = await self._session_entry(inv, run.child_session_key)
        if run.started_at:
            end = run.ended_at if run.ended_at is not None else inv.now
            runtime = format_duration_compact(end - run.started_at)
        else:
            runtime = "n/a"
        if run.outcome:
            outcome = run.outcome.status + (f" ({run.outcome.error})" if run.outcome.error else "")
        else:
            outcome = "n/a"
        lines = [
            "ℹ️ Subagent info",
            f"Status: {resolve_display_status(run)}",
            f"Label: {format_run_label(run)}",
            f"Task: {run.task}",
            f"Run: {run.run_id}",
            f"Session: {run.child_session_key}",
            f"SessionId: {(session_entry.session_id if session_entry else None) or 'n/a'}",
            f"Transcript: {(session_entry.session_file if session_entry else None) or 'n/a'}",
            f"Runtime: {runtime}",
            f"Created: {format_timestamp_with_age(run.created_at, inv.now)}",
            f"Started: {format_timestamp_with_age(run.started_at, inv.now)}",
            f"Ended: {format_timestamp_with_age(run.ended_at, inv.now)}",
            f"Cleanup: {run.cleanup}",
        ]
        if run.archive_at_ms:
            lines.append(f"Archive: {format_timestamp_with_age(run.archive_at_ms, inv.now)}")
        if run.cleanup_handled:
            lines.append("Cleanup handled: yes")
        lines.append(f"Outcome: {outcome}")
        return "\n".join(lines)

    async def _handle_log(self, inv: _Invocation) -> str:
        target = inv.tokens[0] if inv.tokens else ""
        if not target:
            raise UsageError("📜 Usage: /subagents log <id|#> [limit] [tools]")
        options = inv.tokens[1:]
        include_tools = any(token.lower() == "tools" for token in options)
        limit_token = next((token for token in options if re.fullmatch(r"\d+", token)), None)
        cfg = self.config.subagents
        limit = cfg.history_default_limit
        if limit_token is not None:
            limit = min(cfg.history_max_limit, max(1, int(limit_token)))
        run = self._resolve(inv, target)

        messages = await self.backend.history(
            run.child_session_key,
            limit,
            timeout_ms=self.config.gateway.timeout_ms,
        )
        filtered = messages if include_tools else strip_tool_messages(messages)
        lines = format_log_lines(filtered)
        header = f"📜 Subagent log: {format_run_label(run)}"
        if not lines:
            return f"{header}\n(no messages)"
        return "\n".join([header, *lines])

    async def _handle_send(self, inv: _Invocation) -> str:
        target = inv.tokens[0] if inv.tokens else ""
        message = " ".join(inv.tokens[1:]).strip()
        if not target or not message:
            if not inv.steer_requested:
                raise UsageError("Usage: /subagents send <id|#> <message>")
            if inv.prefix == COMMAND:
                raise UsageError("Usage: /subagents steer <id|#> <message>")
            raise UsageError(f"Usage: {inv.prefix} <id|#> <message>")

        run = self._resolve(inv, target)
        label = format_run_label(run)
        if not run.is_active:
            raise AlreadyFinishedError(label)

        session_entry = await self._session_entry(inv, run.child_session_key)
        session_id = (session_entry.session_id or "").strip() if session_entry else ""

        if inv.steer_requested:
            attempt = await self.coordinator.steer(run, message, session_id or None)
            return f"steered {label} (run {(attempt.next_run_id or '')[:8]})."

        outcome = await self.coordinator.send(run, message)
        short_id = outcome.run_id[:8]
        if outcome.wait.status in {"timeout", "running"}:
            return f"⏳ Subagent still running (run {short_id})."
        if outcome.wait.status == "error":
            return f"⚠️ Subagent error: {outcome.wait.error or 'unknown error'} (run {short_id})."

        history = await self.backend.history(
            run.child_session_key,
            self.config.subagents.send_history_limit,
            timeout_ms=self.config.gateway.timeout_ms,
        )
        for item in reversed(strip_tool_messages(history)):
            reply_text = extract_assistant_text(item)
            if reply_text:
                return reply_text
        return f"✅ Sent to {label} (run {short_id})."
