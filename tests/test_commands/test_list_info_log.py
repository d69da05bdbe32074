import re

import pytest

from subagent_control.commands import CommandParams
from subagent_control.models import RunOutcome, now_ms
from subagent_control.resolver import resolve_subagent_target

MINUTE = 60_000


def _params(text: str, **kwargs) -> CommandParams:
    return CommandParams(command_body=text, session_key="main", **kwargs)


@pytest.mark.asyncio
async def test_non_subagent_text_is_ignored(handler):
    assert await handler.handle(_params("/status")) is None
    assert await handler.handle(_params("/subagentsx list")) is None
    assert await handler.handle(_params("/subagents list"), allow_text_commands=False) is None


@pytest.mark.asyncio
async def test_unauthorized_sender_is_silently_stopped(handler, backend):
    result = await handler.handle(_params("/kill all", is_authorized_sender=False, sender_id="u-9"))

    assert result is not None
    assert result.should_continue is False
    assert result.reply is None
    assert backend.calls == []


@pytest.mark.asyncio
async def test_missing_session_key(handler):
    result = await handler.handle(CommandParams(command_body="/subagents list"))
    assert result.reply == "⚠️ Missing session key."


@pytest.mark.asyncio
async def test_unknown_action_and_help_show_usage(handler):
    unknown = await handler.handle(_params("/subagents dance"))
    help_result = await handler.handle(_params("/subagents help"))

    assert unknown.reply.startswith("Subagents\nUsage:")
    assert help_result.reply == unknown.reply
    assert "- /tell <id|#> <message>" in help_result.reply


@pytest.mark.asyncio
async def test_list_empty(handler):
    result = await handler.handle(_params("/subagents"))

    assert result.should_continue is False
    assert result.reply == "active subagents:\n(none)\nrecent (last 30m):\n(none)"


@pytest.mark.asyncio
async def test_list_renders_model_usage_and_task(handler, seed, run_factory, put_session_entry):
    now = now_ms()
    run = run_factory("r-scout", label="Scout", task="map the repo", created_at=now - MINUTE)
    seed(run)
    await put_session_entry(
        run.child_session_key,
        session_id="sess-1",
        model="anthropic/claude-test",
        input_tokens=1500,
        output_tokens=500,
    )

    result = await handler.handle(_params("/subagents list"))
    lines = result.reply.splitlines()

    assert lines[0] == "active subagents:"
    assert lines[1].startswith("1. Scout (claude-test, ")
    assert "tokens 2k (in 1.5k / out 500)" in lines[1]
    assert lines[1].endswith(") running - map the repo")
    assert lines[2:] == ["recent (last 30m):", "(none)"]


@pytest.mark.asyncio
async def test_list_numbering_matches_numeric_resolution(handler, registry, seed, run_factory, requester):
    now = now_ms()
    seed(
        run_factory("a1", label="alpha", created_at=now - 5 * MINUTE, ended_at=now - 2 * MINUTE),
        run_factory("b2", label="beta", created_at=now - 9 * MINUTE),
        run_factory("c3", label="gamma", created_at=now - 3 * MINUTE),
        run_factory(
            "d4",
            label="delta",
            created_at=now - 20 * MINUTE,
            ended_at=now - MINUTE,
            outcome=RunOutcome(status="error", error="boom"),
        ),
        run_factory("e5", label="old", created_at=now - 300 * MINUTE, ended_at=now - 200 * MINUTE),
    )

    result = await handler.handle(_params("/subagents list"))
    numbered = [line for line in result.reply.splitlines() if re.match(r"^\d+\. ", line)]
    runs = registry.list_runs_for_requester(requester)

    assert len(numbered) == 4
    for line in numbered:
        index, rest = line.split(". ", 1)
        resolved = resolve_subagent_target(runs, index, now=now)
        assert rest.startswith(resolved.entry.label + " ")
    assert numbered[0].startswith("1. gamma")
    assert "failed" in next(line for line in numbered if "delta" in line)
    assert not any("old" in line for line in numbered)


@pytest.mark.asyncio
async def test_info_usage_and_resolution_errors(handler, backend):
    usage = await handler.handle(_params("/subagents info"))
    unknown = await handler.handle(_params("/subagents info nobody"))

    assert usage.reply == "ℹ️ Usage: /subagents info <id|#>"
    assert unknown.reply == "⚠️ Unknown subagent id: nobody"
    assert backend.calls == []


@pytest.mark.asyncio
async def test_info_report_fields(handler, seed, run_factory, put_session_entry):
    now = now_ms()
    run = run_factory(
        "run-info-1",
        label="Researcher",
        task="collect sources",
        created_at=now - 10 * MINUTE,
        started_at=now - 9 * MINUTE,
        ended_at=now - 2 * MINUTE,
        outcome=RunOutcome(status="error", error="rate limited"),
    )
    run.archive_at_ms = now + 30 * MINUTE
    seed(run)
    await put_session_entry(run.child_session_key, session_id="sess-42", session_file="/tmp/t.jsonl")

    result = await handler.handle(_params("/subagents info researcher"))
    lines = result.reply.splitlines()

    assert lines[0] == "ℹ️ Subagent info"
    assert "Status: failed" in lines
    assert "Label: Researcher" in lines
    assert "Task: collect sources" in lines
    assert "Run: run-info-1" in lines
    assert f"Session: {run.child_session_key}" in lines
    assert "SessionId: sess-42" in lines
    assert "Transcript: /tmp/t.jsonl" in lines
    assert "Runtime: 7m" in lines
    assert "Cleanup: keep" in lines
    assert any(line.startswith("Archive: ") and line.endswith("(in 30m)") for line in lines)
    assert lines[-1] == "Outcome: error (rate limited)"


@pytest.mark.asyncio
async def test_info_without_session_entry_uses_placeholders(handler, seed, run_factory):
    seed(run_factory("r1", label="solo"))

    result = await handler.handle(_params("/subagents info 1"))

    assert "SessionId: n/a" in result.reply
    assert "Transcript: n/a" in result.reply
    assert "Ended: n/a" in result.reply
    assert result.reply.endswith("Outcome: n/a")


@pytest.mark.asyncio
async def test_log_filters_tools_and_clamps_limit(handler, backend, seed, run_factory):
    run = seed(run_factory("r1", label="writer"))[0]
    backend.messages = [
        {"role": "user", "content": "write a haiku"},
        {"role": "assistant", "content": [{"type": "toolCall", "name": "read"}]},
        {"role": "toolResult", "toolName": "read", "content": [{"type": "text", "text": "file body"}]},
        {"role": "assistant", "content": [{"type": "text", "text": "<think>hmm</think>Autumn  moon"}]},
    ]

    result = await handler.handle(_params("/subagents log writer 500"))

    assert backend.calls[-1] == ("history", {"session_key": run.child_session_key, "limit": 200})
    assert result.reply == "📜 Subagent log: writer\nUser: write a haiku\nAssistant: Autumn moon"

    with_tools = await handler.handle(_params("/subagents log 1 tools 0"))
    assert backend.calls[-1][1]["limit"] == 1
    assert "Tool read: file body" in with_tools.reply


@pytest.mark.asyncio
async def test_log_default_limit_and_empty_history(handler, backend, seed, run_factory):
    seed(run_factory("r1", label="quiet"))

    result = await handler.handle(_params("/subagents log quiet"))

    assert backend.calls[-1][1]["limit"] == 20
    assert result.reply == "📜 Subagent log: quiet\n(no messages)"


@pytest.mark.asyncio
async def test_log_relays_backend_failure(handler, backend, seed, run_factory):
    seed(run_factory("r1", label="quiet"))
    backend.history_error = "gateway unavailable"

    result = await handler.handle(_params("/subagents log quiet"))

    assert result.should_continue is False
    assert result.reply == "log failed: gateway unavailable"
