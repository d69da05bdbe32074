"""Helpers for turning backend chat history into reply text."""

from __future__ import annotations

import re
from typing import Any

TOOL_ROLES = {"tool", "toolResult", "tool_result"}
TOOL_BLOCK_TYPES = {"toolCall", "tool_use", "toolUse", "tool_call", "functionCall"}

_THINKING_BLOCK_RE = re.compile(r"<\s*(think|thinking)\b[^>]*>.*?<\s*/\s*\1\s*>", re.IGNORECASE | re.DOTALL)
_FINAL_TAG_RE = re.compile(r"<\s*/?\s*final\s*>", re.IGNORECASE)


def sanitize_text_content(text: str) -> str:
    """Drop reasoning blocks and wrapper tags from assistant text."""
    cleaned = _THINKING_BLOCK_RE.sub("", text)
    return _FINAL_TAG_RE.sub("", cleaned)


def normalize_message_text(text: str) -> str:
    return re.sub(r"\s+", " ", text).strip()


def _is_tool_message(message: Any) -> bool:
    if not isinstance(message, dict):
        return False
    if message.get("role") in TOOL_ROLES:
        return True
    content = message.get("content")
    if message.get("role") == "assistant" and isinstance(content, list) and content:
        return all(
            isinstance(block, dict) and block.get("type") in TOOL_BLOCK_TYPES
            for block in content
        )
    return False


def strip_tool_messages(messages: list[Any]) -> list[Any]:
    return [message for message in messages if not _is_tool_message(message)]


def extract_message_text(message: Any) -> tuple[str, str] | None:
    """Return ``(role, text)`` for a history message, or None when it has no text."""
    if not isinstance(message, dict):
        return None
    role = message.get("role") if isinstance(message.get("role"), str) else ""
    sanitize = role == "assistant"
    content = message.get("content")
    if isinstance(content, str):
        text = normalize_message_text(sanitize_text_content(content) if sanitize else content)
        return (role, text) if text else None
    if not isinstance(content, list):
        return None
    chunks: list[str] = []
    for block in content:
        if not isinstance(block, dict) or block.get("type") != "text":
            continue
        value = block.get("text")
        if not isinstance(value, str):
            continue
        if sanitize:
            value = sanitize_text_content(value)
        if value.strip():
            chunks.append(value)
    joined = normalize_message_text(" ".join(chunks))
    return (role, joined) if joined else None


def extract_assistant_text(message: Any) -> str | None:
    extracted = extract_message_text(message)
    if extracted is None or extracted[0] != "assistant":
        return None
    return extracted[1]


def _role_label(message: Any, role: str) -> str:
    if role == "assistant":
        return "Assistant"
    if role in TOOL_ROLES:
        name = ""
        if isinstance(message, dict):
            name = str(message.get("toolName") or message.get("name") or "").strip()
        return f"Tool {name}" if name else "Tool"
    return "User"


def format_log_lines(messages: list[Any]) -> list[str]:
    lines: list[str] = []
    for message in messages:
        extracted = extract_message_text(message)
        if extracted is None:
            continue
        role, text = extracted
        lines.append(f"{_role_label(message, role)}: {text}")
    return lines
