"""Execution backend (gateway) client.

Every call is a ``{"method", "params"}`` request with its own timeout. The
gateway answers ``{"ok": true, "payload": {...}}`` or
``{"ok": false, "error": {"message": ...}}``.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Protocol

import httpx

from subagent_control.config import GatewayConfig, get_config
from subagent_control.exceptions import BackendError, BackendTimeoutError
from subagent_control.logging import get_logger

log = get_logger(__name__)

INTERNAL_MESSAGE_CHANNEL = "internal"

METHOD_ABORT = "agent.abort"
METHOD_AGENT = "agent"
METHOD_WAIT = "agent.wait"
METHOD_HISTORY = "chat.history"


@dataclass
class WaitResult:
    """Outcome of a bounded wait on a run."""

    status: str  # "running", "done", "error", "timeout"
    error: str | None = None


class ExecutionBackend(Protocol):
    """Remote side that actually runs agent turns."""

    async def cancel(self, session_id: str, *, timeout_ms: int | None = None) -> bool: ...

    async def dispatch(
        self,
        *,
        message: str,
        session_key: str,
        idempotency_key: str,
        deliver: bool,
        channel: str,
        lane: str,
        timeout_ms: int | None = None,
    ) -> str | None: ...

    async def wait(self, run_id: str, timeout_ms: int, *, call_timeout_ms: int | None = None) -> WaitResult: ...

    async def history(self, session_key: str, limit: int, *, timeout_ms: int | None = None) -> list[Any]: ...


class GatewayBackend:
    """httpx client for the gateway RPC endpoint."""

    def __init__(self, config: GatewayConfig | None = None, client: httpx.AsyncClient | None = None):
        cfg = config or get_config().gateway
        self.base_url = (cfg.base_url or "").rstrip("/")
        self.rpc_path = "/" + (cfg.rpc_path or "/rpc").lstrip("/")
        self.token = str(cfg.token or "").strip()
        self.default_timeout_ms = max(1, int(cfg.timeout_ms))
        self._client = client or httpx.AsyncClient()

    async def close(self) -> None:
        await self._client.aclose()

    def _headers(self) -> dict[str, str]:
        if not self.token:
            return {}
        return {"Authorization": f"Bearer {self.token}"}

    async def call(self, method: str, params: dict[str, Any], timeout_ms: int | None = None) -> dict[str, Any]:
        """Issue one RPC and return its payload."""
        effective_timeout = max(1, int(timeout_ms or self.default_timeout_ms))
        try:
            response = await self._client.post(
                f"{self.base_url}{self.rpc_path}",
                headers=self._headers(),
                json={"method": method, "params": params},
                timeout=effective_timeout / 1000.0,
            )
        except httpx.TimeoutException as e:
            raise BackendTimeoutError(method, effective_timeout) from e
        except httpx.HTTPError as e:
            raise BackendError(str(e) or type(e).__name__, method=method) from e

        try:
            body = response.json()
        except ValueError:
            body = None
        if not isinstance(body, dict):
            if response.is_error:
                raise BackendError(f"HTTP {response.status_code}", method=method)
            raise BackendError(f"Invalid gateway response for {method}", method=method)
        if body.get("ok") is not True:
            error = body.get("error")
            if isinstance(error, dict):
                message = str(error.get("message") or "").strip()
            else:
                message = str(error or "").strip()
            raise BackendError(message or f"HTTP {response.status_code}", method=method)
        payload = body.get("payload")
        return payload if isinstance(payload, dict) else {}

    async def cancel(self, session_id: str, *, timeout_ms: int | None = None) -> bool:
        payload = await self.call(METHOD_ABORT, {"sessionId": session_id}, timeout_ms)
        return bool(payload.get("aborted", True))

    async def dispatch(
        self,
        *,
        message: str,
        session_key: str,
        idempotency_key: str,
        deliver: bool,
        channel: str,
        lane: str,
        timeout_ms: int | None = None,
    ) -> str | None:
        payload = await self.call(
            METHOD_AGENT,
            {
                "message": message,
                "sessionKey": session_key,
                "idempotencyKey": idempotency_key,
                "deliver": deliver,
                "channel": channel,
                "lane": lane,
            },
            timeout_ms,
        )
        run_id = payload.get("runId")
        return run_id if isinstance(run_id, str) and run_id else None

    async def wait(self, run_id: str, timeout_ms: int, *, call_timeout_ms: int | None = None) -> WaitResult:
        payload = await self.call(
            METHOD_WAIT,
            {"runId": run_id, "timeoutMs": timeout_ms},
            call_timeout_ms or timeout_ms,
        )
        status = str(payload.get("status") or "done").strip().lower()
        error = payload.get("error")
        return WaitResult(status=status, error=error if isinstance(error, str) else None)

    async def history(self, session_key: str, limit: int, *, timeout_ms: int | None = None) -> list[Any]:
        payload = await self.call(METHOD_HISTORY, {"sessionKey": session_key, "limit": limit}, timeout_ms)
        messages = payload.get("messages")
        return messages if isinstance(messages, list) else []
