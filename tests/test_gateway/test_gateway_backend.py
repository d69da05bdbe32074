import httpx
import pytest

from subagent_control.config import GatewayConfig
from subagent_control.exceptions import BackendError, BackendTimeoutError
from subagent_control.gateway import GatewayBackend


class _FakeResponse:
    def __init__(self, body, status_code: int = 200):
        self._body = body
        self.status_code = status_code

    @property
    def is_error(self) -> bool:
        return self.status_code >= 400

    def json(self):
        if isinstance(self._body, Exception):
            raise self._body
        return self._body


class _FakeClient:
    def __init__(self, response=None, error: Exception | None = None):
        self._response = response
        self._error = error
        self.requests: list[dict] = []
        self.closed = False

    async def post(self, url: str, headers=None, json=None, timeout=None):
        self.requests.append({"url": url, "headers": headers, "json": json, "timeout": timeout})
        if self._error is not None:
            raise self._error
        return self._response

    async def aclose(self) -> None:
        self.closed = True


def _backend(client: _FakeClient, **overrides) -> GatewayBackend:
    cfg = GatewayConfig(base_url="http://gateway.test/", **overrides)
    return GatewayBackend(cfg, client=client)


@pytest.mark.asyncio
async def test_dispatch_posts_rpc_envelope():
    client = _FakeClient(_FakeResponse({"ok": True, "payload": {"runId": "run-123"}}))
    backend = _backend(client, token="tok")

    run_id = await backend.dispatch(
        message="hello",
        session_key="agent:main:subagent:a",
        idempotency_key="idem-1",
        deliver=False,
        channel="internal",
        lane="subagent",
        timeout_ms=2500,
    )

    assert run_id == "run-123"
    request = client.requests[0]
    assert request["url"] == "http://gateway.test/rpc"
    assert request["headers"] == {"Authorization": "Bearer tok"}
    assert request["timeout"] == 2.5
    assert request["json"] == {
        "method": "agent",
        "params": {
            "message": "hello",
            "sessionKey": "agent:main:subagent:a",
            "idempotencyKey": "idem-1",
            "deliver": False,
            "channel": "internal",
            "lane": "subagent",
        },
    }


@pytest.mark.asyncio
async def test_dispatch_without_run_id_returns_none():
    client = _FakeClient(_FakeResponse({"ok": True, "payload": {}}))
    backend = _backend(client)

    run_id = await backend.dispatch(
        message="hi",
        session_key="k",
        idempotency_key="idem",
        deliver=False,
        channel="internal",
        lane="subagent",
    )

    assert run_id is None
    assert client.requests[0]["headers"] == {}
    assert client.requests[0]["timeout"] == 10.0


@pytest.mark.asyncio
async def test_error_envelope_raises_backend_error():
    client = _FakeClient(_FakeResponse({"ok": False, "error": {"message": "unknown session"}}, status_code=404))
    backend = _backend(client)

    with pytest.raises(BackendError, match="unknown session") as excinfo:
        await backend.cancel("sess-1")
    assert excinfo.value.method == "agent.abort"


@pytest.mark.asyncio
async def test_non_json_error_response_reports_status():
    client = _FakeClient(_FakeResponse(ValueError("no json"), status_code=502))
    backend = _backend(client)

    with pytest.raises(BackendError, match="HTTP 502"):
        await backend.history("k", 10)


@pytest.mark.asyncio
async def test_timeout_maps_to_backend_timeout():
    client = _FakeClient(error=httpx.ReadTimeout("slow"))
    backend = _backend(client)

    with pytest.raises(BackendTimeoutError) as excinfo:
        await backend.wait("run-1", 30_000, call_timeout_ms=32_000)
    assert client.requests[0]["json"]["params"] == {"runId": "run-1", "timeoutMs": 30_000}
    assert client.requests[0]["timeout"] == 32.0
    assert isinstance(excinfo.value, BackendError)


@pytest.mark.asyncio
async def test_transport_error_maps_to_backend_error():
    client = _FakeClient(error=httpx.ConnectError("refused"))
    backend = _backend(client)

    with pytest.raises(BackendError, match="refused"):
        await backend.cancel("sess-1")


@pytest.mark.asyncio
async def test_wait_and_history_payloads():
    backend = _backend(_FakeClient(_FakeResponse({"ok": True, "payload": {"status": "Error", "error": "crash"}})))
    waited = await backend.wait("run-1", 1000)
    assert waited.status == "error"
    assert waited.error == "crash"

    messages = [{"role": "user", "content": "hi"}]
    backend = _backend(_FakeClient(_FakeResponse({"ok": True, "payload": {"messages": messages}})))
    assert await backend.history("k", 5) == messages

    backend = _backend(_FakeClient(_FakeResponse({"ok": True, "payload": {"messages": "nope"}})))
    assert await backend.history("k", 5) == []


@pytest.mark.asyncio
async def test_close_releases_client():
    client = _FakeClient(_FakeResponse({"ok": True}))
    backend = _backend(client)

    await backend.close()

    assert client.closed is True
