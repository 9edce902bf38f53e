from unittest.mock import AsyncMock

import pytest

from keyrotor import AsyncRotationManager, NoActiveKeyError, RotationManager


class FakeResponse:
    def __init__(self, status=200, headers=None):
        self.status = status
        self.headers = headers or {}
        self.closed = False

    async def release(self):
        self.closed = True


@pytest.mark.asyncio
async def test_aiohttp_header_injection_and_release():
    manager = AsyncRotationManager()
    await manager.register_key("svc", "T")
    session = AsyncMock()
    session.request.return_value = FakeResponse(200)

    auth = manager.auth("svc")
    headers = {"Accept": "application/json"}
    async with auth.get(session, "https://example.com", headers=headers) as resp:
        assert isinstance(resp, FakeResponse)
        args, kwargs = session.request.call_args
        assert args == ("GET", "https://example.com")
        assert kwargs["headers"]["Authorization"] == "Bearer T"
        assert kwargs["headers"]["Accept"] == "application/json"
    assert resp.closed
    entry = (await manager.get_keys("svc"))[0]
    assert entry.usage_count == 1
    assert entry.failure_count == 0


@pytest.mark.asyncio
async def test_aiohttp_query_injection_awaitable_form():
    manager = AsyncRotationManager()
    await manager.register_key("svc", "T")
    session = AsyncMock()
    session.request.return_value = FakeResponse(500)

    auth = manager.auth("svc", auth_in="query", auth_config=None)
    resp = await auth.request(session, "get", "https://example.com", params={"q": "x"})
    assert resp.status == 500  # noqa: PLR2004
    _, kwargs = session.request.call_args
    assert kwargs["params"] == {"q": "x", "api_key": "T"}
    assert (await manager.get_keys("svc"))[0].failure_count == 1


@pytest.mark.asyncio
async def test_aiohttp_transport_error_records_failure():
    manager = AsyncRotationManager()
    await manager.register_key("svc", "T")
    session = AsyncMock()
    session.request.side_effect = ConnectionError("reset")

    with pytest.raises(ConnectionError):
        await manager.auth("svc").get(session, "https://example.com")
    assert (await manager.get_keys("svc"))[0].failure_count == 1


@pytest.mark.asyncio
async def test_aiohttp_with_sync_manager_and_no_key():
    manager = RotationManager()
    session = AsyncMock()
    with pytest.raises(NoActiveKeyError):
        await manager.auth("svc").get(session, "https://example.com")
    session.request.assert_not_called()

    manager.register_key("svc", "T")
    session.request.return_value = FakeResponse(200)
    await manager.auth("svc").get(session, "https://example.com")
    assert manager.get_keys("svc")[0].usage_count == 1


async def _send_trace(tc, status=None, exc=None):
    import aiohttp  # noqa: PLC0415

    tc.freeze()
    ctx = tc.trace_config_ctx()
    headers = {}
    await tc.on_request_start.send(
        None, ctx, aiohttp.TraceRequestStartParams("GET", "https://example.com", headers)
    )
    if exc is not None:
        await tc.on_request_exception.send(
            None,
            ctx,
            aiohttp.TraceRequestExceptionParams("GET", "https://example.com", headers, exc),
        )
    else:
        await tc.on_request_end.send(
            None,
            ctx,
            aiohttp.TraceRequestEndParams(
                "GET", "https://example.com", headers, FakeResponse(status)
            ),
        )
    return headers


@pytest.mark.asyncio
async def test_aiohttp_trace_config_injects_and_records():
    manager = AsyncRotationManager()
    await manager.register_key("svc", "T1", key_id="a")
    await manager.register_key("svc", "T2", key_id="b")
    auth = manager.auth("svc")

    headers = await _send_trace(auth.trace_config(), status=200)
    assert headers["Authorization"] == "Bearer T1"
    headers = await _send_trace(auth.trace_config(), status=429)
    assert headers["Authorization"] == "Bearer T1"
    await _send_trace(auth.trace_config(), exc=ConnectionError("reset"))

    a, b = await manager.get_keys("svc")
    assert a.usage_count == 3  # noqa: PLR2004
    assert a.failure_count == 2  # noqa: PLR2004
    assert b.usage_count == 0


@pytest.mark.asyncio
async def test_aiohttp_trace_config_rejects_query_placement():
    manager = AsyncRotationManager()
    with pytest.raises(ValueError):
        manager.auth("svc", auth_in="query", auth_config=None).trace_config()


@pytest.mark.asyncio
async def test_aiohttp_session_helper():
    import aiohttp  # noqa: PLC0415

    manager = AsyncRotationManager()
    session = manager.aiohttp_session("svc")
    try:
        assert isinstance(session, aiohttp.ClientSession)
    finally:
        await session.close()
