import httpx
import pytest

from keyrotor import AsyncRotationManager, NoActiveKeyError, RotationManager


def test_httpx_sync_injection_and_success():
    manager = RotationManager()
    manager.register_key("svc", "T")

    def handler(request):
        assert request.headers["Authorization"] == "Bearer T"
        return httpx.Response(200, json={"ok": True})

    with manager.httpx_client("svc", transport=httpx.MockTransport(handler)) as client:
        resp = client.get("https://example.com")
    assert resp.status_code == 200  # noqa: PLR2004
    entry = manager.get_keys("svc")[0]
    assert entry.usage_count == 1
    assert entry.failure_count == 0


def test_httpx_sync_429_is_recorded_once_without_retry():
    manager = RotationManager()
    manager.register_key("svc", "T1")
    manager.register_key("svc", "T2")
    seen = []

    def handler(request):
        seen.append(request.headers["Authorization"])
        return httpx.Response(429)

    with httpx.Client(auth=manager.auth("svc"), transport=httpx.MockTransport(handler)) as client:
        resp = client.get("https://example.com")
    assert resp.status_code == 429  # noqa: PLR2004
    assert seen == ["Bearer T1"]
    first, second = manager.get_keys("svc")
    assert first.failure_count == 1
    assert second.usage_count == 0


def test_httpx_sync_query_injection():
    manager = RotationManager()
    manager.register_key("svc", "T")

    def handler(request):
        assert request.url.params["api_key"] == "T"
        assert request.url.params["q"] == "1"
        return httpx.Response(200)

    auth = manager.auth("svc", auth_in="query", auth_config=None)
    with httpx.Client(auth=auth, transport=httpx.MockTransport(handler)) as client:
        resp = client.get("https://example.com", params={"q": "1"})
    assert resp.status_code == 200  # noqa: PLR2004


def test_httpx_sync_without_key_raises():
    manager = RotationManager()
    with httpx.Client(
        auth=manager.auth("svc"), transport=httpx.MockTransport(lambda r: httpx.Response(200))
    ) as client, pytest.raises(NoActiveKeyError):
        client.get("https://example.com")


@pytest.mark.asyncio
async def test_httpx_async_injection_and_failure():
    manager = AsyncRotationManager()
    await manager.register_key("svc", "T", max_failures=1)

    async def handler(request):
        assert request.headers["Authorization"] == "Bearer T"
        return httpx.Response(401)

    async with manager.httpx_client("svc", transport=httpx.MockTransport(handler)) as client:
        resp = await client.get("https://example.com")
    assert resp.status_code == 401  # noqa: PLR2004
    status = await manager.get_rotation_status("svc")
    assert status.active_keys == 0


@pytest.mark.asyncio
async def test_httpx_async_success():
    manager = AsyncRotationManager()
    await manager.register_key("svc", "T")

    async with manager.httpx_client(
        "svc", transport=httpx.MockTransport(lambda r: httpx.Response(204))
    ) as client:
        await client.get("https://example.com")
    entry = (await manager.get_keys("svc"))[0]
    assert entry.usage_count == 1
    assert entry.failure_count == 0
