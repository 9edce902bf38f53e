import asyncio

import pytest

from keyrotor import AsyncRotationManager, KeyStore, MemoryBlobStore

DAY = 24 * 60 * 60


@pytest.mark.asyncio
async def test_register_and_select():
    store = KeyStore(MemoryBlobStore())
    manager = AsyncRotationManager(store)
    entry = await manager.register_key("svc", "s1")
    await manager.register_key("svc", "s2")
    assert await manager.get_active_key("svc") == "s1"
    assert store.load("svc")[0].usage_count == 1
    assert [e.key_id for e in await manager.get_keys("svc")][0] == entry.key_id


@pytest.mark.asyncio
async def test_usage_cap_scenario():
    manager = AsyncRotationManager()
    entry = await manager.register_key("X", "secret", max_usage=2)
    for _ in range(2):
        assert await manager.get_active_key("X") == "secret"
        await manager.record_success("X", entry.key_id)
    assert await manager.get_active_key("X") is None


@pytest.mark.asyncio
async def test_failure_cap_scenario():
    manager = AsyncRotationManager()
    entry = await manager.register_key("X", "secret", max_failures=3)
    for _ in range(3):
        await manager.record_failure("X", entry.key_id)
    status = await manager.get_rotation_status("X")
    assert status.active_keys == 0
    assert status.total_keys == 1
    assert await manager.get_active_key("X") is None


@pytest.mark.asyncio
async def test_rotation_scenario(clock):
    manager = AsyncRotationManager(clock=clock)
    entry = await manager.register_key("X", "secret")
    clock.advance(7 * DAY + 1)
    assert await manager.needs_rotation("X")
    assert await manager.rotate_keys("X", ["fresh"]) == [entry.key_id]
    pool = await manager.get_keys("X")
    assert [e.active for e in pool] == [False, True]
    assert await manager.get_active_key("X") == "fresh"


@pytest.mark.asyncio
async def test_unregistered_service_returns_none():
    blobs = MemoryBlobStore()
    manager = AsyncRotationManager(blobs)
    assert await manager.get_active_key("unregistered-service") is None
    assert blobs.keys() == []


@pytest.mark.asyncio
async def test_concurrent_selection_counts_every_use():
    manager = AsyncRotationManager()
    await manager.register_key("svc", "s1")
    results = await asyncio.gather(*(manager.get_active_key("svc") for _ in range(100)))
    assert results == ["s1"] * 100
    assert (await manager.get_keys("svc"))[0].usage_count == 100  # noqa: PLR2004


@pytest.mark.asyncio
async def test_clear_and_services():
    manager = AsyncRotationManager()
    await manager.register_key("a", "sa")
    await manager.register_key("b", "sb")
    assert await manager.get_all_services() == ["a", "b"]
    await manager.clear_keys("a")
    assert await manager.get_all_services() == ["b"]
    await manager.clear_all_keys()
    assert await manager.get_all_services() == []


@pytest.mark.asyncio
async def test_from_env(monkeypatch):
    monkeypatch.setenv("LLM_KEYS", "k1,k2")
    manager = await AsyncRotationManager.from_env("llm-api", names=["LLM_KEYS"])
    assert [e.key_id for e in await manager.get_keys("llm-api")] == ["LLM_KEYS_1", "LLM_KEYS_2"]
