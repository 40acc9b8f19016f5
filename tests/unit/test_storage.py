import json

import pytest

import storage.redis_kv as redis_kv
from storage.kv import JsonFileStorage, MemoryStorage
from storage.redis_kv import RedisStorage, key

from tests.helpers.fakes import FakeRedisModule


@pytest.mark.asyncio
async def test_memory_storage_roundtrip():
    s = MemoryStorage({"a": "1"})
    assert await s.get("a") == "1"
    await s.set("b", "2")
    await s.delete("a")
    await s.delete("missing")
    assert await s.get("a") is None
    assert await s.get("b") == "2"

@pytest.mark.asyncio
async def test_json_file_storage_persists_between_instances(tmp_path):
    path = tmp_path / "nested" / "store.json"
    s = JsonFileStorage(path)
    assert await s.get("k") is None

    await s.set("k", '["x"]')
    await s.set("other", "v")
    assert json.loads(path.read_text(encoding="utf-8")) == {"k": '["x"]', "other": "v"}

    again = JsonFileStorage(path)
    assert await again.get("k") == '["x"]'
    await again.delete("other")
    assert await JsonFileStorage(path).get("other") is None
    assert not path.with_suffix(".json.tmp").exists()

@pytest.mark.asyncio
async def test_json_file_storage_unreadable_file_reads_empty(tmp_path):
    path = tmp_path / "store.json"
    path.write_text("{oops", encoding="utf-8")
    s = JsonFileStorage(path)
    assert await s.get("k") is None
    # next write replaces the garbage
    await s.set("k", "v")
    assert await s.get("k") == "v"

def test_redis_key_prefix():
    assert key("dismissed_alert_ids:42") == "subtrack:dismissed_alert_ids:42"
    assert key("x", prefix="test") == "test:x"

@pytest.mark.asyncio
async def test_redis_storage_uses_prefixed_keys(monkeypatch):
    fake = FakeRedisModule()
    monkeypatch.setattr(redis_kv, "redis", fake)

    s = RedisStorage("redis://fake:6379/0")
    await s.set("subscriptions:u1", "[]")
    assert fake.last_url == "redis://fake:6379/0"
    assert fake.instance.data == {"subtrack:subscriptions:u1": "[]"}
    assert await s.get("subscriptions:u1") == "[]"

    await s.delete("subscriptions:u1")
    assert await s.get("subscriptions:u1") is None

    await s.close()
    assert fake.instance.closed is True

@pytest.mark.asyncio
async def test_redis_storage_decodes_bytes(monkeypatch):
    fake = FakeRedisModule()
    fake.instance.data["subtrack:k"] = b"hello"
    monkeypatch.setattr(redis_kv, "redis", fake)
    assert await RedisStorage("redis://fake").get("k") == "hello"

@pytest.mark.asyncio
async def test_redis_close_without_client_is_noop(monkeypatch):
    monkeypatch.setattr(redis_kv, "redis", FakeRedisModule())
    await RedisStorage("redis://fake").close()
