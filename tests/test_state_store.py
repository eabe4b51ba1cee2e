#!/usr/bin/env python3
"""
StateStore tests for both backends (fake Redis client + file fallback).
"""

from __future__ import annotations

from pathlib import Path
from types import SimpleNamespace

import pytest


class _FakeRedisClient:
    def __init__(self):
        self._kv: dict[str, str] = {}
        self._hashes: dict[str, dict[str, str]] = {}

    @classmethod
    def from_url(cls, *args, **kwargs):
        return cls()

    def ping(self):
        return True

    def get(self, key: str):
        return self._kv.get(key)

    def set(self, key: str, value: str, nx: bool = False, ex: int | None = None):
        if nx and key in self._kv:
            return False
        self._kv[key] = value
        return True

    def eval(self, script: str, numkeys: int, key: str, token: str):
        if self._kv.get(key) == token:
            del self._kv[key]
            return 1
        return 0

    def hget(self, name: str, key: str):
        return self._hashes.get(name, {}).get(key)

    def hset(self, name: str, key: str, value: str):
        self._hashes.setdefault(name, {})[key] = value
        return 1

    def hsetnx(self, name: str, key: str, value: str):
        bucket = self._hashes.setdefault(name, {})
        if key in bucket:
            return 0
        bucket[key] = value
        return 1

    def hdel(self, name: str, key: str):
        return 1 if self._hashes.get(name, {}).pop(key, None) is not None else 0

    def hvals(self, name: str):
        return list(self._hashes.get(name, {}).values())

    def hincrby(self, name: str, key: str, amount: int = 1):
        bucket = self._hashes.setdefault(name, {})
        bucket[key] = str(int(bucket.get(key, 0)) + amount)
        return int(bucket[key])


class _FailingRedisClient(_FakeRedisClient):
    def ping(self):
        raise ConnectionError("redis down")


def _set_fake_redis(monkeypatch, client_cls=_FakeRedisClient):
    from core import state_store
    monkeypatch.setattr(state_store, "redis", SimpleNamespace(Redis=client_cls, RedisError=Exception))
    return state_store


@pytest.fixture
def redis_store(monkeypatch, tmp_path: Path):
    state_store = _set_fake_redis(monkeypatch)
    monkeypatch.setenv("STATE_BACKEND", "redis")
    monkeypatch.setenv("REDIS_URL", "redis://fake:6379/0")
    monkeypatch.setenv("STATE_REDIS_PREFIX", "test")
    return state_store.StateStore(hive_dir=tmp_path / ".hive-mind")


def test_redis_backend_documents_and_counters(redis_store):
    assert redis_store.active_backend == "redis"

    redis_store.put("meetings", "evt-1", {"status": "scheduled"})
    assert redis_store.get("meetings", "evt-1") == {"status": "scheduled"}
    assert redis_store._redis_client.hget("test:doc:meetings", "evt-1") is not None

    assert redis_store.put_if_absent("meetings", "evt-1", {"status": "canceled"}) is False
    assert redis_store.put_if_absent("meetings", "evt-2", {"status": "canceled"}) is True
    assert len(redis_store.list_documents("meetings")) == 2

    redis_store.delete("meetings", "evt-2")
    assert redis_store.get("meetings", "evt-2") is None

    assert redis_store.incr("admission_counts", "email:2026-01-20") == 1
    assert redis_store.incr("admission_counts", "email:2026-01-20", 2) == 3
    assert redis_store.get_counter("admission_counts", "email:2026-01-20") == 3
    assert redis_store.get_counter("admission_counts", "email:2026-01-21") == 0


def test_redis_lock_is_exclusive_and_token_checked(redis_store):
    token = redis_store.acquire_lock("admission:email", ttl_seconds=30)
    assert token
    assert redis_store.acquire_lock("admission:email", ttl_seconds=30) is None

    redis_store.release_lock("admission:email", "not-the-token")
    assert redis_store.acquire_lock("admission:email", ttl_seconds=30) is None

    redis_store.release_lock("admission:email", token)
    assert redis_store.acquire_lock("admission:email", ttl_seconds=30)


def test_redis_unreachable_falls_back_to_file(monkeypatch, tmp_path: Path):
    state_store = _set_fake_redis(monkeypatch, _FailingRedisClient)
    monkeypatch.setenv("STATE_BACKEND", "redis")
    monkeypatch.setenv("REDIS_URL", "redis://fake:6379/0")

    store = state_store.StateStore(hive_dir=tmp_path / ".hive-mind")

    assert store.active_backend == "file"
    store.put("approvals", "out_1", {"status": "pending"})
    assert (tmp_path / ".hive-mind" / "state" / "doc_approvals.json").exists()


def test_redis_without_url_uses_file(monkeypatch, tmp_path: Path):
    state_store = _set_fake_redis(monkeypatch)
    monkeypatch.setenv("STATE_BACKEND", "redis")

    assert state_store.StateStore(hive_dir=tmp_path / ".hive-mind").active_backend == "file"


def test_file_backend_persists_across_instances(store, tmp_path: Path):
    from core.state_store import StateStore

    store.put("meetings", "evt-1", {"status": "scheduled"})
    store.incr("counts", "a")

    reopened = StateStore(hive_dir=tmp_path / ".hive-mind")
    assert reopened.get("meetings", "evt-1") == {"status": "scheduled"}
    assert reopened.get_counter("counts", "a") == 1
    assert reopened.put_if_absent("meetings", "evt-1", {}) is False


def test_file_backend_recovers_from_corrupt_file(store, tmp_path: Path):
    path = tmp_path / ".hive-mind" / "state" / "doc_meetings.json"
    path.write_text("{not json", encoding="utf-8")

    assert store.get("meetings", "evt-1") is None
    assert path.with_suffix(".json.bak").exists()
    store.put("meetings", "evt-1", {"ok": True})
    assert store.get("meetings", "evt-1") == {"ok": True}


def test_file_lock_expires(store):
    token = store.acquire_lock("event:x", ttl_seconds=5)
    assert store.acquire_lock("event:x", ttl_seconds=5) is None

    # Simulate the TTL running out.
    store._local_locks["event:x"] = (token, 0.0)
    assert store.acquire_lock("event:x", ttl_seconds=5) not in (None, token)
