#!/usr/bin/env python3
"""
Durable state storage for admission counters, webhook events and records.

Supports:
- Redis backend (hashes per namespace, atomic HINCRBY / HSETNX)
- File backend fallback when Redis is unavailable (one JSON file per namespace)
- Distributed locks for the admission and dedupe paths
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
import time
import uuid
from pathlib import Path
from typing import Any, Dict, List, Optional

import redis


logger = logging.getLogger("state_store")

# Record namespaces shared by handlers, the send pipeline and the digest.
MEETINGS_NS = "meetings"
TRANSCRIPTS_NS = "transcripts"
CLASSIFICATIONS_NS = "reply_classifications"
PHRASE_LIBRARY_NS = "phrase_library"
APPROVALS_NS = "approvals"
SENT_OUTREACH_NS = "sent_outreach"
NOTIFICATIONS_NS = "notifications"


class StateStore:
    """
    Namespaced document store with counters and locks.

    Key convention (Redis):
    - {prefix}:doc:{namespace}        hash of key -> JSON document
    - {prefix}:counter:{namespace}    hash of key -> integer
    - {prefix}:locks:{name}           lock token with TTL
    """

    def __init__(self, hive_dir: Optional[Path] = None):
        default_dir = os.getenv("HIVE_DIR") or (Path(__file__).resolve().parent.parent / ".hive-mind")
        self.hive_dir = Path(hive_dir) if hive_dir else Path(default_dir)
        self.state_dir = self.hive_dir / "state"
        self.state_dir.mkdir(parents=True, exist_ok=True)

        self.backend = (os.getenv("STATE_BACKEND") or "redis").strip().lower()
        self.redis_prefix = (os.getenv("STATE_REDIS_PREFIX") or "outreach").strip() or "outreach"
        self.redis_url = (os.getenv("REDIS_URL") or "").strip()
        self._redis_client = None

        self._file_lock = threading.RLock()
        self._local_locks: Dict[str, tuple[str, float]] = {}

        self._init_redis()

    # ------------------------------------------------------------------
    # Redis helpers
    # ------------------------------------------------------------------

    def _init_redis(self) -> None:
        if self.backend != "redis":
            return
        if not self.redis_url:
            logger.warning("REDIS_URL missing; state is kept in %s", self.state_dir)
            return
        client = redis.Redis.from_url(
            self.redis_url, decode_responses=True, socket_connect_timeout=2, socket_timeout=2
        )
        try:
            client.ping()
        except redis.RedisError as exc:
            logger.warning("Redis unreachable (%s); state is kept in %s", exc, self.state_dir)
            return
        self._redis_client = client
        logger.info("State store using redis prefix '%s'", self.redis_prefix)

    def _redis_enabled(self) -> bool:
        return self.backend == "redis" and self._redis_client is not None

    @property
    def active_backend(self) -> str:
        return "redis" if self._redis_enabled() else "file"

    def _key(self, *parts: str) -> str:
        pieces = [self.redis_prefix]
        pieces.extend([str(p).strip(":") for p in parts if p])
        return ":".join(pieces)

    # ------------------------------------------------------------------
    # File helpers
    # ------------------------------------------------------------------

    def _namespace_file(self, kind: str, namespace: str) -> Path:
        safe = namespace.replace(":", "_").replace("/", "_")
        return self.state_dir / f"{kind}_{safe}.json"

    def _read_json_file(self, path: Path) -> Dict[str, Any]:
        if not path.exists():
            return {}
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            logger.error("Corrupted state file %s, backing up: %s", path, exc)
            path.rename(path.with_suffix(".json.bak"))
            return {}

    def _write_json_file(self, path: Path, payload: Dict[str, Any]) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=path.parent, suffix=".tmp", prefix=path.stem + "_")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(payload, f, indent=2, ensure_ascii=False, sort_keys=True)
            os.replace(tmp_path, path)
        except Exception:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise

    # ------------------------------------------------------------------
    # Documents
    # ------------------------------------------------------------------

    def get(self, namespace: str, key: str) -> Optional[Dict[str, Any]]:
        if self._redis_enabled():
            raw = self._redis_client.hget(self._key("doc", namespace), key)
            return json.loads(raw) if raw else None

        with self._file_lock:
            return self._read_json_file(self._namespace_file("doc", namespace)).get(key)

    def put(self, namespace: str, key: str, document: Dict[str, Any]) -> None:
        if self._redis_enabled():
            self._redis_client.hset(
                self._key("doc", namespace), key, json.dumps(document, ensure_ascii=False)
            )
            return

        with self._file_lock:
            path = self._namespace_file("doc", namespace)
            data = self._read_json_file(path)
            data[key] = document
            self._write_json_file(path, data)

    def put_if_absent(self, namespace: str, key: str, document: Dict[str, Any]) -> bool:
        """Write only when no document exists under key. Returns True if written."""
        if self._redis_enabled():
            written = self._redis_client.hsetnx(
                self._key("doc", namespace), key, json.dumps(document, ensure_ascii=False)
            )
            return bool(written)

        with self._file_lock:
            path = self._namespace_file("doc", namespace)
            data = self._read_json_file(path)
            if key in data:
                return False
            data[key] = document
            self._write_json_file(path, data)
            return True

    def delete(self, namespace: str, key: str) -> None:
        if self._redis_enabled():
            self._redis_client.hdel(self._key("doc", namespace), key)
            return

        with self._file_lock:
            path = self._namespace_file("doc", namespace)
            data = self._read_json_file(path)
            if data.pop(key, None) is not None:
                self._write_json_file(path, data)

    def list_documents(self, namespace: str) -> List[Dict[str, Any]]:
        if self._redis_enabled():
            values = self._redis_client.hvals(self._key("doc", namespace))
            return [json.loads(v) for v in values if v]

        with self._file_lock:
            return list(self._read_json_file(self._namespace_file("doc", namespace)).values())

    # ------------------------------------------------------------------
    # Counters
    # ------------------------------------------------------------------

    def incr(self, namespace: str, key: str, amount: int = 1) -> int:
        """Atomically add amount to a counter and return the new value."""
        if self._redis_enabled():
            return int(self._redis_client.hincrby(self._key("counter", namespace), key, amount))

        with self._file_lock:
            path = self._namespace_file("counter", namespace)
            data = self._read_json_file(path)
            data[key] = int(data.get(key, 0)) + amount
            self._write_json_file(path, data)
            return data[key]

    def get_counter(self, namespace: str, key: str) -> int:
        if self._redis_enabled():
            raw = self._redis_client.hget(self._key("counter", namespace), key)
            return int(raw) if raw else 0

        with self._file_lock:
            return int(self._read_json_file(self._namespace_file("counter", namespace)).get(key, 0))

    # ------------------------------------------------------------------
    # Distributed lock
    # ------------------------------------------------------------------

    def acquire_lock(self, name: str, ttl_seconds: int = 120) -> Optional[str]:
        """Try once to take the named lock. Returns a release token or None."""
        token = uuid.uuid4().hex
        if not self._redis_enabled():
            with self._file_lock:
                held = self._local_locks.get(name)
                if held and held[1] > time.monotonic():
                    return None
                self._local_locks[name] = (token, time.monotonic() + max(1, ttl_seconds))
                return token

        key = self._key("locks", name)
        try:
            acquired = self._redis_client.set(key, token, nx=True, ex=max(10, ttl_seconds))
        except redis.RedisError as exc:
            logger.warning("Failed to acquire lock (%s): %s", name, exc)
            return None
        return token if acquired else None

    def release_lock(self, name: str, token: str) -> None:
        if not self._redis_enabled():
            with self._file_lock:
                held = self._local_locks.get(name)
                if held and held[0] == token:
                    del self._local_locks[name]
            return

        key = self._key("locks", name)
        release_script = """
if redis.call('get', KEYS[1]) == ARGV[1] then
  return redis.call('del', KEYS[1])
else
  return 0
end
"""
        try:
            self._redis_client.eval(release_script, 1, key, token)
        except redis.RedisError as exc:
            logger.warning("Failed to release lock (%s): %s", name, exc)


_store_instance: Optional[StateStore] = None
_store_lock = threading.Lock()


def get_state_store() -> StateStore:
    """Get thread-safe singleton instance of StateStore."""
    global _store_instance
    if _store_instance is None:
        with _store_lock:
            if _store_instance is None:
                _store_instance = StateStore()
    return _store_instance


def reset_state_store() -> None:
    global _store_instance
    with _store_lock:
        _store_instance = None
