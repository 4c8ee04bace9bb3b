"""Thin client for the switch state store (Redis STATE_DB)."""
from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Iterable, Optional

import redis

logger = logging.getLogger("switchreboot.statedb")

# Deletes every key that does not start with one of ARGV; runs atomically server side.
_DELETE_EXCEPT_LUA = """
local removed = 0
for _, k in ipairs(redis.call('KEYS', '*')) do
    local keep = false
    for _, prefix in ipairs(ARGV) do
        if string.sub(k, 1, string.len(prefix)) == prefix then
            keep = true
            break
        end
    end
    if not keep then
        redis.call('DEL', k)
        removed = removed + 1
    end
end
return removed
"""


class StateStoreError(Exception):
    """Raised when the state store cannot be reached or answers with an error."""


class StateStoreTimeout(StateStoreError, TimeoutError):
    """A single state store call exceeded the client socket timeout."""


class StateStore:
    """Hash-oriented access to one Redis database.

    Every call is bounded by ``socket_timeout``; a timeout surfaces as
    StateStoreTimeout so callers can account for it separately.
    """

    def __init__(self, url: str, socket_timeout: float = 5.0, dump_dir: Optional[str] = None) -> None:
        self._url = url
        self._socket_timeout = socket_timeout
        self._dump_dir = Path(dump_dir or tempfile.gettempdir())
        self._client: Optional[redis.Redis] = None

    def _get_client(self) -> redis.Redis:
        if self._client is None:
            self._client = redis.Redis.from_url(
                self._url,
                socket_timeout=self._socket_timeout,
                socket_connect_timeout=self._socket_timeout,
                decode_responses=True,
            )
        return self._client

    def _call(self, fn: Callable, *args, **kwargs):
        try:
            return fn(*args, **kwargs)
        except redis.exceptions.TimeoutError as exc:
            raise StateStoreTimeout(str(exc)) from exc
        except redis.exceptions.RedisError as exc:
            raise StateStoreError(str(exc)) from exc

    # -- hashes -----------------------------------------------------------------

    def hgetall(self, key: str) -> dict[str, str]:
        return self._call(self._get_client().hgetall, key) or {}

    def hget(self, key: str, field: str) -> Optional[str]:
        return self._call(self._get_client().hget, key, field)

    def hset(self, key: str, mapping: dict[str, str]) -> None:
        self._call(self._get_client().hset, key, mapping=mapping)

    def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        return self._call(self._get_client().delete, *keys)

    def keys(self, pattern: str = "*") -> list[str]:
        return list(self._call(self._get_client().keys, pattern))

    # -- bulk -------------------------------------------------------------------

    def delete_except(self, prefixes: Iterable[str]) -> int:
        """Delete every key outside *prefixes* in one atomic script."""
        prefixes = list(prefixes)
        return int(self._call(self._get_client().eval, _DELETE_EXCEPT_LUA, 0, *prefixes))

    def persist(self) -> Path:
        """Write the current contents to a JSON dump file and return its path."""
        client = self._get_client()
        contents: dict[str, dict[str, str]] = {}
        for key in self.keys("*"):
            if self._call(client.type, key) != "hash":
                logger.debug("Skipping non-hash key %s", key)
                continue
            contents[key] = self.hgetall(key)
        self._dump_dir.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=self._dump_dir, prefix="state-dump-", suffix=".json")
        with os.fdopen(fd, "w") as f:
            json.dump({
                "dumped_at": datetime.now(timezone.utc).isoformat(),
                "keys": contents,
            }, f, sort_keys=True)
            f.flush()
            os.fsync(f.fileno())
        return Path(tmp)

    def flush(self) -> None:
        self._call(self._get_client().flushdb)

    # -- change notification ---------------------------------------------------

    def watch(self, key: str, event: threading.Event) -> Callable[[], None]:
        """Set *event* whenever *key* changes. Returns a stop callable.

        Needs keyspace notifications enabled on the server; without them the
        caller simply falls back to its polling timer.
        """
        client = self._get_client()
        db = client.connection_pool.connection_kwargs.get("db", 0)
        pubsub = client.pubsub(ignore_subscribe_messages=True)
        try:
            pubsub.subscribe(**{f"__keyspace@{db}__:{key}": lambda _msg: event.set()})
            thread = pubsub.run_in_thread(sleep_time=0.01, daemon=True)
        except redis.exceptions.RedisError as exc:
            logger.debug("Keyspace watch on %s unavailable: %s", key, exc)
            pubsub.close()
            return lambda: None

        def _stop() -> None:
            thread.stop()
            pubsub.close()

        return _stop
