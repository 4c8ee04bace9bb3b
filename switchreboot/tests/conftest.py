"""
Shared pytest fixtures for switch-reboot tests.
Fakes the state store, service runtime, kexec and host probes. No Redis,
Docker or root needed.
"""
from __future__ import annotations

import fnmatch
import json
import os
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Optional

import pytest

from switchreboot.config import RebootConfig
from switchreboot.models import BootImage

HANDSHAKE_KEY = "WARM_RESTART_TABLE|syncd"


# ---------------------------------------------------------------------------
# State store
# ---------------------------------------------------------------------------

class FakeStateStore:
    """In-memory hash store with the StateStore surface.

    ``script`` feeds successive reads of the handshake state: each item is a
    raw value or an exception instance to raise. Once empty, reads fall back
    to the stored hash.
    """

    def __init__(self, dump_dir: str) -> None:
        self.data: dict[str, dict[str, str]] = {}
        self.dump_dir = Path(dump_dir)
        self.writes: list[tuple[str, dict[str, str]]] = []
        self.script: list[Any] = []
        self.state_reads = 0
        self.before_persist: Optional[Callable[[FakeStateStore], None]] = None
        self.persist_error: Optional[Exception] = None
        self.hgetall_error: Optional[Exception] = None
        self.flushed = False

    def hgetall(self, key: str) -> dict[str, str]:
        if self.hgetall_error:
            raise self.hgetall_error
        return dict(self.data.get(key, {}))

    def hget(self, key: str, field: str) -> Optional[str]:
        if field == "state":
            self.state_reads += 1
            if key == HANDSHAKE_KEY and self.script:
                item = self.script.pop(0)
                if isinstance(item, BaseException):
                    raise item
                return item
        return self.data.get(key, {}).get(field)

    def hset(self, key: str, mapping: dict[str, str]) -> None:
        self.writes.append((key, dict(mapping)))
        self.data.setdefault(key, {}).update(mapping)

    def delete(self, *keys: str) -> int:
        return sum(1 for k in keys if self.data.pop(k, None) is not None)

    def keys(self, pattern: str = "*") -> list[str]:
        return [k for k in self.data if fnmatch.fnmatchcase(k, pattern)]

    def delete_except(self, prefixes) -> int:
        prefixes = tuple(prefixes)
        doomed = [k for k in self.data if not k.startswith(prefixes)]
        return self.delete(*doomed)

    def persist(self) -> Path:
        if self.before_persist:
            self.before_persist(self)
        if self.persist_error:
            raise self.persist_error
        self.dump_dir.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=self.dump_dir, prefix="state-dump-", suffix=".json")
        with os.fdopen(fd, "w") as f:
            json.dump({"keys": self.data}, f)
        return Path(tmp)

    def flush(self) -> None:
        self.data.clear()
        self.flushed = True

    def watch(self, key, event):
        return lambda: None


class InstantEvent:
    """threading.Event stand-in whose wait() returns immediately."""

    def __init__(self) -> None:
        self.waits: list[float] = []
        self._set = False

    def wait(self, timeout: Optional[float] = None) -> bool:
        self.waits.append(timeout)
        return self._set

    def set(self) -> None:
        self._set = True

    def clear(self) -> None:
        self._set = False

    def is_set(self) -> bool:
        return self._set


# ---------------------------------------------------------------------------
# Collaborators
# ---------------------------------------------------------------------------

@dataclass
class FakeRuntime:
    calls: list = field(default_factory=list)
    failures: dict = field(default_factory=dict)   # (op, service) -> exception
    exec_rc: dict = field(default_factory=dict)    # service -> rc

    def _do(self, op: str, service: str) -> None:
        self.calls.append((op, service))
        exc = self.failures.get((op, service))
        if exc:
            raise exc

    def start(self, service: str) -> None:
        self._do("start", service)

    def stop(self, service: str) -> None:
        self._do("stop", service)

    def kill(self, service: str) -> None:
        self._do("kill", service)

    def exec(self, service: str, cmd) -> int:
        self._do("exec", service)
        return self.exec_rc.get(service, 0)

    def stop_runtime(self) -> None:
        self._do("stop_runtime", "docker")


@dataclass
class FakeKernel:
    calls: list = field(default_factory=list)
    execute_error: Optional[Exception] = None
    unload_error: Optional[Exception] = None

    def load(self, image: BootImage, cmdline: str) -> None:
        self.calls.append(("load", cmdline))

    def unload(self) -> None:
        self.calls.append(("unload", None))
        if self.unload_error:
            raise self.unload_error

    def execute(self) -> None:
        self.calls.append(("execute", None))
        if self.execute_error:
            raise self.execute_error

    def power_cycle(self) -> None:
        self.calls.append(("power_cycle", None))

    def count(self, op: str) -> int:
        return sum(1 for name, _ in self.calls if name == op)


@dataclass
class FakeProbe:
    privileged: bool = True
    free: int = 10 * 1024 ** 3
    platform_id: str = "broadcom"
    free_error: Optional[Exception] = None

    def is_privileged(self) -> bool:
        return self.privileged

    def free_bytes(self, path: str) -> int:
        if self.free_error:
            raise self.free_error
        return self.free

    def platform(self) -> str:
        return self.platform_id


@dataclass
class FakeImages:
    image: Optional[BootImage] = field(
        default_factory=lambda: BootImage("/host/next/boot/vmlinuz-6.1", "/host/next/boot/initrd.img-6.1", "console=ttyS0")
    )
    error: Optional[Exception] = None

    def next_image(self) -> Optional[BootImage]:
        if self.error:
            raise self.error
        return self.image


@dataclass
class FakeDump:
    error: Optional[Exception] = None
    runs: int = 0

    def run(self):
        self.runs += 1
        if self.error:
            raise self.error
        return "dumped"


@dataclass
class FakeAgent:
    results: list = field(default_factory=list)
    default: bool = True
    pauses: int = 0

    def pause(self) -> bool:
        self.pauses += 1
        return self.results.pop(0) if self.results else self.default


class FakeDaemon:
    """syncd stand-in. Writes *respond* into the handshake record when asked."""

    def __init__(self, store: Optional[FakeStateStore] = None, respond: Optional[str] = None,
                 error: Optional[Exception] = None) -> None:
        self.store = store
        self.respond = respond
        self.error = error
        self.requests = 0

    def request_pre_shutdown(self) -> None:
        self.requests += 1
        if self.error:
            raise self.error
        if self.store is not None and self.respond:
            self.store.data.setdefault(HANDSHAKE_KEY, {})["state"] = self.respond


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def config(tmp_path: Path) -> RebootConfig:
    return RebootConfig(
        state_db_url="redis://127.0.0.1:6379/6",
        poll_interval_s=0.1,
        poll_timeout_s=5.0,
        handshake_budget_s=1.0,
        poll_retry_limit=3,
        freeze_attempts=5,
        freeze_backoff_s=2.0,
        warm_dir=str(tmp_path / "warmboot"),
        reboot_cause_file=str(tmp_path / "reboot-cause" / "reboot-cause.txt"),
        lock_file=str(tmp_path / "run" / "switch-reboot.lock"),
        host_volume=str(tmp_path),
        min_free_mb=200,
        next_image_dir=str(tmp_path / "next-image"),
        platform="broadcom",
        dump_command=(),
        notify_targets=(),
        log_dir=str(tmp_path / "logs"),
    )


@pytest.fixture
def store(tmp_path: Path) -> FakeStateStore:
    return FakeStateStore(str(tmp_path / "redis"))


@pytest.fixture
def wakeup() -> InstantEvent:
    return InstantEvent()
