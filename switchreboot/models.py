"""switch-reboot — data models.

Exit codes are part of the external contract; automation branches on them:

    0   SUCCESS                   kernel handoff invoked
    1   FAILURE                   generic failure
    2   NOT_SUPPORTED             mode unsupported on this platform / not root
    3   FILE_SYSTEM_FULL          not enough free space on the host volume
    4   NEXT_IMAGE_NOT_EXISTS     no next-boot image
    10  ORCHAGENT_SHUTDOWN        orchagent could not be frozen
    11  SYNCD_SHUTDOWN            syncd pre-shutdown failed
    12  FAST_REBOOT_DUMP_FAILURE  pre-reboot forwarding dump failed
"""
from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum, IntEnum
from typing import Any, Callable, Optional


class ExitCode(IntEnum):
    SUCCESS = 0
    FAILURE = 1
    NOT_SUPPORTED = 2
    FILE_SYSTEM_FULL = 3
    NEXT_IMAGE_NOT_EXISTS = 4
    ORCHAGENT_SHUTDOWN = 10
    SYNCD_SHUTDOWN = 11
    FAST_REBOOT_DUMP_FAILURE = 12


class RebootMode(str, Enum):
    COLD = "cold"
    FAST = "fast"
    WARM = "warm"
    FASTFAST = "fastfast"   # platform-specific flavour of warm

    @property
    def is_warm(self) -> bool:
        return self in (RebootMode.WARM, RebootMode.FASTFAST)


class RebootPhase(str, Enum):
    IDLE = "IDLE"
    PRECHECK = "PRECHECK"
    PREPARING = "PREPARING"
    DRAINING = "DRAINING"
    HANDOFF = "HANDOFF"
    DONE = "DONE"
    ABORTED = "ABORTED"


class HandshakeState(str, Enum):
    IDLE = "idle"
    REQUESTING = "requesting"
    SUCCEEDED = "pre-shutdown-succeeded"
    FAILED = "pre-shutdown-failed"

    @classmethod
    def parse(cls, raw: Optional[str]) -> Optional[HandshakeState]:
        """Map a stored value to a state. Empty means idle, garbage means None."""
        if raw is None or raw == "":
            return cls.IDLE
        try:
            return cls(raw)
        except ValueError:
            return None


HANDSHAKE_TRANSITIONS: dict[HandshakeState, frozenset[HandshakeState]] = {
    HandshakeState.IDLE: frozenset({HandshakeState.REQUESTING}),
    HandshakeState.REQUESTING: frozenset({HandshakeState.SUCCEEDED, HandshakeState.FAILED}),
    HandshakeState.SUCCEEDED: frozenset(),
    HandshakeState.FAILED: frozenset(),
}


class InvalidTransition(ValueError):
    """Raised on a handshake transition outside idle → requesting → terminal."""


@dataclass(frozen=True)
class HandshakeRecord:
    restore_count: int = 0
    state: HandshakeState = HandshakeState.IDLE

    def can_transition(self, new: HandshakeState) -> bool:
        return new in HANDSHAKE_TRANSITIONS[self.state]

    def transition(self, new: HandshakeState) -> HandshakeRecord:
        if not self.can_transition(new):
            raise InvalidTransition(f"{self.state.value} -> {new.value}")
        return HandshakeRecord(restore_count=self.restore_count, state=new)

    def cleared(self) -> HandshakeRecord:
        """Drop a stale state left by a previous attempt; restore_count survives."""
        return HandshakeRecord(restore_count=self.restore_count, state=HandshakeState.IDLE)

    @classmethod
    def from_fields(cls, fields: dict[str, str]) -> HandshakeRecord:
        try:
            count = max(0, int(fields.get("restore_count", 0)))
        except (TypeError, ValueError):
            count = 0
        state = HandshakeState.parse(fields.get("state")) or HandshakeState.IDLE
        return cls(restore_count=count, state=state)

    def to_fields(self) -> dict[str, str]:
        return {"restore_count": str(self.restore_count), "state": self.state.value}


class FailurePolicy(str, Enum):
    FATAL = "fatal"
    IGNORABLE_IF_FORCED = "ignorable-if-forced"
    IGNORABLE = "ignorable"


def _not_false(result: Any) -> bool:
    return result is not False


@dataclass
class DrainStep:
    name: str
    action: Callable[[RebootContext], Any]
    on_failure: FailurePolicy = FailurePolicy.FATAL
    exit_code: ExitCode = ExitCode.FAILURE
    succeeded: Callable[[Any], bool] = _not_false
    attempts: int = 1
    backoff_s: float = 0.0


@dataclass
class Anomaly:
    step: str
    detail: str
    at: datetime = field(default_factory=datetime.utcnow)


@dataclass
class DrainReport:
    completed: list[str] = field(default_factory=list)
    anomalies: list[Anomaly] = field(default_factory=list)


@dataclass
class SnapshotHandle:
    path: str
    key_count: int
    checksum_sha256: str
    dropped_keys: list[str] = field(default_factory=list)
    rotated_from: str = ""
    saved_at: datetime = field(default_factory=datetime.utcnow)


@dataclass(frozen=True)
class BootImage:
    kernel: str
    initrd: str
    cmdline: str = ""


@dataclass(frozen=True)
class RebootOptions:
    force: bool = False
    verbose: bool = False
    use_kexec: bool = True
    dry_run: bool = False
    notify_targets: tuple[str, ...] = ()
    platform: Optional[str] = None


@dataclass
class RebootContext:
    """Everything one reboot attempt mutates. Owned by the controller."""
    mode: RebootMode
    options: RebootOptions = field(default_factory=RebootOptions)
    user: str = "root"
    phase: RebootPhase = RebootPhase.IDLE
    started_at: datetime = field(default_factory=datetime.utcnow)
    boot_image: Optional[BootImage] = None
    warm_intent_enabled: bool = False
    kexec_loaded: bool = False
    notified_targets: list[str] = field(default_factory=list)
    snapshot_path: Optional[str] = None
    point_of_no_return: bool = False
    anomalies: list[Anomaly] = field(default_factory=list)
    abort: threading.Event = field(default_factory=threading.Event)

    def record_anomaly(self, step: str, detail: str) -> Anomaly:
        anomaly = Anomaly(step=step, detail=detail)
        self.anomalies.append(anomaly)
        return anomaly
