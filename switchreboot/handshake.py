"""Pre-shutdown handshake with syncd.

Protocol: reset the record → write ``requesting`` → ask syncd to begin its
pre-shutdown → poll the record until syncd writes a terminal state.

Two budgets bound the poll. The overall budget (60s) is consumed by 100ms per
completed poll and by the full per-poll timeout (5s) for every read that
times out; three consecutive timed-out reads are fatal on their own. The
charged total never falls behind wall-clock time since the first poll, so
slow reads that still succeed cannot stretch the budget.
"""
from __future__ import annotations

import enum
import logging
import threading
import time
from typing import Callable, Optional, Protocol

import redis

from .config import RebootConfig
from .models import ExitCode, HandshakeRecord, HandshakeState, RebootContext
from .statedb import StateStore, StateStoreError

logger = logging.getLogger("switchreboot.handshake")


class HandshakeFailure(str, enum.Enum):
    UNREACHABLE = "unreachable"
    DAEMON_FAILED = "daemon-failed"
    POLL_TIMEOUT = "poll-timeout"
    BUDGET_EXHAUSTED = "budget-exhausted"
    ABORTED = "aborted"


class HandshakeError(Exception):
    """syncd did not confirm its pre-shutdown."""

    exit_code = ExitCode.SYNCD_SHUTDOWN

    def __init__(self, reason: HandshakeFailure, message: str, elapsed_ms: int = 0) -> None:
        super().__init__(f"{reason.value}: {message}")
        self.reason = reason
        self.elapsed_ms = elapsed_ms


class PreShutdownTarget(Protocol):
    def request_pre_shutdown(self) -> None: ...


class PreShutdownCoordinator:

    def __init__(
        self,
        ctx: RebootContext,
        store: StateStore,
        daemon: PreShutdownTarget,
        config: RebootConfig,
        wakeup: Optional[threading.Event] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._ctx = ctx
        self._store = store
        self._daemon = daemon
        self._config = config
        self._wakeup = wakeup or threading.Event()
        self._clock = clock
        self.polls = 0

    # -- record access ----------------------------------------------------------

    def _load_record(self) -> HandshakeRecord:
        return HandshakeRecord.from_fields(self._store.hgetall(self._config.handshake_key))

    def _save_record(self, record: HandshakeRecord) -> None:
        self._store.hset(self._config.handshake_key, record.to_fields())

    def _reset_record(self) -> HandshakeRecord:
        try:
            current = self._load_record()
            if current.state is not HandshakeState.IDLE:
                logger.info("Clearing stale handshake state %s", current.state.value)
                current = current.cleared()
                self._save_record(current)
            requesting = current.transition(HandshakeState.REQUESTING)
            self._save_record(requesting)
        except StateStoreError as exc:
            raise HandshakeError(HandshakeFailure.UNREACHABLE, f"cannot reset handshake record: {exc}") from exc
        return requesting

    def _read_state(self) -> Optional[HandshakeState]:
        raw = self._store.hget(self._config.handshake_key, "state")
        return HandshakeState.parse(raw)

    # -- protocol ---------------------------------------------------------------

    def request_pre_shutdown(self) -> HandshakeRecord:
        """Run the handshake; return the record once syncd reports success."""
        record = self._reset_record()
        logger.info("Handshake record set to requesting (restore_count=%d)", record.restore_count)

        try:
            self._daemon.request_pre_shutdown()
        except Exception as exc:
            raise HandshakeError(HandshakeFailure.UNREACHABLE, f"pre-shutdown request not delivered: {exc}") from exc

        stop_watch = self._watch()
        try:
            state = self._wait_for_terminal_state()
        finally:
            stop_watch()

        logger.info("syncd pre-shutdown succeeded after %d polls", self.polls)
        return record.transition(state)

    def _watch(self):
        try:
            return self._store.watch(self._config.handshake_key, self._wakeup)
        except (StateStoreError, redis.exceptions.RedisError) as exc:
            logger.debug("No change notification for %s: %s", self._config.handshake_key, exc)
            return lambda: None

    def _wait_for_terminal_state(self) -> HandshakeState:
        cfg = self._config
        budget_ms = int(round(cfg.handshake_budget_s * 1000))
        interval_ms = int(round(cfg.poll_interval_s * 1000))
        timeout_ms = int(round(cfg.poll_timeout_s * 1000))
        consumed_ms = 0
        consecutive_timeouts = 0
        started = self._clock()

        def wall_ms() -> int:
            return int((self._clock() - started) * 1000)

        while consumed_ms < budget_ms:
            if self._ctx.abort.is_set():
                raise HandshakeError(HandshakeFailure.ABORTED, "reboot aborted", consumed_ms)

            self.polls += 1
            try:
                state = self._read_state()
            except StateStoreError as exc:
                consecutive_timeouts += 1
                consumed_ms = max(consumed_ms + timeout_ms, wall_ms())
                logger.warning(
                    "Handshake poll %d failed (%d/%d): %s",
                    self.polls, consecutive_timeouts, cfg.poll_retry_limit, exc,
                )
                if consecutive_timeouts >= cfg.poll_retry_limit:
                    raise HandshakeError(
                        HandshakeFailure.POLL_TIMEOUT,
                        f"{consecutive_timeouts} consecutive poll failures",
                        consumed_ms,
                    ) from exc
                continue
            consecutive_timeouts = 0
            consumed_ms = max(consumed_ms, wall_ms())

            if state is HandshakeState.SUCCEEDED:
                return state
            if state is HandshakeState.FAILED:
                raise HandshakeError(HandshakeFailure.DAEMON_FAILED, "syncd reported pre-shutdown failure", consumed_ms)
            if state is not HandshakeState.REQUESTING:
                logger.warning(
                    "Ignoring out-of-order handshake state %r while requesting",
                    state.value if state else None,
                )

            self._wakeup.wait(cfg.poll_interval_s)
            self._wakeup.clear()
            consumed_ms = max(consumed_ms + interval_ms, wall_ms())

        raise HandshakeError(
            HandshakeFailure.BUDGET_EXHAUSTED,
            f"no terminal state within {cfg.handshake_budget_s:g}s",
            consumed_ms,
        )
