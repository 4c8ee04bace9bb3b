"""switch-reboot — failure recovery.

Undoes whatever a reboot attempt mutated before the point of no return:

    kexec reservation     → kexec -u (best effort)
    warm-restart intent   → disabled in the state store
    snapshot file         → rotated aside, never deleted
    notification targets  → told the reboot was aborted

Each action is keyed on the context flag it undoes and clears that flag, so
running recovery twice, or on an attempt that mutated nothing, is a no-op.
"""
from __future__ import annotations

import logging
import signal
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional

from .config import RebootConfig
from .models import RebootContext
from .snapshot import rotate

logger = logging.getLogger("switchreboot.recovery")

ABORT_SIGNALS = tuple(
    getattr(signal, name) for name in ("SIGTERM", "SIGINT", "SIGHUP", "SIGQUIT") if hasattr(signal, name)
)


class RebootAborted(BaseException):
    """Raised from the signal handler; unwinds past step-level error handling."""

    def __init__(self, signum: int) -> None:
        super().__init__(f"aborted by signal {signum}")
        self.signum = signum


class FailureRecovery:

    def __init__(
        self,
        ctx: RebootContext,
        config: RebootConfig,
        store,
        kernel,
        notifier,
        wakeup: Optional[threading.Event] = None,
    ) -> None:
        self._ctx = ctx
        self._config = config
        self._store = store
        self._kernel = kernel
        self._notifier = notifier
        self._wakeup = wakeup
        self._armed = False
        self._recovering = False
        self.runs = 0

    @property
    def armed(self) -> bool:
        return self._armed

    def disarm(self) -> None:
        """Called once the kernel handoff has been invoked."""
        self._armed = False
        self._ctx.point_of_no_return = True

    # -- cleanup actions --------------------------------------------------------

    def run(self, reason: str = "") -> None:
        """Undo every recorded mutation. Never raises."""
        self.runs += 1
        logger.warning("Running failure recovery%s", f" ({reason})" if reason else "")
        self._release_kexec()
        self._disable_warm_intent()
        self._preserve_snapshot()
        self._restore_notifications()

    def _release_kexec(self) -> None:
        if not self._ctx.kexec_loaded:
            return
        try:
            self._kernel.unload()
        except Exception as e:
            logger.warning(f"kexec unload failed (ignored): {e}")
        self._ctx.kexec_loaded = False

    def _disable_warm_intent(self) -> None:
        if not self._ctx.warm_intent_enabled:
            return
        try:
            self._store.hset(self._config.warm_intent_key, {"enable": "false"})
            self._ctx.warm_intent_enabled = False
            logger.info("Warm-restart intent disabled")
        except Exception as e:
            logger.error(f"Could not disable warm-restart intent: {e}")

    def _preserve_snapshot(self) -> None:
        target = Path(self._config.warm_dir) / self._config.snapshot_name
        try:
            rotated = rotate(target)
        except OSError as e:
            logger.error(f"Could not rotate snapshot {target}: {e}")
            return
        if rotated:
            self._ctx.snapshot_path = str(rotated)

    def _restore_notifications(self) -> None:
        if not self._ctx.notified_targets:
            return
        try:
            self._notifier.restore(self._ctx)
        except Exception as e:
            logger.error(f"Notification restore failed: {e}")
        self._ctx.notified_targets.clear()

    # -- scoped guard -----------------------------------------------------------

    def abort(self) -> None:
        """Flag the attempt as aborted and wake a pending handshake wait."""
        self._ctx.abort.set()
        if self._wakeup is not None:
            self._wakeup.set()

    def _on_signal(self, signum: int, frame) -> None:  # type: ignore[override]
        self.abort()
        if self._recovering:
            logger.warning("Received signal %d during recovery; finishing cleanup first", signum)
            return
        logger.error("Received signal %d during reboot", signum)
        raise RebootAborted(signum)

    def _install_handlers(self) -> dict[int, object]:
        previous: dict[int, object] = {}
        for sig in ABORT_SIGNALS:
            try:
                previous[sig] = signal.signal(sig, self._on_signal)
            except ValueError:
                # not on the main thread; abort event still works
                break
        return previous

    @contextmanager
    def guard(self) -> Iterator[FailureRecovery]:
        """Arm recovery for the enclosed block.

        Any exit that did not pass disarm() (exception, abort signal or an
        early return) runs recovery before the exception propagates.
        """
        previous = self._install_handlers()
        self._armed = True
        reason: Optional[str] = "exited before kernel handoff"
        try:
            yield self
        except BaseException as exc:
            reason = f"{exc.__class__.__name__}: {exc}"
            raise
        finally:
            try:
                if self._armed:
                    self._recovering = True
                    self.run(reason or "")
            finally:
                self._recovering = False
                self._armed = False
                for sig, handler in previous.items():
                    signal.signal(sig, handler)
