"""switch-reboot — reboot controller.

Flow: privilege → lock → preconditions → arm recovery → prepare → drain → handoff.
Preconditions never mutate anything; from "prepare" on, every exit that does
not reach the kernel handoff goes through FailureRecovery.
"""
from __future__ import annotations

import fcntl
import getpass
import logging
import os
import threading
import time
from datetime import datetime
from pathlib import Path
from typing import Callable, Optional

from .config import RebootConfig
from .drain import DrainError, ServiceDrainSequencer
from .handshake import PreShutdownCoordinator
from .kernel import BootImageLocator, KernelLoader, SystemProbe, boot_cmdline
from .models import (
    DrainReport, ExitCode, RebootContext, RebootMode, RebootOptions, RebootPhase,
)
from .notify import RebootNotifier
from .platforms import PlanBuilder, PlatformProfile, resolve_profile
from .recovery import FailureRecovery, RebootAborted
from .runtime import DiagnosticDump, ForwardingSyncDaemon, OrchestrationAgent, ServiceRuntime
from .snapshot import StateSnapshotStore, atomic_write
from .statedb import StateStore

logger = logging.getLogger("switchreboot.controller")


class PreconditionFailure(Exception):
    """A precondition failed; nothing has been touched yet."""

    def __init__(self, exit_code: ExitCode, message: str) -> None:
        super().__init__(message)
        self.exit_code = exit_code


class LockHeld(Exception):
    """The node-wide lock is held by another attempt or cannot be opened."""


class RebootLock:
    """Exclusive, non-blocking flock on the lock file."""

    def __init__(self, path: str) -> None:
        self._path = Path(path)
        self._fd: Optional[int] = None

    def acquire(self) -> None:
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            fd = os.open(self._path, os.O_RDWR | os.O_CREAT, 0o644)
        except OSError as exc:
            raise LockHeld(f"cannot open lock file {self._path}: {exc}") from exc
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError as exc:
            os.close(fd)
            raise LockHeld(f"{self._path} is held by another reboot") from exc
        os.ftruncate(fd, 0)
        os.write(fd, str(os.getpid()).encode())
        self._fd = fd

    def release(self) -> None:
        if self._fd is None:
            return
        fcntl.flock(self._fd, fcntl.LOCK_UN)
        os.close(self._fd)
        self._fd = None


def _reboot_user() -> str:
    return os.getenv("SUDO_USER") or getpass.getuser()


def _log_transition(ctx: RebootContext, new: RebootPhase, details: str = "") -> None:
    old = ctx.phase
    ctx.phase = new
    logger.info(f"Reboot [{ctx.mode.value}]: {old.value} → {new.value}{' | ' + details if details else ''}")


class RebootController:
    """Top-level state machine for one reboot attempt."""

    def __init__(
        self,
        config: RebootConfig,
        store=None,
        runtime=None,
        kernel=None,
        probe=None,
        images=None,
        dump=None,
        agent=None,
        daemon=None,
        notifier_factory: Optional[Callable[[tuple[str, ...]], RebootNotifier]] = None,
        sleep: Callable[[float], None] = time.sleep,
        wakeup: Optional[threading.Event] = None,
    ) -> None:
        self._config = config
        self._store = store or StateStore(config.state_db_url, config.state_db_socket_timeout_s, config.warm_dir)
        self._runtime = runtime or ServiceRuntime(timeout=config.command_timeout_s)
        self._kernel = kernel or KernelLoader(config.command_timeout_s)
        self._probe = probe or SystemProbe(config.platform)
        self._images = images or BootImageLocator(config.next_image_dir)
        self._dump = dump or DiagnosticDump(config.dump_command, config.command_timeout_s)
        self._agent = agent or OrchestrationAgent(self._runtime)
        self._daemon = daemon or ForwardingSyncDaemon(self._runtime)
        self._notifier_factory = notifier_factory or (
            lambda targets: RebootNotifier(targets, config.notify_timeout_s)
        )
        self._sleep = sleep
        self._wakeup = wakeup
        self.last_context: Optional[RebootContext] = None
        self.last_report: Optional[DrainReport] = None

    # -- preconditions ----------------------------------------------------------

    def check_privilege(self) -> None:
        if not self._probe.is_privileged():
            raise PreconditionFailure(ExitCode.NOT_SUPPORTED, "must be run as root")

    def check_preconditions(self, ctx: RebootContext) -> PlatformProfile:
        """Raise PreconditionFailure on the first unmet precondition.

        Host errors (unreadable volume, image dir or profile overrides) are
        precondition failures too; nothing has been mutated at this point.
        """
        self.check_privilege()

        platform = ctx.options.platform or self._probe.platform()
        try:
            profile = resolve_profile(platform, self._config.platforms)
        except (ValueError, TypeError) as exc:
            raise PreconditionFailure(ExitCode.NOT_SUPPORTED, f"invalid profile for {platform}: {exc}") from exc
        if not profile.supports(ctx.mode):
            raise PreconditionFailure(
                ExitCode.NOT_SUPPORTED, f"{ctx.mode.value} reboot is not supported on {platform}"
            )

        try:
            free_mb = self._probe.free_bytes(self._config.host_volume) // (1024 * 1024)
        except OSError as exc:
            raise PreconditionFailure(
                ExitCode.FILE_SYSTEM_FULL, f"cannot stat {self._config.host_volume}: {exc}"
            ) from exc
        if free_mb < self._config.min_free_mb:
            raise PreconditionFailure(
                ExitCode.FILE_SYSTEM_FULL,
                f"{self._config.host_volume} has {free_mb}MB free, need {self._config.min_free_mb}MB",
            )

        if ctx.mode is not RebootMode.COLD:
            try:
                image = self._images.next_image()
            except OSError as exc:
                raise PreconditionFailure(
                    ExitCode.NEXT_IMAGE_NOT_EXISTS, f"next boot image unreadable: {exc}"
                ) from exc
            if image is None:
                raise PreconditionFailure(ExitCode.NEXT_IMAGE_NOT_EXISTS, "next boot image not found")
            ctx.boot_image = image
        return profile

    # -- phases -----------------------------------------------------------------

    def _uses_kexec(self, ctx: RebootContext) -> bool:
        return ctx.mode is not RebootMode.COLD and ctx.options.use_kexec

    def _prepare(self, ctx: RebootContext, notifier: RebootNotifier) -> None:
        if notifier.targets:
            acked = notifier.announce(ctx)
            logger.info("Announced reboot to %d/%d targets", len(acked), len(notifier.targets))

        if self._uses_kexec(ctx):
            image = ctx.boot_image
            self._kernel.load(image, boot_cmdline(image, ctx.mode))
            ctx.kexec_loaded = True

        if ctx.mode.is_warm:
            self._store.hset(self._config.warm_intent_key, {"enable": "true"})
            ctx.warm_intent_enabled = True
            logger.info("Warm-restart intent enabled")

    def _plan(self, ctx: RebootContext, profile: PlatformProfile, wakeup: threading.Event):
        coordinator = PreShutdownCoordinator(ctx, self._store, self._daemon, self._config, wakeup)
        builder = PlanBuilder(
            config=self._config,
            runtime=self._runtime,
            agent=self._agent,
            coordinator=coordinator,
            snapshots=StateSnapshotStore(self._store, self._config),
            dump=self._dump,
        )
        return builder.build(profile, ctx.mode)

    def write_reboot_cause(self, ctx: RebootContext) -> None:
        ts = datetime.utcnow().strftime("%a %d %b %Y %I:%M:%S %p UTC")
        line = f"User issued '{ctx.mode.value}-reboot' command [User: {ctx.user}, Time: {ts}]\n"
        atomic_write(Path(self._config.reboot_cause_file), line.encode())

    def _handoff(self, ctx: RebootContext, recovery: FailureRecovery) -> None:
        self.write_reboot_cause(ctx)
        if self._uses_kexec(ctx):
            self._kernel.execute()
        else:
            self._kernel.power_cycle()
        recovery.disarm()

    # -- entry point ------------------------------------------------------------

    def _precondition_failed(self, ctx: RebootContext, e: PreconditionFailure) -> ExitCode:
        logger.error(f"Precondition failed: {e}")
        _log_transition(ctx, RebootPhase.ABORTED, f"exit={int(e.exit_code)}")
        return e.exit_code

    def execute(self, mode: RebootMode, options: Optional[RebootOptions] = None) -> ExitCode:
        options = options or RebootOptions()
        ctx = RebootContext(mode=mode, options=options, user=_reboot_user())
        self.last_context = ctx

        _log_transition(ctx, RebootPhase.PRECHECK)
        lock = RebootLock(self._config.lock_file)
        try:
            # privilege is checked before the lock file is touched
            self.check_privilege()
            lock.acquire()
        except PreconditionFailure as e:
            return self._precondition_failed(ctx, e)
        except LockHeld as e:
            logger.error(str(e))
            _log_transition(ctx, RebootPhase.ABORTED, "lock unavailable")
            return ExitCode.FAILURE

        try:
            try:
                profile = self.check_preconditions(ctx)
            except PreconditionFailure as e:
                return self._precondition_failed(ctx, e)

            wakeup = self._wakeup or threading.Event()
            plan = self._plan(ctx, profile, wakeup)
            if options.dry_run:
                for step in plan:
                    logger.info("[dry-run] %s (%s)", step.name, step.on_failure.value)
                _log_transition(ctx, RebootPhase.DONE, "dry run")
                return ExitCode.SUCCESS

            notifier = self._notifier_factory(options.notify_targets or self._config.notify_targets)
            recovery = FailureRecovery(ctx, self._config, self._store, self._kernel, notifier, wakeup)
            return self._run(ctx, plan, recovery, notifier)
        finally:
            lock.release()

    def _run(self, ctx: RebootContext, plan, recovery: FailureRecovery, notifier: RebootNotifier) -> ExitCode:
        try:
            with recovery.guard():
                _log_transition(ctx, RebootPhase.PREPARING, f"platform steps={len(plan)}")
                self._prepare(ctx, notifier)

                _log_transition(ctx, RebootPhase.DRAINING)
                self.last_report = ServiceDrainSequencer(ctx, self._sleep).run(plan)
                if ctx.anomalies:
                    logger.warning("Drain finished with %d anomalies: %s",
                                   len(ctx.anomalies), ", ".join(a.step for a in ctx.anomalies))

                _log_transition(ctx, RebootPhase.HANDOFF)
                self._handoff(ctx, recovery)
        except DrainError as e:
            _log_transition(ctx, RebootPhase.ABORTED, str(e))
            return e.exit_code
        except RebootAborted as e:
            _log_transition(ctx, RebootPhase.ABORTED, str(e))
            return ExitCode.FAILURE
        except Exception as e:
            logger.exception("Reboot failed")
            _log_transition(ctx, RebootPhase.ABORTED, str(e))
            return ExitCode.FAILURE

        _log_transition(ctx, RebootPhase.DONE)
        return ExitCode.SUCCESS
