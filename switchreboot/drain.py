"""Ordered, fault-isolated service drain."""
from __future__ import annotations

import logging
import time
from typing import Callable, Iterable

from .models import DrainReport, DrainStep, ExitCode, FailurePolicy, RebootContext

logger = logging.getLogger("switchreboot.drain")


class DrainError(Exception):
    """A drain step failed under a policy that does not allow continuing."""

    def __init__(self, step: str, exit_code: ExitCode, detail: str) -> None:
        super().__init__(f"drain step '{step}' failed: {detail}")
        self.step = step
        self.exit_code = exit_code
        self.detail = detail


class ServiceDrainSequencer:
    """Runs drain steps strictly in order.

    Step N+1 never starts unless step N succeeded or failed under a policy
    that tolerates it. Tolerated failures become anomalies on the context.
    """

    def __init__(self, ctx: RebootContext, sleep: Callable[[float], None] = time.sleep) -> None:
        self._ctx = ctx
        self._sleep = sleep

    def _attempt(self, step: DrainStep) -> tuple[bool, str]:
        detail = ""
        for attempt in range(1, step.attempts + 1):
            try:
                result = step.action(self._ctx)
                if step.succeeded(result):
                    return True, ""
                detail = f"unexpected result {result!r}"
            except Exception as exc:
                detail = str(exc) or exc.__class__.__name__
            if attempt < step.attempts:
                logger.info(
                    "Step %s attempt %d/%d failed: %s; retrying in %.1fs",
                    step.name, attempt, step.attempts, detail, step.backoff_s,
                )
                self._sleep(step.backoff_s)
        return False, detail

    def run(self, steps: Iterable[DrainStep]) -> DrainReport:
        report = DrainReport()
        for step in steps:
            logger.info("Drain step: %s", step.name)
            ok, detail = self._attempt(step)
            if ok:
                report.completed.append(step.name)
                continue

            policy = step.on_failure
            if policy is FailurePolicy.IGNORABLE_IF_FORCED and self._ctx.options.force:
                logger.warning("Step %s failed (%s); continuing because of --force", step.name, detail)
            elif policy is FailurePolicy.IGNORABLE:
                logger.warning("Step %s failed (%s); ignored", step.name, detail)
            else:
                logger.error("Step %s failed: %s", step.name, detail)
                raise DrainError(step.name, step.exit_code, detail)

            report.anomalies.append(self._ctx.record_anomaly(step.name, detail))
        return report
