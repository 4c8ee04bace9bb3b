"""External notification targets.

Each target is an HTTP endpoint told when a reboot starts and, if the attempt
aborts, told that the node is back to its pre-reboot state. Delivery is best
effort: a failed POST is logged and never blocks the reboot.
"""
from __future__ import annotations

import logging
import socket
from datetime import datetime
from typing import Iterable

import requests

from .models import RebootContext

logger = logging.getLogger("switchreboot.notify")

_headers = lambda: {"Content-Type": "application/json", "User-Agent": "switch-reboot"}


class RebootNotifier:

    def __init__(self, targets: Iterable[str], timeout: float = 5.0) -> None:
        self._targets = tuple(targets)
        self._timeout = timeout

    @property
    def targets(self) -> tuple[str, ...]:
        return self._targets

    def _post(self, url: str, event: str, ctx: RebootContext) -> bool:
        try:
            r = requests.post(url, json={
                "event": event,
                "host": socket.gethostname(),
                "mode": ctx.mode.value,
                "user": ctx.user,
                "anomalies": [a.step for a in ctx.anomalies],
                "timestamp": datetime.utcnow().isoformat(),
            }, headers=_headers(), timeout=self._timeout)
            if not r.ok:
                logger.warning("Notify %s -> %s returned %s", event, url, r.status_code)
                return False
            return True
        except requests.RequestException as e:
            logger.warning("Notify %s -> %s failed: %s", event, url, e)
            return False

    def announce(self, ctx: RebootContext) -> list[str]:
        """Tell every target a reboot is starting; returns those that acknowledged.

        Every attempted target is remembered on the context, since a timed-out
        POST may still have been delivered.
        """
        acked = []
        for url in self._targets:
            ctx.notified_targets.append(url)
            if self._post(url, "reboot_started", ctx):
                acked.append(url)
        return acked

    def restore(self, ctx: RebootContext) -> None:
        for url in list(ctx.notified_targets):
            self._post(url, "reboot_aborted", ctx)
