"""Adapters for the service runtime and the daemons the drain talks to."""
from __future__ import annotations

import logging
import subprocess
from typing import Optional, Sequence

import docker
from docker.errors import APIError, NotFound

logger = logging.getLogger("switchreboot.runtime")

SYSTEMCTL = "/bin/systemctl"


class RuntimeCommandError(Exception):
    """A runtime primitive (systemctl, docker) reported failure."""


def run_command(cmd: Sequence[str], timeout: float = 30.0) -> subprocess.CompletedProcess:
    """Run *cmd*, raising RuntimeCommandError on a non-zero exit or timeout."""
    logger.debug("exec: %s", " ".join(cmd))
    try:
        result = subprocess.run(list(cmd), capture_output=True, text=True, timeout=timeout)
    except (OSError, subprocess.TimeoutExpired) as exc:
        raise RuntimeCommandError(f"{cmd[0]}: {exc}") from exc
    if result.returncode != 0:
        raise RuntimeCommandError(
            f"{' '.join(cmd)} exited {result.returncode}: {result.stderr.strip() or result.stdout.strip()}"
        )
    return result


class ServiceRuntime:
    """start/stop through systemd units, kill/exec through the container engine."""

    def __init__(self, docker_client=None, timeout: float = 30.0) -> None:
        self._docker = docker_client
        self._timeout = timeout

    def _client(self):
        if self._docker is None:
            self._docker = docker.from_env(timeout=int(self._timeout))
        return self._docker

    def start(self, service: str) -> None:
        run_command([SYSTEMCTL, "start", service], self._timeout)

    def stop(self, service: str) -> None:
        run_command([SYSTEMCTL, "stop", service], self._timeout)
        logger.info("Stopped %s", service)

    def kill(self, service: str) -> None:
        """Kill the service's container without a graceful shutdown."""
        try:
            self._client().containers.get(service).kill()
        except NotFound:
            logger.debug("Container %s not running", service)
            return
        except APIError as exc:
            raise RuntimeCommandError(f"docker kill {service}: {exc}") from exc
        logger.info("Killed %s", service)

    def exec(self, service: str, cmd: Sequence[str]) -> int:
        """Run *cmd* inside the service's container; returns the exit code."""
        try:
            container = self._client().containers.get(service)
            exit_code, output = container.exec_run(list(cmd))
        except (NotFound, APIError) as exc:
            raise RuntimeCommandError(f"docker exec {service}: {exc}") from exc
        if exit_code != 0:
            logger.debug("%s in %s exited %s: %s", cmd[0], service, exit_code,
                         (output or b"").decode(errors="replace").strip())
        return exit_code

    def stop_runtime(self) -> None:
        run_command([SYSTEMCTL, "stop", "docker"], self._timeout)


class ForwardingSyncDaemon:
    """syncd: asked to begin pre-shutdown, reports back through the state store."""

    def __init__(self, runtime: ServiceRuntime, container: str = "syncd") -> None:
        self._runtime = runtime
        self._container = container

    def request_pre_shutdown(self) -> None:
        rc = self._runtime.exec(self._container, ["/usr/bin/syncd_request_shutdown", "--pre"])
        if rc != 0:
            raise RuntimeCommandError(f"syncd_request_shutdown exited {rc}")


class OrchestrationAgent:
    """orchagent: paused so no new state reaches syncd during the handshake."""

    def __init__(self, runtime: ServiceRuntime, container: str = "swss", wait_ms: int = 2000) -> None:
        self._runtime = runtime
        self._container = container
        self._wait_ms = wait_ms

    def pause(self) -> bool:
        rc = self._runtime.exec(
            self._container,
            ["/usr/bin/orchagent_restart_check", "-w", str(self._wait_ms), "-r", "1"],
        )
        return rc == 0


class DiagnosticDump:
    """Dumps ARP/FDB/default routes for the fast-reboot restore path."""

    def __init__(self, command: Sequence[str], timeout: float = 30.0) -> None:
        self._command = tuple(command)
        self._timeout = timeout

    def run(self) -> Optional[str]:
        if not self._command:
            logger.info("No dump command configured; skipping")
            return None
        result = run_command(self._command, self._timeout)
        return result.stdout
