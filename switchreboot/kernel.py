"""Kernel handoff and host facts."""
from __future__ import annotations

import logging
import os
import shutil
from pathlib import Path
from typing import Optional

from .models import BootImage, RebootMode
from .runtime import run_command

logger = logging.getLogger("switchreboot.kernel")

KEXEC = "/sbin/kexec"
REBOOT = "/sbin/reboot"

BOOT_TYPE_ARGS = {
    RebootMode.FAST: "fast-reboot",
    RebootMode.WARM: "SONIC_BOOT_TYPE=warm",
    RebootMode.FASTFAST: "SONIC_BOOT_TYPE=fastfast",
}


def boot_cmdline(image: BootImage, mode: RebootMode) -> str:
    extra = BOOT_TYPE_ARGS.get(mode, "")
    return " ".join(part for part in (image.cmdline, extra) if part)


class KernelLoader:
    """kexec reservation plus the two ways of leaving the running kernel."""

    def __init__(self, timeout: float = 30.0) -> None:
        self._timeout = timeout

    def load(self, image: BootImage, cmdline: str) -> None:
        run_command([KEXEC, "-l", image.kernel, f"--initrd={image.initrd}", f"--append={cmdline}"], self._timeout)
        logger.info("Loaded %s for kexec", image.kernel)

    def unload(self) -> None:
        run_command([KEXEC, "-u"], self._timeout)
        logger.info("kexec image unloaded")

    def execute(self) -> None:
        logger.info("Rebooting with kexec")
        run_command([KEXEC, "-e"], self._timeout)

    def power_cycle(self) -> None:
        logger.info("Rebooting with %s", REBOOT)
        run_command([REBOOT], self._timeout)


class BootImageLocator:
    """Finds the kernel and initrd of the image selected for next boot."""

    def __init__(self, image_dir: str) -> None:
        self._dir = Path(image_dir)

    def next_image(self) -> Optional[BootImage]:
        boot = self._dir / "boot"
        kernels = sorted(boot.glob("vmlinuz*"))
        initrds = sorted(boot.glob("initrd.img*"))
        if not kernels or not initrds:
            logger.debug("No kernel/initrd under %s", boot)
            return None
        cmdline_file = self._dir / "kernel-cmdline"
        cmdline = cmdline_file.read_text().strip() if cmdline_file.exists() else ""
        return BootImage(kernel=str(kernels[-1]), initrd=str(initrds[-1]), cmdline=cmdline)


class SystemProbe:
    """Read-only host facts used by the precondition checks."""

    def __init__(self, platform: str = "", machine_conf: str = "/host/machine.conf") -> None:
        self._platform = platform
        self._machine_conf = Path(machine_conf)

    def is_privileged(self) -> bool:
        return os.geteuid() == 0

    def free_bytes(self, path: str) -> int:
        return shutil.disk_usage(path).free

    def platform(self) -> str:
        if self._platform:
            return self._platform
        if self._machine_conf.exists():
            for line in self._machine_conf.read_text().splitlines():
                key, _, value = line.partition("=")
                if key.strip() in ("onie_switch_asic", "aboot_asic", "asic_type"):
                    return value.strip()
        return "unknown"
