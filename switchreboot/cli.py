#!/usr/bin/env python3
"""
switch-reboot
=============
Reboot the control plane with minimal forwarding downtime.

Usage:
    switch-reboot -t warm              # warm reboot via kexec
    switch-reboot -t fast -f -v        # fast reboot, continue past forced-ignorable failures
    switch-reboot -t warm --dry-run    # check preconditions and print the plan

Exit codes:
    0 success, 1 failure, 2 not supported, 3 file system full,
    4 next image missing, 10 orchagent freeze failed,
    11 syncd pre-shutdown failed, 12 fast-reboot dump failed
"""
from __future__ import annotations

import argparse
import logging
import sys
from logging.handlers import TimedRotatingFileHandler
from pathlib import Path
from typing import Optional, Sequence

from .config import ConfigValidationError, RebootConfig
from .controller import RebootController
from .models import ExitCode, RebootMode, RebootOptions

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def setup_logging(cfg: RebootConfig, verbose: bool = False) -> logging.Logger:
    """Configure rotating file + console logger."""
    logger = logging.getLogger("switchreboot")
    logger.setLevel(logging.DEBUG)
    logger.handlers.clear()

    ch = logging.StreamHandler(sys.stdout)
    ch.setLevel(logging.DEBUG if verbose else getattr(logging, cfg.log_level.upper(), logging.INFO))
    ch.setFormatter(logging.Formatter(LOG_FORMAT))
    logger.addHandler(ch)

    try:
        log_dir = Path(cfg.log_dir)
        log_dir.mkdir(parents=True, exist_ok=True)
        fh = TimedRotatingFileHandler(
            log_dir / "switch-reboot.log",
            when="midnight",
            backupCount=cfg.log_retention_days,
            utc=True,
        )
    except OSError as e:
        logger.warning("File logging disabled: %s", e)
    else:
        fh.setLevel(logging.DEBUG)
        fh.setFormatter(logging.Formatter(LOG_FORMAT))
        logger.addHandler(fh)
    return logger


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="switch-reboot",
        description="Reboot the control plane while preserving forwarding state",
        epilog=__doc__.split("Exit codes:", 1)[1].strip() if __doc__ else None,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("-t", "--type", dest="mode", choices=[m.value for m in RebootMode],
                        default=RebootMode.FAST.value, help="reboot type (default: fast)")
    parser.add_argument("-v", "--verbose", action="store_true", help="debug output on the console")
    parser.add_argument("-f", "--force", action="store_true",
                        help="continue past failures that are only fatal when not forced")
    parser.add_argument("-r", "--reboot", action="store_true",
                        help="power-cycle with /sbin/reboot instead of kexec")
    parser.add_argument("--notify", action="append", default=[], metavar="URL",
                        help="notification target (repeatable)")
    parser.add_argument("--platform", default=None, help="override the detected platform id")
    parser.add_argument("--config", default=None, metavar="PATH", help="YAML config file")
    parser.add_argument("--dry-run", action="store_true", help="check preconditions and print the plan")
    return parser


def options_from_args(args: argparse.Namespace) -> RebootOptions:
    return RebootOptions(
        force=args.force,
        verbose=args.verbose,
        use_kexec=not args.reboot,
        dry_run=args.dry_run,
        notify_targets=tuple(args.notify),
        platform=args.platform,
    )


def run(argv: Optional[Sequence[str]] = None, controller: Optional[RebootController] = None) -> ExitCode:
    args = build_parser().parse_args(argv)
    try:
        cfg = RebootConfig.from_yaml(args.config) if args.config else RebootConfig.from_env()
    except (OSError, ConfigValidationError) as e:
        print(f"switch-reboot: invalid configuration: {e}", file=sys.stderr)
        return ExitCode.FAILURE

    logger = setup_logging(cfg, args.verbose)
    mode = RebootMode(args.mode)
    logger.info("switch-reboot starting: type=%s force=%s kexec=%s", mode.value, args.force, not args.reboot)

    controller = controller or RebootController(cfg)
    return controller.execute(mode, options_from_args(args))


def main() -> None:
    sys.exit(int(run()))


if __name__ == "__main__":
    main()
