"""Platform profiles and the drain plan each one runs.

Platform differences are resolved once, here, into an ordered list of
DrainStep. Nothing downstream branches on the platform id.

Warm family order (a step never starts before the previous one finished):

    quiesce-routing            bgpd killed so peers start graceful restart
    quiesce-link-aggregation   teamd stopped; it sends its last LACPDU while
                               the data path still forwards
    disable-router-advertisement
    stop-<early service>       platform specific
    freeze-orchestration-agent
    forwarding-sync-pre-shutdown
    backup-state
    stop-<service> / kill-<service>
    stop-container-runtime
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Optional

from .config import RebootConfig
from .models import DrainStep, ExitCode, FailurePolicy, RebootContext, RebootMode

logger = logging.getLogger("switchreboot.platforms")


@dataclass(frozen=True)
class PlatformProfile:
    name: str
    modes: frozenset[RebootMode]
    dependent_services: tuple[str, ...] = ("nat", "sflow", "lldp", "snmp", "pmon", "swss")
    early_services: tuple[str, ...] = ()
    warm_kill: tuple[str, ...] = ("swss",)
    syncd_service: str = "syncd"

    def supports(self, mode: RebootMode) -> bool:
        return mode in self.modes


_ALL_BUT_FASTFAST = frozenset({RebootMode.COLD, RebootMode.FAST, RebootMode.WARM})

PROFILES: dict[str, PlatformProfile] = {
    "broadcom": PlatformProfile("broadcom", _ALL_BUT_FASTFAST),
    "mellanox": PlatformProfile(
        "mellanox",
        frozenset(RebootMode),
        early_services=("pmon",),
        dependent_services=("nat", "sflow", "lldp", "snmp", "swss"),
    ),
    "vs": PlatformProfile("vs", _ALL_BUT_FASTFAST),
}

DEFAULT_PROFILE = PlatformProfile("generic", frozenset({RebootMode.COLD, RebootMode.FAST}))


def load_profiles(overrides: Optional[dict[str, Any]] = None) -> dict[str, PlatformProfile]:
    """Built-in profiles updated with the ``platforms:`` section of the config."""
    profiles = dict(PROFILES)
    for name, raw in (overrides or {}).items():
        base = profiles.get(name, DEFAULT_PROFILE)
        raw = raw or {}
        modes = raw.get("modes")
        profiles[name] = PlatformProfile(
            name=name,
            modes=frozenset(RebootMode(m) for m in modes) if modes is not None else base.modes,
            dependent_services=tuple(raw.get("dependent_services", base.dependent_services)),
            early_services=tuple(raw.get("early_services", base.early_services)),
            warm_kill=tuple(raw.get("warm_kill", base.warm_kill)),
            syncd_service=raw.get("syncd_service", base.syncd_service),
        )
    return profiles


def resolve_profile(platform: str, overrides: Optional[dict[str, Any]] = None) -> PlatformProfile:
    profiles = load_profiles(overrides)
    profile = profiles.get(platform)
    if profile is None:
        logger.info("No profile for platform %r, using %s", platform, DEFAULT_PROFILE.name)
        return DEFAULT_PROFILE
    return profile


def _exit_ok(rc: Any) -> bool:
    # pkill exits 1 when nothing matched, which is fine
    return rc in (0, 1)


@dataclass
class PlanBuilder:
    """Binds the collaborators the steps act on."""

    config: RebootConfig
    runtime: Any
    agent: Any
    coordinator: Any
    snapshots: Any
    dump: Any
    steps: list[DrainStep] = field(default_factory=list)

    def _add(self, name: str, action, policy: FailurePolicy = FailurePolicy.IGNORABLE, **kwargs) -> None:
        self.steps.append(DrainStep(name=name, action=action, on_failure=policy, **kwargs))

    def _record_snapshot(self, ctx: RebootContext):
        handle = self.snapshots.snapshot()
        ctx.snapshot_path = handle.path
        return handle

    def build(self, profile: PlatformProfile, mode: RebootMode) -> list[DrainStep]:
        self.steps = []
        rt = self.runtime
        if mode is RebootMode.COLD:
            return self.steps

        if mode is RebootMode.FAST:
            self._add("fast-reboot-dump", lambda ctx: self.dump.run(), FailurePolicy.FATAL,
                      exit_code=ExitCode.FAST_REBOOT_DUMP_FAILURE)
            self._add("quiesce-routing", lambda ctx: rt.stop("bgp"), FailurePolicy.IGNORABLE_IF_FORCED)
        else:
            self._add("quiesce-routing",
                      lambda ctx: max(rt.exec("bgp", ["pkill", "-9", "zebra"]),
                                      rt.exec("bgp", ["pkill", "-9", "bgpd"])),
                      FailurePolicy.IGNORABLE_IF_FORCED, succeeded=_exit_ok)
        self._add("quiesce-link-aggregation", lambda ctx: rt.stop("teamd"), FailurePolicy.IGNORABLE_IF_FORCED)
        self._add("disable-router-advertisement", lambda ctx: rt.kill("radv"))
        for service in profile.early_services:
            self._add(f"stop-{service}", lambda ctx, s=service: rt.stop(s))

        if mode.is_warm:
            self._add("freeze-orchestration-agent", lambda ctx: self.agent.pause(),
                      FailurePolicy.IGNORABLE_IF_FORCED, exit_code=ExitCode.ORCHAGENT_SHUTDOWN,
                      attempts=self.config.freeze_attempts, backoff_s=self.config.freeze_backoff_s)
            self._add("forwarding-sync-pre-shutdown", lambda ctx: self.coordinator.request_pre_shutdown(),
                      FailurePolicy.FATAL, exit_code=ExitCode.SYNCD_SHUTDOWN)
            self._add("backup-state", self._record_snapshot, FailurePolicy.FATAL, exit_code=ExitCode.FAILURE)

        for service in profile.dependent_services:
            if mode.is_warm and service in profile.warm_kill:
                continue
            self._add(f"stop-{service}", lambda ctx, s=service: rt.stop(s))
        if mode.is_warm:
            for service in profile.warm_kill + (profile.syncd_service,):
                self._add(f"kill-{service}", lambda ctx, s=service: rt.kill(s))
        else:
            self._add(f"stop-{profile.syncd_service}", lambda ctx: rt.stop(profile.syncd_service))

        self._add("stop-container-runtime", lambda ctx: rt.stop_runtime())
        return self.steps
