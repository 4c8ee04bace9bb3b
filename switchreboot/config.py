"""switch-reboot configuration.

Defaults come from SWITCHREBOOT_* environment variables (a .env file is
honoured); a YAML file may override any field and add platform profiles.
"""
from __future__ import annotations

import os
from dataclasses import dataclass, field, fields, replace
from typing import Any

import yaml
from dotenv import load_dotenv

load_dotenv()

DEFAULT_ALLOWED_NAMESPACES = (
    "FDB_TABLE|",
    "WARM_RESTART_TABLE|",
    "WARM_RESTART_ENABLE_TABLE|",
    "MIRROR_SESSION_TABLE|",
    "VXLAN_TUNNEL_TABLE|",
    "BUFFER_MAX_PARAM_TABLE|",
    "FAST_RESTART_ENABLE_TABLE|",
)


class ConfigValidationError(ValueError):
    """Raised when a configuration value is out of range."""


def _env_list(name: str, default: tuple[str, ...] = ()) -> tuple[str, ...]:
    raw = os.getenv(name, "")
    if not raw:
        return default
    return tuple(item.strip() for item in raw.split(",") if item.strip())


@dataclass(frozen=True)
class RebootConfig:
    """Immutable configuration for one reboot attempt."""

    # State store (STATE_DB)
    state_db_url: str = field(default_factory=lambda: os.getenv("SWITCHREBOOT_STATE_DB_URL", "redis://127.0.0.1:6379/6"))
    state_db_socket_timeout_s: float = field(default_factory=lambda: float(os.getenv("SWITCHREBOOT_STATE_DB_TIMEOUT_S", "5")))
    handshake_key: str = "WARM_RESTART_TABLE|syncd"
    warm_intent_key: str = "WARM_RESTART_ENABLE_TABLE|system"

    # Pre-shutdown handshake timing
    poll_interval_s: float = 0.1
    poll_timeout_s: float = 5.0
    handshake_budget_s: float = 60.0
    poll_retry_limit: int = 3

    # orchagent freeze
    freeze_attempts: int = 5
    freeze_backoff_s: float = 2.0

    # Snapshot
    warm_dir: str = field(default_factory=lambda: os.getenv("SWITCHREBOOT_WARM_DIR", "/host/warmboot"))
    snapshot_name: str = "state-snapshot.json"
    allowed_namespaces: tuple[str, ...] = field(
        default_factory=lambda: _env_list("SWITCHREBOOT_ALLOWED_NAMESPACES", DEFAULT_ALLOWED_NAMESPACES)
    )

    # Host
    reboot_cause_file: str = field(default_factory=lambda: os.getenv("SWITCHREBOOT_REBOOT_CAUSE_FILE", "/host/reboot-cause/reboot-cause.txt"))
    lock_file: str = field(default_factory=lambda: os.getenv("SWITCHREBOOT_LOCK_FILE", "/var/run/switch-reboot.lock"))
    host_volume: str = field(default_factory=lambda: os.getenv("SWITCHREBOOT_HOST_VOLUME", "/host"))
    min_free_mb: int = field(default_factory=lambda: int(os.getenv("SWITCHREBOOT_MIN_FREE_MB", "200")))
    next_image_dir: str = field(default_factory=lambda: os.getenv("SWITCHREBOOT_NEXT_IMAGE_DIR", "/host/next-image"))
    platform: str = field(default_factory=lambda: os.getenv("SWITCHREBOOT_PLATFORM", ""))
    dump_command: tuple[str, ...] = field(
        default_factory=lambda: _env_list("SWITCHREBOOT_DUMP_COMMAND", ("/usr/local/bin/fast-reboot-dump", "-t", "/host/fast-reboot"))
    )
    command_timeout_s: float = 30.0

    # External notification
    notify_targets: tuple[str, ...] = field(default_factory=lambda: _env_list("SWITCHREBOOT_NOTIFY_TARGETS"))
    notify_timeout_s: float = 5.0

    # Logging
    log_dir: str = field(default_factory=lambda: os.getenv("SWITCHREBOOT_LOG_DIR", "/var/log/switch-reboot"))
    log_level: str = field(default_factory=lambda: os.getenv("SWITCHREBOOT_LOG_LEVEL", "INFO"))
    log_retention_days: int = 7

    # Platform profile overrides, keyed by platform id (see platforms.load_profiles)
    platforms: dict[str, Any] = field(default_factory=dict)

    def validate(self) -> RebootConfig:
        if self.poll_interval_s <= 0:
            raise ConfigValidationError("poll_interval_s must be positive")
        if self.poll_timeout_s <= 0:
            raise ConfigValidationError("poll_timeout_s must be positive")
        if self.handshake_budget_s < self.poll_interval_s:
            raise ConfigValidationError("handshake_budget_s must cover at least one poll")
        if self.poll_retry_limit < 1:
            raise ConfigValidationError("poll_retry_limit must be >= 1")
        if self.freeze_attempts < 1:
            raise ConfigValidationError("freeze_attempts must be >= 1")
        if self.min_free_mb < 0:
            raise ConfigValidationError("min_free_mb must be >= 0")
        if not self.allowed_namespaces:
            raise ConfigValidationError("allowed_namespaces must not be empty")
        return self

    @classmethod
    def from_env(cls) -> RebootConfig:
        """Create config from environment, raising on invalid values."""
        return cls().validate()

    @classmethod
    def from_yaml(cls, path: str) -> RebootConfig:
        """Environment defaults overridden by the keys present in *path*."""
        with open(path, "r") as f:
            raw: dict[str, Any] = yaml.safe_load(f) or {}
        known = {f.name for f in fields(cls)}
        unknown = set(raw) - known
        if unknown:
            raise ConfigValidationError(f"unknown config keys: {', '.join(sorted(unknown))}")
        overrides: dict[str, Any] = {}
        for key, value in raw.items():
            if key in ("allowed_namespaces", "dump_command", "notify_targets"):
                value = tuple(value or ())
            overrides[key] = value
        return replace(cls(), **overrides).validate()
