"""Tests for RebootConfig loading and validation."""
from __future__ import annotations

from dataclasses import replace

import pytest

from switchreboot.config import DEFAULT_ALLOWED_NAMESPACES, ConfigValidationError, RebootConfig


def test_defaults():
    cfg = RebootConfig()
    assert cfg.poll_interval_s == 0.1
    assert cfg.poll_timeout_s == 5.0
    assert cfg.handshake_budget_s == 60.0
    assert cfg.poll_retry_limit == 3
    assert cfg.handshake_key == "WARM_RESTART_TABLE|syncd"


def test_env_overrides(monkeypatch):
    monkeypatch.setenv("SWITCHREBOOT_STATE_DB_URL", "redis://10.0.0.5:6379/6")
    monkeypatch.setenv("SWITCHREBOOT_MIN_FREE_MB", "512")
    monkeypatch.setenv("SWITCHREBOOT_NOTIFY_TARGETS", "http://a/hook, http://b/hook")
    monkeypatch.delenv("SWITCHREBOOT_ALLOWED_NAMESPACES", raising=False)

    cfg = RebootConfig.from_env()

    assert cfg.state_db_url == "redis://10.0.0.5:6379/6"
    assert cfg.min_free_mb == 512
    assert cfg.notify_targets == ("http://a/hook", "http://b/hook")
    assert cfg.allowed_namespaces == DEFAULT_ALLOWED_NAMESPACES


def test_allowed_namespaces_from_env(monkeypatch):
    monkeypatch.setenv("SWITCHREBOOT_ALLOWED_NAMESPACES", "FDB_TABLE|,WARM_RESTART_TABLE|")
    assert RebootConfig().allowed_namespaces == ("FDB_TABLE|", "WARM_RESTART_TABLE|")


@pytest.mark.parametrize("change", [
    {"poll_interval_s": 0},
    {"poll_timeout_s": -1},
    {"handshake_budget_s": 0.05},
    {"poll_retry_limit": 0},
    {"freeze_attempts": 0},
    {"min_free_mb": -1},
    {"allowed_namespaces": ()},
])
def test_validation_rejects(change):
    with pytest.raises(ConfigValidationError):
        replace(RebootConfig(), **change).validate()


def test_from_yaml(tmp_path):
    path = tmp_path / "reboot.yaml"
    path.write_text(
        "handshake_budget_s: 90\n"
        "allowed_namespaces:\n"
        "  - FDB_TABLE|\n"
        "platforms:\n"
        "  barefoot:\n"
        "    modes: [cold, fast, warm]\n"
    )

    cfg = RebootConfig.from_yaml(str(path))

    assert cfg.handshake_budget_s == 90
    assert cfg.allowed_namespaces == ("FDB_TABLE|",)
    assert cfg.platforms["barefoot"]["modes"] == ["cold", "fast", "warm"]


def test_from_yaml_empty_file_gives_defaults(tmp_path):
    path = tmp_path / "empty.yaml"
    path.write_text("")
    assert RebootConfig.from_yaml(str(path)).poll_retry_limit == 3


def test_from_yaml_rejects_unknown_keys(tmp_path):
    path = tmp_path / "typo.yaml"
    path.write_text("handshake_budget: 90\n")
    with pytest.raises(ConfigValidationError, match="handshake_budget"):
        RebootConfig.from_yaml(str(path))


def test_config_is_frozen():
    cfg = RebootConfig()
    with pytest.raises(Exception):
        cfg.poll_retry_limit = 10
