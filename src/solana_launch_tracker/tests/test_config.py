from __future__ import annotations

from pathlib import Path

import pytest
from pydantic import ValidationError

from solana_launch_tracker.config import settings


def _clear_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in (
        "RPC__PRIMARY_URL",
        "RPC__FALLBACK_URLS",
        "RPC__REQUEST_TIMEOUT",
        "HELIUS_API_KEY",
        "HELIUS_RPC_URL",
        "LIFECYCLE__ALERT_SCORE_THRESHOLD",
        "MONITOR__POLL_INTERVAL_SECONDS",
        "TRACKER_PROFILE",
    ):
        monkeypatch.delenv(name, raising=False)


def test_app_config_loads_profiles_and_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    _clear_env(monkeypatch)
    monkeypatch.chdir(tmp_path)
    config_path = tmp_path / "app.toml"
    config_path.write_text(
        """
[default.rpc]
primary_url = "https://api.default"
request_timeout = 9.5

[default.lifecycle]
alert_score_threshold = 70

[default.monitor]
poll_interval_seconds = 2.0

[production]
environment = "production"

[production.rpc]
primary_url = "https://api.production"

[production.lifecycle]
alert_score_threshold = 85
"""
    )
    monkeypatch.setenv("APP_CONFIG_FILE", str(config_path))
    monkeypatch.setenv("TRACKER_PROFILE", "production")
    monkeypatch.setenv("RPC__REQUEST_TIMEOUT", "18")

    settings.get_app_config.cache_clear()
    try:
        cfg = settings.get_app_config()

        assert cfg.environment == settings.Environment.PRODUCTION
        assert "api.production" in str(cfg.rpc.primary_url)
        assert cfg.rpc.request_timeout == 18.0
        assert cfg.lifecycle.alert_score_threshold == 85
        assert cfg.monitor.poll_interval_seconds == 2.0
        assert settings.config_file_path() == config_path
    finally:
        settings.get_app_config.cache_clear()


def test_dedicated_rpc_is_promoted_to_primary(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    _clear_env(monkeypatch)
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("APP_CONFIG_FILE", str(tmp_path / "missing.toml"))
    monkeypatch.setenv("HELIUS_API_KEY", "secret")

    settings.get_app_config.cache_clear()
    try:
        cfg = settings.get_app_config()
    finally:
        settings.get_app_config.cache_clear()

    assert "helius-rpc.com" in str(cfg.rpc.primary_url)
    fallbacks = [str(url) for url in cfg.rpc.fallback_urls]
    assert any("api.mainnet-beta.solana.com" in url for url in fallbacks)
    assert len(fallbacks) == len(set(fallbacks))


def test_graduation_band_must_be_ordered() -> None:
    with pytest.raises(ValidationError):
        settings.LifecycleConfig(graduation_volume_lower=70_000, graduation_volume_upper=60_000)

    band = settings.LifecycleConfig(graduation_volume_lower=10_000, graduation_volume_upper=10_000)
    assert band.graduation_volume_lower == band.graduation_volume_upper


def test_fallback_urls_accept_comma_separated_strings() -> None:
    rpc = settings.RPCConfig(fallback_urls="https://a.example.com, https://b.example.com, https://a.example.com")

    assert [str(url) for url in rpc.fallback_urls] == ["https://a.example.com/", "https://b.example.com/"]


def test_history_bound_and_log_format_are_validated() -> None:
    assert settings.LifecycleConfig().history_points == 96
    with pytest.raises(ValidationError):
        settings.LifecycleConfig(history_points=2)

    monitoring = settings.MonitoringConfig(log_format="text")
    assert monitoring.log_format == "text"
    assert "httpx" in monitoring.quiet_loggers
    with pytest.raises(ValidationError):
        settings.MonitoringConfig(log_format="xml")
