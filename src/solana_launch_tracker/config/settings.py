"""Configuration management for the launch tracker."""

from __future__ import annotations

import os
import tomllib
from enum import Enum
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple, cast

from pydantic import AnyHttpUrl, BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from ..utils.constants import PUBLIC_RPC_HOSTS, PUMP_FUN_PROGRAM_ID


DEFAULT_CONFIG_FILE = Path("config/app.toml")
CONFIG_FILE_ENV_VAR = "APP_CONFIG_FILE"
PROFILE_ENV_VAR = "TRACKER_PROFILE"


class Environment(str, Enum):
    """Deployment environments."""

    DEVELOPMENT = "development"
    PRODUCTION = "production"


class GraduationRule(str, Enum):
    """Which signal moves a tracked token into the graduated state."""

    VOLUME_BAND = "volume_band"
    SCORE = "score"
    EITHER = "either"


def _resolve_config_path() -> Path:
    env_value = os.getenv(CONFIG_FILE_ENV_VAR)
    if env_value:
        candidate = Path(env_value)
        if not candidate.is_absolute():
            candidate = Path.cwd() / candidate
        return candidate
    return Path.cwd() / DEFAULT_CONFIG_FILE


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    result: Dict[str, Any] = {**base}
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(cast(Dict[str, Any], result[key]), value)
        else:
            result[key] = value
    return result


def _select_profile(data: Dict[str, Any]) -> Dict[str, Any]:
    if not data:
        return {}
    base_section = cast(Dict[str, Any], data.get("default", {}))
    requested = (os.getenv(PROFILE_ENV_VAR) or "").lower()
    if requested and requested != "default" and requested in data:
        return _deep_merge(base_section, cast(Dict[str, Any], data[requested]))
    if base_section:
        return base_section
    return data


def _load_toml_config() -> Tuple[Dict[str, Any], Optional[Path]]:
    path = _resolve_config_path()
    if not path.exists():
        return {}, None
    with path.open("rb") as handle:
        payload = tomllib.load(handle)
    if not isinstance(payload, dict):
        return {}, path
    merged = _select_profile(payload)
    if not isinstance(merged, dict):
        return {}, path
    return dict(merged), path


class RPCConfig(BaseModel):
    """RPC endpoints and the retry policy shared by every RPC call."""

    primary_url: AnyHttpUrl = Field(default="https://api.mainnet-beta.solana.com")
    fallback_urls: List[AnyHttpUrl] = Field(
        default_factory=lambda: ["https://solana-api.projectserum.com", "https://rpc.ankr.com/solana"]
    )
    request_timeout: float = Field(default=30.0, ge=1.0, le=120.0)
    commitment: str = Field(default="confirmed")
    max_retries: int = Field(default=5, ge=1, le=20)
    retry_base_delay_seconds: float = Field(default=0.5, ge=0.0)
    probe_attempts: int = Field(default=2, ge=1, le=10)
    request_concurrency: int = Field(default=4, ge=1, le=64)
    public_endpoint_hosts: List[str] = Field(default_factory=lambda: list(PUBLIC_RPC_HOSTS))

    @field_validator("fallback_urls", mode="before")
    @classmethod
    def _unique_urls(cls, value: Iterable[AnyHttpUrl]) -> List[AnyHttpUrl]:
        if isinstance(value, str):
            value = [item.strip() for item in value.split(",") if item.strip()]
        seen: set[str] = set()
        unique: List[AnyHttpUrl] = []
        for url in value:
            if str(url) not in seen:
                unique.append(url)
                seen.add(str(url))
        return unique

    @field_validator("request_timeout", mode="before")
    @classmethod
    def _parse_request_timeout(cls, value) -> float:
        if isinstance(value, str):
            return float(value)
        return value


class MonitorConfig(BaseModel):
    """Polling of the launch program."""

    program_id: str = Field(default=PUMP_FUN_PROGRAM_ID)
    poll_interval_seconds: float = Field(default=5.0, gt=0.0, le=60.0)
    signature_page_limit: int = Field(default=50, ge=1, le=1_000)
    max_signature_pages: int = Field(default=3, ge=1, le=50)
    dedup_retention_seconds: int = Field(default=86_400, ge=60)
    dedup_max_entries: int = Field(default=100_000, ge=100)
    metrics_refresh_interval_seconds: float = Field(default=30.0, gt=0.0)
    max_error_backoff_seconds: float = Field(default=300.0, ge=1.0)
    stop_on_connection_loss: bool = True


class LifecycleConfig(BaseModel):
    """Scoring thresholds and token lifecycle windows."""

    alert_score_threshold: int = Field(default=80, ge=0, le=100)
    graduation_rule: GraduationRule = Field(default=GraduationRule.VOLUME_BAND)
    graduation_volume_lower: float = Field(default=50_000.0, ge=0.0)
    graduation_volume_upper: float = Field(default=69_000.0, ge=0.0)
    graduation_score_threshold: int = Field(default=95, ge=0, le=100)
    stale_after_seconds: int = Field(default=86_400, ge=60)
    signature_memory: int = Field(default=512, ge=1)
    recent_event_window_hours: int = Field(default=48, ge=1)
    persistence_max_retries: int = Field(default=3, ge=1, le=10)
    persistence_retry_base_delay_seconds: float = Field(default=0.25, ge=0.0)
    persistence_timeout_seconds: float = Field(default=10.0, gt=0.0)
    history_points: int = Field(default=96, ge=3)

    @model_validator(mode="after")
    def _check_band(self) -> "LifecycleConfig":
        if self.graduation_volume_upper < self.graduation_volume_lower:
            raise ValueError("graduation_volume_upper must not be below graduation_volume_lower")
        return self


class ProgramRegistryConfig(BaseModel):
    """Additional program ids layered on top of the built-in registry."""

    extra_dex_program_ids: List[str] = Field(default_factory=list)
    extra_liquidity_program_ids: List[str] = Field(default_factory=list)


class PricingConfig(BaseModel):
    """Quote price feed used when building metric snapshots."""

    enabled: bool = True
    price_url: AnyHttpUrl = Field(default="https://lite-api.jup.ag/price/v3")
    cache_ttl_seconds: int = Field(default=30, ge=0)
    http_timeout: float = Field(default=10.0, ge=1.0, le=45.0)


class StorageConfig(BaseModel):
    """State persistence configuration."""

    database_path: Path = Field(default=Path("./tracker.sqlite3"))


class MonitoringConfig(BaseModel):
    """Logging and operational alerting configuration."""

    log_level: str = Field(default="INFO")
    log_format: str = Field(default="json", pattern="^(json|text)$")
    quiet_loggers: List[str] = Field(default_factory=lambda: ["httpx", "httpcore", "urllib3"])
    slack_webhook_url: Optional[AnyHttpUrl] = None
    webhook_urls: List[AnyHttpUrl] = Field(default_factory=list)
    alert_throttle_seconds: int = Field(default=60, ge=0)
    event_history_size: int = Field(default=500, ge=10)


class NotificationConfig(BaseModel):
    """Sinks that receive token alerts."""

    webhook_urls: List[AnyHttpUrl] = Field(default_factory=list)
    log_alerts: bool = True
    http_timeout: float = Field(default=5.0, ge=0.5, le=30.0)


class AppConfig(BaseSettings):
    """Aggregated application configuration."""

    environment: Environment = Field(default=Environment.DEVELOPMENT)
    rpc: RPCConfig = Field(default_factory=RPCConfig)
    monitor: MonitorConfig = Field(default_factory=MonitorConfig)
    lifecycle: LifecycleConfig = Field(default_factory=LifecycleConfig)
    programs: ProgramRegistryConfig = Field(default_factory=ProgramRegistryConfig)
    pricing: PricingConfig = Field(default_factory=PricingConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)
    notifications: NotificationConfig = Field(default_factory=NotificationConfig)

    model_config = SettingsConfigDict(
        env_file=".env",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
    )

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls,
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        def file_settings(_: Optional[BaseSettings] = None) -> Dict[str, Any]:
            payload, _ = _load_toml_config()
            return payload

        # Environment variables win over the static config file.
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            file_settings,
            file_secret_settings,
        )

    @model_validator(mode="after")
    def _promote_dedicated_rpc(self) -> "AppConfig":
        helius_url = os.getenv("HELIUS_RPC_URL")
        if not helius_url:
            helius_key = os.getenv("HELIUS_API_KEY")
            if helius_key:
                helius_url = f"https://mainnet.helius-rpc.com/?api-key={helius_key.strip()}"
        if helius_url:
            previous_primary = str(self.rpc.primary_url)
            self.rpc.primary_url = helius_url
            candidates = [previous_primary, *[str(url) for url in self.rpc.fallback_urls]]
            seen: set[str] = {str(self.rpc.primary_url)}
            deduped: list[str] = []
            for url in candidates:
                if url in seen:
                    continue
                seen.add(url)
                deduped.append(url)
            self.rpc.fallback_urls = deduped
        return self


def config_file_path() -> Optional[Path]:
    """Return the TOML file the configuration was loaded from, if any."""

    path = _resolve_config_path()
    return path if path.exists() else None


@lru_cache(maxsize=1)
def get_app_config() -> AppConfig:
    """Create a cached application configuration object."""

    return AppConfig()


__all__ = [
    "AppConfig",
    "Environment",
    "GraduationRule",
    "LifecycleConfig",
    "MonitorConfig",
    "MonitoringConfig",
    "NotificationConfig",
    "PricingConfig",
    "ProgramRegistryConfig",
    "RPCConfig",
    "StorageConfig",
    "config_file_path",
    "get_app_config",
]
