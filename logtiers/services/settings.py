"""
logtiers/services/settings.py

Loads runtime settings from config/settings.yaml into a validated model.

LOGTIERS_SETTINGS_PATH overrides the file location. A missing file yields the
built-in defaults; a malformed one raises RuntimeError. A few deployment values
(database path, upstream credentials) can also be set through the environment.
"""
from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

_DEFAULT_SETTINGS_PATH = (
    Path(__file__).resolve().parents[2] / "config" / "settings.yaml"
)


class _SettingsModel(BaseModel):
    model_config = ConfigDict(extra="forbid")


class StoreSettings(_SettingsModel):
    db_path: str = "data/logtiers.db"
    cursor_path: str = "data/ingestion_cursor.json"
    metrics_path: Optional[str] = "data/metrics.json"


class TierSettings(_SettingsModel):
    hot_days: float = 7
    warm_days: float = 21
    retention_days: float = 90
    fallback_retention_days: float = 7
    tiering_enabled: bool = True

    @model_validator(mode="after")
    def _thresholds_increase(self):
        if not (0 < self.hot_days < self.warm_days < self.retention_days):
            raise ValueError(
                "tier thresholds must satisfy 0 < hot_days < warm_days < retention_days"
            )
        if self.fallback_retention_days <= 0:
            raise ValueError("fallback_retention_days must be positive")
        return self


class ScheduleSettings(_SettingsModel):
    poll_interval_seconds: float = Field(default=10, gt=0)
    rollover_interval_seconds: float = Field(default=3600, gt=0)
    dedup_interval_seconds: float = Field(default=6 * 3600, gt=0)
    retention_interval_seconds: float = Field(default=24 * 3600, gt=0)
    level_normalize_interval_seconds: float = Field(default=3600, gt=0)
    lease_ttl_seconds: float = Field(default=30, gt=0)


class IngestionSettings(_SettingsModel):
    overlap_seconds: float = Field(default=20, ge=0)
    initial_lookback_seconds: float = Field(default=300, ge=0)
    fetch_limit: int = Field(default=1000, gt=0)
    fetch_timeout_seconds: float = Field(default=10, gt=0)
    high_severity_level: int = Field(default=12, ge=0)


class MigrationSettings(_SettingsModel):
    batch_size: int = Field(default=1000, gt=0)


class FanoutSettings(_SettingsModel):
    max_workers: int = Field(default=3, gt=0)
    high_severity_level: int = Field(default=12, ge=0)
    default_range: str = "24h"


class SourceSettings(_SettingsModel):
    url: str = "http://localhost:9000/api/search/universal/absolute"
    query: str = "*"
    fields: str = (
        "timestamp,source,level,message,src_ip,dest_ip,protocol,rule_level,"
        "rule_description,event_type,agent_name,manager_name,id"
    )
    stream_id: Optional[str] = None
    username: Optional[str] = None
    password: Optional[str] = None


class Settings(_SettingsModel):
    store: StoreSettings = Field(default_factory=StoreSettings)
    tiers: TierSettings = Field(default_factory=TierSettings)
    schedule: ScheduleSettings = Field(default_factory=ScheduleSettings)
    ingestion: IngestionSettings = Field(default_factory=IngestionSettings)
    migration: MigrationSettings = Field(default_factory=MigrationSettings)
    fanout: FanoutSettings = Field(default_factory=FanoutSettings)
    source: SourceSettings = Field(default_factory=SourceSettings)

    @model_validator(mode="after")
    def _one_high_severity_level(self):
        if self.ingestion.high_severity_level != self.fanout.high_severity_level:
            raise ValueError(
                "ingestion.high_severity_level and fanout.high_severity_level must match"
            )
        return self


_ENV_OVERRIDES = {
    "LOGTIERS_DB_PATH": ("store", "db_path"),
    "GRAYLOG_URL": ("source", "url"),
    "GRAYLOG_USERNAME": ("source", "username"),
    "GRAYLOG_PASSWORD": ("source", "password"),
}


def _apply_env_overrides(data: Dict[str, Any]) -> Dict[str, Any]:
    for env_name, (section, key) in _ENV_OVERRIDES.items():
        value = os.environ.get(env_name)
        if value:
            section_data = data.get(section) or {}
            if not isinstance(section_data, dict):
                raise RuntimeError(f"Settings section '{section}' must be a YAML mapping.")
            data[section] = {**section_data, key: value}
    return data


def load_settings(path: Optional[Path] = None) -> Settings:
    """Read settings from ``path``, LOGTIERS_SETTINGS_PATH or the bundled file."""
    if path is None:
        path_str = os.environ.get("LOGTIERS_SETTINGS_PATH")
        path = Path(path_str) if path_str else _DEFAULT_SETTINGS_PATH

    data: Dict[str, Any] = {}
    if path.exists():
        with path.open("r", encoding="utf-8") as fh:
            loaded = yaml.safe_load(fh)
        if loaded is None:
            loaded = {}
        if not isinstance(loaded, dict):
            raise RuntimeError(f"Settings file at {path} must be a YAML mapping at the top level.")
        data = loaded

    data = _apply_env_overrides(data)

    try:
        return Settings.model_validate(data)
    except ValidationError as exc:
        raise RuntimeError(f"Invalid settings in {path}: {exc}") from exc
