"""Application configuration loaded from config.yaml + environment variables."""

from __future__ import annotations

import yaml
from pathlib import Path
from pydantic import Field
from pydantic_settings import BaseSettings

_CONFIG_PATH = Path(__file__).resolve().parent.parent / "config.yaml"


def _load_yaml() -> dict:
    if _CONFIG_PATH.exists():
        with open(_CONFIG_PATH) as f:
            return yaml.safe_load(f) or {}
    return {}


_yaml = _load_yaml()


class ScoreWeights(BaseSettings):
    proximity: float = 0.4
    skills: float = 0.3
    workload: float = 0.2
    rating: float = 0.1


class DispatchConfig(BaseSettings):
    offer_window_seconds: int = 300
    scan_interval_seconds: int = 60
    scanner_enabled: bool = True
    max_concurrent_interventions: int = 3
    max_distance_km: float = 50.0
    default_rating: float = 3.0
    weights: ScoreWeights = Field(default_factory=ScoreWeights)


class PaymentConfig(BaseSettings):
    stripe_secret_key: str = ""
    default_currency: str = "eur"
    provider_max_attempts: int = 3
    provider_retry_base_delay: float = 0.5


class Settings(BaseSettings):
    database_url: str = "sqlite+aiosqlite:///data/fieldops.db"
    service_api_key: str = ""
    dispatch: DispatchConfig = Field(default_factory=DispatchConfig)
    payments: PaymentConfig = Field(default_factory=PaymentConfig)

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "extra": "ignore"}


def get_settings() -> Settings:
    """Build Settings by merging YAML defaults with env overrides."""
    y = _yaml
    dispatch_yaml = dict(y.get("dispatch", {}))
    weights = ScoreWeights(**dispatch_yaml.pop("weights", {}))
    dispatch = DispatchConfig(weights=weights, **dispatch_yaml)
    payments = PaymentConfig(**y.get("payments", {}))
    overrides = {}
    db_url = y.get("database", {}).get("url")
    if db_url:
        overrides["database_url"] = db_url
    if y.get("service_api_key"):
        overrides["service_api_key"] = y["service_api_key"]
    return Settings(dispatch=dispatch, payments=payments, **overrides)
