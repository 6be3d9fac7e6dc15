"""
Configuration loading and validation.

Loads sync configuration from a YAML file with environment variable resolution
for secrets (API keys are never stored in config files).
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel, Field, field_validator


class BackendConfig(BaseModel):
    url: str = "http://localhost:54321"
    anon_key_env: str = "SAATHI_BACKEND_ANON_KEY"
    service_key_env: str = "SAATHI_BACKEND_SERVICE_KEY"
    verify_tls: bool = True
    request_timeout_seconds: int = 30

    @property
    def anon_key(self) -> str | None:
        return os.environ.get(self.anon_key_env)

    @property
    def service_key(self) -> str | None:
        return os.environ.get(self.service_key_env)


class CompletionConfig(BaseModel):
    url: str = "https://ai.gateway.lovable.dev/v1/chat/completions"
    api_key_env: str = "LOVABLE_API_KEY"
    model: str = "google/gemini-2.5-flash"
    request_timeout_seconds: int = 60

    @property
    def api_key(self) -> str | None:
        return os.environ.get(self.api_key_env)


class RealtimeConfig(BaseModel):
    throttle_ms: int = 1000
    # Per-panel override; insights refreshes are costly downstream
    panel_throttle_ms: dict[str, int] = Field(default_factory=lambda: {"insights": 2000})
    idle_detection: bool = True
    idle_timeout_seconds: float = 300.0

    @field_validator("throttle_ms")
    @classmethod
    def _positive_throttle(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("throttle_ms must be positive")
        return value

    def throttle_for(self, panel: str) -> float:
        """Throttle window for a panel, in seconds."""
        return self.panel_throttle_ms.get(panel, self.throttle_ms) / 1000.0


class InsightsConfig(BaseModel):
    min_refresh_hours: float = 6.0
    default_period: Literal["week", "month", "quarter", "year"] = "month"
    low_stock_threshold: int = 10


class ServerConfig(BaseModel):
    host: str = "127.0.0.1"
    port: int = 8787


class StateConfig(BaseModel):
    db_path: str = "./data/saathi_state.db"


class LoggingConfig(BaseModel):
    level: str = "info"
    format: Literal["json", "text"] = "json"


class MetricsConfig(BaseModel):
    enabled: bool = True


class SaathiConfig(BaseModel):
    backend: BackendConfig = Field(default_factory=BackendConfig)
    completion: CompletionConfig = Field(default_factory=CompletionConfig)
    realtime: RealtimeConfig = Field(default_factory=RealtimeConfig)
    insights: InsightsConfig = Field(default_factory=InsightsConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)
    state: StateConfig = Field(default_factory=StateConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    metrics: MetricsConfig = Field(default_factory=MetricsConfig)


def load_config(path: str | Path) -> SaathiConfig:
    """Load and validate sync configuration from a YAML file."""
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(path) as f:
        raw = yaml.safe_load(f) or {}

    return SaathiConfig.model_validate(raw)
