"""
Layered configuration for daytrace.
Priority: defaults → ~/.daytrace/config.yaml → environment variables
"""
from __future__ import annotations

import os
from pathlib import Path
from typing import Literal, Optional

import yaml
from pydantic import BaseModel, Field

CONFIG_DIR = Path.home() / ".daytrace"
CONFIG_FILE = CONFIG_DIR / "config.yaml"


class BatchingConfig(BaseModel):
    max_gap_seconds: int = 120          # larger gap ⇒ capture was paused
    target_batch_seconds: int = 900
    lookback_hours: int = 24
    min_batch_seconds: int = 300        # shorter batches are skipped_short


class CategoryConfig(BaseModel):
    name: str
    description: str = ""


def _default_categories() -> list[CategoryConfig]:
    return [
        CategoryConfig(name="Work", description="Focused work: coding, writing, design, research for a task"),
        CategoryConfig(name="Personal", description="Personal errands, shopping, finances, messaging friends"),
        CategoryConfig(name="Distraction", description="Social feeds, entertainment, aimless browsing"),
    ]


class AnalysisConfig(BaseModel):
    mode: Literal["sliding_window", "whole_batch"] = "sliding_window"
    window_seconds: int = 3600
    max_validation_attempts: int = 3
    max_transient_attempts: int = 3
    retry_base_delay: float = 5.0
    min_card_minutes: float = 10.0
    coverage_flex_minutes: float = 3.0
    coverage_tolerance: float = 0.1
    distraction_min_seconds: int = 30
    observation_tolerance_seconds: int = 120
    error_cards: bool = True
    timelapses: bool = False
    timelapse_speedup: int = 20
    categories: list[CategoryConfig] = Field(default_factory=_default_categories)


class ProviderConfig(BaseModel):
    kind: Literal["gemini", "ollama", "backend", "none"] = "gemini"


class GeminiConfig(BaseModel):
    api_key: str = ""
    model: str = "gemini-2.5-flash"
    temperature: float = 0.3
    request_timeout: int = 300
    upload_timeout: int = 360
    poll_interval: float = 2.0


class OllamaConfig(BaseModel):
    model: str = "qwen2.5vl:3b"
    host: str = "http://localhost:11434"
    temperature: float = 0.3
    request_timeout: int = 120
    frame_interval_seconds: int = 60


class BackendConfig(BaseModel):
    endpoint: str = "https://api.daytrace.app"
    token: str = ""
    request_timeout: int = 300


class SchedulerConfig(BaseModel):
    check_interval_seconds: int = 60
    max_concurrent_batches: int = 4
    # above the worst case of a run with every retry exhausted
    batch_timeout_seconds: int = 7200
    status_poll_seconds: float = 2.0


class StorageConfig(BaseModel):
    data_dir: str = "~/.daytrace/data"
    auto_delete_recordings_days: int = 3

    @property
    def data_path(self) -> Path:
        return Path(self.data_dir).expanduser()

    @property
    def timelapse_path(self) -> Path:
        return self.data_path / "timelapses"

    @property
    def db_path(self) -> Path:
        return self.data_path / "daytrace.db"


class DisplayConfig(BaseModel):
    log_level: str = "INFO"


class Config(BaseModel):
    batching: BatchingConfig = Field(default_factory=BatchingConfig)
    analysis: AnalysisConfig = Field(default_factory=AnalysisConfig)
    provider: ProviderConfig = Field(default_factory=ProviderConfig)
    gemini: GeminiConfig = Field(default_factory=GeminiConfig)
    ollama: OllamaConfig = Field(default_factory=OllamaConfig)
    backend: BackendConfig = Field(default_factory=BackendConfig)
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    display: DisplayConfig = Field(default_factory=DisplayConfig)

    # Convenience proxy
    @property
    def data_path(self) -> Path:
        return self.storage.data_path


def load_config(path: Optional[Path] = None) -> Config:
    """Load config from file with safe defaults for any missing key."""
    raw: dict = {}
    config_file = path or CONFIG_FILE

    if config_file.exists():
        with open(config_file) as f:
            loaded = yaml.safe_load(f)
            if isinstance(loaded, dict):
                raw = loaded

    # Environment variable overrides (DAYTRACE_SECTION_KEY format)
    _apply_env_overrides(raw)

    return Config(**raw)


def _apply_env_overrides(raw: dict) -> None:
    mappings = {
        "DAYTRACE_PROVIDER": ("provider", "kind"),
        "GEMINI_API_KEY": ("gemini", "api_key"),
        "DAYTRACE_GEMINI_API_KEY": ("gemini", "api_key"),
        "DAYTRACE_GEMINI_MODEL": ("gemini", "model"),
        "DAYTRACE_OLLAMA_MODEL": ("ollama", "model"),
        "DAYTRACE_OLLAMA_HOST": ("ollama", "host"),
        "DAYTRACE_BACKEND_ENDPOINT": ("backend", "endpoint"),
        "DAYTRACE_BACKEND_TOKEN": ("backend", "token"),
        "DAYTRACE_ANALYSIS_MODE": ("analysis", "mode"),
        "DAYTRACE_DATA_DIR": ("storage", "data_dir"),
        "DAYTRACE_LOG_LEVEL": ("display", "log_level"),
    }
    # Later entries win, so the DAYTRACE_ key beats the generic GEMINI_API_KEY
    for env_key, (section, key) in mappings.items():
        val = os.getenv(env_key)
        if val:
            raw.setdefault(section, {})[key] = val
