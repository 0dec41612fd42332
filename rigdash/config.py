from __future__ import annotations

import os
from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel, Field, field_validator


class RigctldConfig(BaseModel):
    """How to reach the rig-control daemon and how hard to poll it."""

    # 'rigctld' talks to a real daemon over TCP; 'mock' uses the built-in simulator
    backend: Literal["rigctld", "mock"] = Field(default="rigctld", description="Adapter to use")
    host: str = Field(default="127.0.0.1", description="rigctld host")
    port: int = Field(default=4532, ge=1, le=65535, description="rigctld TCP port")
    auto_connect: bool = Field(default=False, description="Connect when the app starts")
    auto_poll: bool = Field(default=True, description="Start polling as soon as a connect succeeds")
    poll_interval_ms: int = Field(default=1000, ge=50, description="Time between state polls")
    command_timeout_ms: int = Field(default=1500, ge=10, description="Deadline for a single command")
    connect_timeout_ms: int = Field(default=3000, ge=10, description="Deadline for opening the link")
    caps_timeout_ms: int = Field(default=8000, ge=10, description="Deadline for dump_caps")
    failure_threshold: int = Field(
        default=5,
        ge=0,
        description="Consecutive failed polls before the session is dropped (0 = never)",
    )
    backoff_max_ms: int = Field(default=8000, ge=50, description="Longest poll interval while degraded")
    max_pending_commands: int = Field(default=16, ge=1, description="Adapter calls allowed in flight at once")

    @field_validator("host")
    @classmethod
    def _strip_host(cls, v: str) -> str:
        v = (v or "").strip()
        if not v:
            raise ValueError("host must not be empty")
        return v


class AppConfig(BaseModel):
    """Top-level application configuration.

    Notes:
        `test_mode` is derived from the `RIGDASH_TEST_MODE` environment variable
        and is excluded from serialization.
    """

    rig: RigctldConfig = Field(default_factory=RigctldConfig)
    http_host: str = Field(default="0.0.0.0", description="HTTP bind host")
    http_port: int = Field(default=8000, ge=1, le=65535, description="HTTP port")
    log_level: str = Field(default="INFO", description="Python logging level name")
    debug_log_size: int = Field(default=500, ge=1, description="Entries kept in the traffic log")
    test_mode: bool = Field(default=False, exclude=True, description="If true, config changes are not saved to disk")

    @field_validator("log_level")
    @classmethod
    def _upper_level(cls, v: str) -> str:
        return _normalize_level(v)


def _normalize_level(v: str) -> str:
    v = (v or "INFO").strip().upper()
    if v not in {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}:
        raise ValueError(f"unknown log level: {v}")
    return v


def _apply_env(cfg: AppConfig) -> AppConfig:
    """Overlay environment overrides on a loaded config."""
    updates = {}
    host = os.getenv("RIGDASH_RIGCTLD_HOST")
    if host:
        updates["host"] = host
    port_s = os.getenv("RIGDASH_RIGCTLD_PORT")
    if port_s:
        try:
            updates["port"] = int(port_s)
        except ValueError:
            pass
    if updates:
        cfg.rig = RigctldConfig.model_validate({**cfg.rig.model_dump(), **updates})
    level = os.getenv("RIGDASH_LOG_LEVEL")
    if level:
        cfg.log_level = _normalize_level(level)
    cfg.test_mode = os.getenv("RIGDASH_TEST_MODE") == "1"
    return cfg


def default_config_path() -> Path:
    env_path = os.getenv("RIGDASH_CONFIG")
    return Path(env_path) if env_path else Path.cwd() / "rigdash.config.yaml"


def load_config(path: Path) -> AppConfig:
    """Load configuration from disk.

    A missing file is created with defaults. Environment overrides are
    applied last and are not written back.

    Args:
        path: Path to the YAML config.

    Returns:
        A validated `AppConfig` instance.
    """
    if path.exists():
        raw = yaml.safe_load(path.read_text()) or {}
        return _apply_env(AppConfig.model_validate(raw))
    cfg = AppConfig()
    cfg.test_mode = os.getenv("RIGDASH_TEST_MODE") == "1"
    save_config(cfg, path)
    return _apply_env(cfg)


def save_config(cfg: AppConfig, path: Path) -> None:
    """Persist configuration to disk.

    In `test_mode`, this is a no-op.

    Args:
        cfg: Configuration to save.
        path: Path to write YAML to.
    """
    if cfg.test_mode:
        return
    path.write_text(yaml.safe_dump(cfg.model_dump(mode="json"), sort_keys=False))
