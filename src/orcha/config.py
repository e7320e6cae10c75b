"""Configuration management for Orcha."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class OrchaSettings(BaseSettings):
    """Runtime configuration sourced from environment variables and optional .env file."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    home_dir: Path = Field(default=Path("~/.orcha"), validation_alias="ORCHA_HOME")
    worktree_root: Path | None = Field(default=None, validation_alias="ORCHA_WORKTREE_ROOT")
    status_root: Path = Field(default=Path("/tmp/orcha"), validation_alias="ORCHA_STATUS_ROOT")
    idle_timeout: float = Field(default=30.0, validation_alias="ORCHA_IDLE_TIMEOUT")
    poll_interval: float = Field(default=1.0, validation_alias="ORCHA_POLL_INTERVAL")
    capture_lines: int = Field(default=30, validation_alias="ORCHA_CAPTURE_LINES")
    pane_heuristics: bool = Field(default=True, validation_alias="ORCHA_PANE_HEURISTICS")
    log_level: str = Field(default="INFO", validation_alias="ORCHA_LOG_LEVEL")

    @field_validator("log_level")
    @classmethod
    def _normalize_log_level(cls, value: str) -> str:
        normalized = value.strip().upper()
        if normalized not in {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}:
            raise ValueError(
                "ORCHA_LOG_LEVEL must be one of CRITICAL, ERROR, WARNING, INFO, DEBUG"
            )
        return normalized

    @field_validator("idle_timeout", "poll_interval")
    @classmethod
    def _validate_positive(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("ORCHA_IDLE_TIMEOUT and ORCHA_POLL_INTERVAL must be > 0")
        return value

    @field_validator("capture_lines")
    @classmethod
    def _validate_capture_lines(cls, value: int) -> int:
        if value < 15:
            raise ValueError("ORCHA_CAPTURE_LINES must be >= 15")
        return value

    @property
    def worktree_dir(self) -> Path:
        """Directory holding per-repository worktree folders."""

        return self.worktree_root or self.home_dir / "worktrees"

    @property
    def registry_file(self) -> Path:
        return self.home_dir / "instances.json"

    def status_dir(self, instance_id: str | None = None) -> Path:
        """Return the agent status directory, scoped to an instance when given."""

        if instance_id:
            return self.status_root / instance_id / "agents"
        return self.status_root / "agents"

    def session_store_file(self, instance_id: str) -> Path:
        return self.status_root / instance_id / "sessions.json"


@lru_cache(maxsize=1)
def get_settings() -> OrchaSettings:
    """Return cached settings instance."""

    settings = OrchaSettings()
    settings.home_dir = settings.home_dir.expanduser().resolve()
    if settings.worktree_root is not None:
        settings.worktree_root = settings.worktree_root.expanduser().resolve()
    settings.status_root = settings.status_root.expanduser().resolve()
    return settings


__all__ = ["OrchaSettings", "get_settings"]
