"""Configuration management for Agentz MCP."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class AgentzSettings(BaseSettings):
    """Runtime configuration sourced from environment variables and optional .env file."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    chroma_persist_path: Path = Field(
        default=Path("./storage/chroma"), validation_alias="AGENTZ_CHROMA_PATH"
    )
    claude_path: str | None = Field(default=None, validation_alias="CLAUDE_PATH")
    codex_path: str | None = Field(default=None, validation_alias="CODEX_PATH")
    opencode_path: str | None = Field(default=None, validation_alias="OPENCODE_PATH")
    default_agent_type: str = Field(default="claude", validation_alias="AGENTZ_DEFAULT_AGENT")
    default_working_dir: Path | None = Field(default=None, validation_alias="AGENTZ_WORKING_DIR")
    log_level: str = Field(default="INFO", validation_alias="AGENTZ_LOG_LEVEL")

    max_concurrent_sessions: int = Field(default=3, validation_alias="AGENTZ_MAX_CONCURRENT")
    spawn_timeout_seconds: float = Field(default=10.0, validation_alias="AGENTZ_SPAWN_TIMEOUT")
    startup_output_timeout_seconds: float = Field(
        default=30.0, validation_alias="AGENTZ_STARTUP_OUTPUT_TIMEOUT"
    )
    max_runtime_seconds: float = Field(default=3600.0, validation_alias="AGENTZ_MAX_RUNTIME")
    cancel_grace_seconds: float = Field(default=5.0, validation_alias="AGENTZ_CANCEL_GRACE")
    tail_max_wait_seconds: float = Field(default=30.0, validation_alias="AGENTZ_TAIL_MAX_WAIT")

    worktree_isolation: bool = Field(default=True, validation_alias="AGENTZ_WORKTREE_ISOLATION")
    worktree_dir: str = Field(default=".agentz/worktrees", validation_alias="AGENTZ_WORKTREE_DIR")
    worktree_branch_prefix: str = Field(
        default="agentz/session-", validation_alias="AGENTZ_BRANCH_PREFIX"
    )
    retain_worktrees: bool = Field(default=False, validation_alias="AGENTZ_RETAIN_WORKTREES")
    tool_taxonomy_path: Path | None = Field(default=None, validation_alias="AGENTZ_TOOL_TAXONOMY")

    @field_validator("log_level")
    @classmethod
    def _normalize_log_level(cls, value: str) -> str:
        normalized = value.strip().upper()
        if normalized not in {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}:
            raise ValueError(
                "AGENTZ_LOG_LEVEL must be one of CRITICAL, ERROR, WARNING, INFO, DEBUG"
            )
        return normalized

    @field_validator("default_agent_type")
    @classmethod
    def _normalize_agent_type(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in {"claude", "codex", "opencode"}:
            raise ValueError("AGENTZ_DEFAULT_AGENT must be one of claude, codex, opencode")
        return normalized

    @field_validator("max_concurrent_sessions")
    @classmethod
    def _validate_max_concurrent(cls, value: int) -> int:
        if value < 1:
            raise ValueError("AGENTZ_MAX_CONCURRENT must be >= 1")
        return value

    @field_validator(
        "spawn_timeout_seconds",
        "startup_output_timeout_seconds",
        "max_runtime_seconds",
        "cancel_grace_seconds",
        "tail_max_wait_seconds",
    )
    @classmethod
    def _validate_positive(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("Timeouts must be positive")
        return value

    @field_validator("worktree_dir")
    @classmethod
    def _validate_worktree_dir(cls, value: str) -> str:
        normalized = value.strip().strip("/")
        if not normalized or Path(normalized).is_absolute() or ".." in Path(normalized).parts:
            raise ValueError("AGENTZ_WORKTREE_DIR must be a relative path inside the repository")
        return normalized

    def executable_for(self, agent_type: str) -> str | None:
        """Return the configured executable override for an engine, if any."""

        return {
            "claude": self.claude_path,
            "codex": self.codex_path,
            "opencode": self.opencode_path,
        }.get(agent_type)


@lru_cache(maxsize=1)
def get_settings() -> AgentzSettings:
    """Return cached settings instance."""

    settings = AgentzSettings()
    settings.chroma_persist_path = settings.chroma_persist_path.expanduser().resolve()
    if settings.default_working_dir is not None:
        settings.default_working_dir = settings.default_working_dir.expanduser().resolve()
    if settings.tool_taxonomy_path is not None:
        settings.tool_taxonomy_path = settings.tool_taxonomy_path.expanduser().resolve()
    return settings


__all__ = ["AgentzSettings", "get_settings"]
