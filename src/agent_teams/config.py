"""
Agent teams configuration
=========================

Pydantic Settings based configuration. Every ``AGENT_TEAMS_*`` environment
variable is declared, validated and documented here; other modules take an
:class:`AppConfig` instead of reading ``os.environ``.

Usage:
    from agent_teams.config import get_config

    cfg = get_config()
    print(cfg.teams_dir)
    cfg.dump()
"""

from __future__ import annotations

import json
import logging
import shlex
from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from agent_teams.team.errors import FeatureDisabledError

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


class AppConfig(BaseSettings):
    """
    Agent teams configuration.

    Values come from the process environment and the .env file, each
    prefixed with ``AGENT_TEAMS_`` (``AGENT_TEAMS_ENABLED=1``).
    """

    model_config = SettingsConfigDict(
        env_prefix="AGENT_TEAMS_",
        env_file=".env",
        env_file_encoding="utf-8",
        env_ignore_empty=True,
        extra="ignore",
    )

    # ------------------------------------------------------------------
    # Feature flag
    # ------------------------------------------------------------------
    enabled: bool = Field(
        default=False,
        description="Master switch; every team operation fails fast when off",
    )

    # ------------------------------------------------------------------
    # Storage
    # ------------------------------------------------------------------
    teams_dir: Path = Field(
        default=Path("~/.agent-teams/teams"),
        description="Directory holding one subdirectory per live team",
    )
    archive_dir: Path = Field(
        default=Path("~/.agent-teams/teams-archive"),
        description="Where final snapshots go when results are kept",
    )

    # ------------------------------------------------------------------
    # Timing
    # ------------------------------------------------------------------
    poll_interval: float = Field(
        default=5.0,
        gt=0,
        le=600,
        description="Seconds between mailbox checks while waiting",
    )
    wait_timeout: float = Field(
        default=300.0,
        ge=0,
        le=86_400,
        description="Default upper bound (seconds) for poll --wait",
    )
    shutdown_timeout: float = Field(
        default=30.0,
        ge=0,
        le=3_600,
        description="Seconds to wait for shutdown acknowledgements",
    )

    # ------------------------------------------------------------------
    # Teammates
    # ------------------------------------------------------------------
    worker_command: str = Field(
        default="",
        description="Command started once per teammate (shell syntax)",
    )
    default_role: str = Field(
        default="unit-tester",
        description="Role for targets whose hint matches no keyword",
    )

    # ------------------------------------------------------------------
    # Logging
    # ------------------------------------------------------------------
    log_level: str = Field(
        default="INFO",
        description="Log level for diagnostics on stderr",
    )

    # =====================================================================
    # Validators
    # =====================================================================

    @field_validator("worker_command")
    @classmethod
    def _validate_worker_command(cls, v: str) -> str:
        """Ensure the worker command can be split like a shell would."""
        try:
            shlex.split(v)
        except ValueError as e:
            raise ValueError(f"worker_command is not valid shell syntax: {e}") from e
        return v.strip()

    @field_validator("log_level")
    @classmethod
    def _validate_log_level(cls, v: str) -> str:
        level = v.strip().upper()
        if level not in LOG_LEVELS:
            raise ValueError(f"log_level must be one of {', '.join(LOG_LEVELS)}, got: {v!r}")
        return level

    # =====================================================================
    # Derived properties
    # =====================================================================

    @property
    def worker_argv(self) -> list[str]:
        return shlex.split(self.worker_command)

    @property
    def log_level_value(self) -> int:
        return getattr(logging, self.log_level)

    # =====================================================================
    # Config dump for debugging
    # =====================================================================

    def dump(self) -> str:
        """Dump configuration as a human-readable string."""
        lines = [
            "=" * 60,
            "  Agent Teams Configuration",
            "=" * 60,
        ]
        for key, value in self.model_dump(mode="json").items():
            lines.append(f"  {key}: {value if value != '' else '(not set)'}")
        lines.append("=" * 60)
        return "\n".join(lines)

    def dump_json(self) -> str:
        """Dump configuration as JSON for programmatic consumption."""
        return json.dumps(self.model_dump(mode="json"), indent=2, default=str)


def ensure_enabled(config: AppConfig) -> None:
    """Raise :class:`FeatureDisabledError` unless agent teams are enabled."""
    if not config.enabled:
        raise FeatureDisabledError()


# ---------------------------------------------------------------------------
# Singleton access
# ---------------------------------------------------------------------------

_config_instance: AppConfig | None = None


def get_config() -> AppConfig:
    """
    Get the global configuration singleton.

    Loaded once from the environment and .env file; later calls return the
    cached instance.
    """
    global _config_instance
    if _config_instance is None:
        _config_instance = AppConfig()
    return _config_instance


def reset_config() -> None:
    """Reset the singleton so the next get_config() re-reads the environment."""
    global _config_instance
    _config_instance = None
