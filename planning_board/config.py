"""
Deployment configuration for the planning board.

Values come from ``PLANNING_BOARD_*`` environment variables (or a ``.env``
file) and are validated by pydantic.
"""

from __future__ import annotations

from typing import Dict, Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_LOCK_TTL_SECONDS = 30.0
DEFAULT_SWEEP_INTERVAL_SECONDS = 5.0
DEFAULT_ROOM = "planning_board"


class BoardSettings(BaseSettings):
    """Settings for one planning board process."""

    model_config = SettingsConfigDict(
        env_prefix="PLANNING_BOARD_",
        env_file=".env",
        extra="ignore",
    )

    database_path: str = "planning_board.sqlite3"
    lock_ttl_seconds: float = Field(default=DEFAULT_LOCK_TTL_SECONDS, gt=0)
    sweep_interval_seconds: float = Field(default=DEFAULT_SWEEP_INTERVAL_SECONDS, gt=0)
    room: str = DEFAULT_ROOM
    log_level: str = "INFO"
    log_format: Literal["console", "json"] = "console"
    seed_demo_data: bool = True
    # token -> username, for kiosks and scripts that cannot log in
    static_tokens: Dict[str, str] = Field(default_factory=dict)


__all__ = [
    "BoardSettings",
    "DEFAULT_LOCK_TTL_SECONDS",
    "DEFAULT_SWEEP_INTERVAL_SECONDS",
    "DEFAULT_ROOM",
]
