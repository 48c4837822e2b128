"""Configuration loading from environment variables."""

import os
from dataclasses import dataclass, field
from pathlib import Path


@dataclass
class Config:
    db_path: Path = field(default_factory=lambda: Path.home() / ".work_order_bot" / "workorders.db")
    slack_bot_token: str | None = None
    slack_signing_secret: str | None = None
    dashboard_token: str | None = None
    recovery_window_hours: int = 24
    subsystem_cache_ttl: float = 60.0
    subsystem_cache_timeout: float = 2.0
    user_group_cache_ttl: float = 60.0
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Config":
        config = cls()

        if db := os.environ.get("WO_DB_PATH"):
            config.db_path = Path(db)

        config.slack_bot_token = os.environ.get("SLACK_BOT_TOKEN")
        config.slack_signing_secret = os.environ.get("SLACK_SIGNING_SECRET")
        config.dashboard_token = os.environ.get("WO_DASHBOARD_TOKEN")

        if hours := os.environ.get("WO_RECOVERY_WINDOW_HOURS"):
            config.recovery_window_hours = int(hours)

        if ttl := os.environ.get("WO_SUBSYSTEM_CACHE_TTL"):
            config.subsystem_cache_ttl = float(ttl)

        if timeout := os.environ.get("WO_SUBSYSTEM_CACHE_TIMEOUT"):
            config.subsystem_cache_timeout = float(timeout)

        if ttl := os.environ.get("WO_USER_GROUP_CACHE_TTL"):
            config.user_group_cache_ttl = float(ttl)

        if level := os.environ.get("WO_LOG_LEVEL"):
            config.log_level = level.upper()

        return config


def get_config() -> Config:
    return Config.from_env()
