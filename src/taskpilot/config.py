"""Configuration loading from environment variables."""

import os
from dataclasses import dataclass, field
from pathlib import Path


@dataclass
class Config:
    db_path: Path = field(default_factory=lambda: Path.home() / ".taskpilot" / "taskpilot.db")
    api_key: str | None = None
    api_base_url: str = "https://api.openai.com/v1"
    model: str = "gpt-3.5-turbo"
    request_timeout: float = 60.0
    max_attempts: int = 5
    history_window: int = 10
    slack_bot_token: str | None = None
    slack_channel: str | None = None
    log_level: str = "WARNING"

    @classmethod
    def from_env(cls) -> "Config":
        config = cls()

        if db := os.environ.get("TP_DB_PATH"):
            config.db_path = Path(db)

        config.api_key = os.environ.get("TP_API_KEY") or os.environ.get("OPENAI_API_KEY")

        if base_url := os.environ.get("TP_API_BASE_URL"):
            config.api_base_url = base_url.rstrip("/")

        if model := os.environ.get("TP_MODEL"):
            config.model = model

        if timeout := os.environ.get("TP_REQUEST_TIMEOUT"):
            config.request_timeout = float(timeout)

        if attempts := os.environ.get("TP_MAX_ATTEMPTS"):
            config.max_attempts = max(1, int(attempts))

        if window := os.environ.get("TP_HISTORY_WINDOW"):
            config.history_window = max(0, int(window))

        config.slack_bot_token = os.environ.get("SLACK_BOT_TOKEN")
        config.slack_channel = os.environ.get("TP_SLACK_CHANNEL")

        if level := os.environ.get("TP_LOG_LEVEL"):
            config.log_level = level.upper()

        return config


def get_config() -> Config:
    return Config.from_env()
