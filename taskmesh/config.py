"""Node settings loaded from environment variables."""

import logging
import os
from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

ROLE_WORKER = "worker"
ROLE_PUSHER = "pusher"


def _env_file() -> str | None:
    if os.getenv("PYTEST_CURRENT_TEST"):
        return None
    return ".env"


class Settings(BaseSettings):
    """taskmesh configuration. All values come from environment variables.

    Durations are in seconds.
    """

    # Database
    database_path: Path = Field(default=Path("data/taskmesh.db"))
    # How long a local connection waits on a lock held by another node
    database_busy_timeout: float = Field(default=5.0, ge=0)

    # Turso (hosted libSQL): when set, overrides local database_path
    turso_database_url: str = Field(default="")
    turso_auth_token: str = Field(default="")

    # Node role: "worker", "pusher", empty for both, anything else for neither
    role: str = Field(default="")

    # Event IDs routed to the push lane
    push_events: str = Field(default="")

    # Submission
    default_task_timeout: float = Field(default=60.0, gt=0)

    # Task search
    stale_active_after: float = Field(default=20.0, gt=0)
    search_page_size: int = Field(default=100000, gt=0)

    # Reaper
    reaper_interval: float = Field(default=10.0, gt=0)
    reaper_timeout: float = Field(default=300.0, gt=0)
    reaper_retention: float = Field(default=30.0, ge=0)
    reaper_page_size: int = Field(default=2000, gt=0)
    reap_failed_tasks: bool = Field(default=False)

    # Queue maintenance (delayed promotion, completion polling)
    queue_tick_interval: float = Field(default=1.0, gt=0)

    # Workers
    worker_poll_interval: float = Field(default=0.5, gt=0)
    worker_concurrency: int = Field(default=4, gt=0)

    # Module exposing HANDLERS (event_id -> async handler) and optionally
    # RECURRING (event_id -> interval) for the node entry point
    handlers_module: str = Field(default="")

    # Logging (case-insensitive level name)
    log_level: str = Field(default="INFO")

    model_config = SettingsConfigDict(env_file=_env_file(), env_file_encoding="utf-8")

    @field_validator("log_level")
    @classmethod
    def normalise_log_level(cls, value: str) -> str:
        level = value.strip().upper()
        if not isinstance(logging.getLevelName(level), int):
            msg = f"unknown log level: {value}"
            raise ValueError(msg)
        return level

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        if os.getenv("PYTEST_CURRENT_TEST"):
            return (init_settings,)
        return (init_settings, env_settings, dotenv_settings, file_secret_settings)

    def get_push_events(self) -> set[str]:
        """Parse PUSH_EVENTS into a set of event IDs."""
        if not self.push_events.strip():
            return set()
        return {name.strip() for name in self.push_events.split(",") if name.strip()}

    def is_worker(self, role: str | None = None) -> bool:
        role = self.role if role is None else role
        return not role or role == ROLE_WORKER

    def is_pusher(self, role: str | None = None) -> bool:
        role = self.role if role is None else role
        return not role or role == ROLE_PUSHER


settings = Settings()
