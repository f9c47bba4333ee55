from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict
from meili_task_poller.models import PollConfig


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    LOG_LEVEL: str = "INFO"

    # ----------------------------
    # Engine
    # ----------------------------
    MEILI_HOST: str = "http://localhost:7700"
    MEILI_MASTER_KEY: Optional[str] = None
    MEILI_INDEX: str = "products"

    # ----------------------------
    # Task polling
    # ----------------------------
    POLL_INTERVAL: float = 5.0
    POLL_MAX_WAIT: float = 300.0  # 5 minutes
    POLL_BACKOFF: float = 1.0
    POLL_MAX_INTERVAL: float = 60.0

    # Startup health check
    HEALTH_ATTEMPTS: int = 30
    HEALTH_DELAY: float = 2.0

    # ----------------------------
    # Backups
    # ----------------------------
    DUMPS_DIR: Path = Path("./data/dumps")
    BACKUP_DIR: Path = Path("./backups")
    RETENTION_DAYS: int = 7

    def poll_config(self) -> PollConfig:
        return PollConfig(
            interval=self.POLL_INTERVAL,
            max_wait=self.POLL_MAX_WAIT,
            backoff_multiplier=self.POLL_BACKOFF,
            max_interval=self.POLL_MAX_INTERVAL,
        )


@lru_cache
def get_settings() -> Settings:
    return Settings()
