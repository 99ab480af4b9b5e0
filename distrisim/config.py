"""
Configuration

Loads settings from environment variables (prefix ``DISTRISIM_``) or a
``.env`` file and configures logging.
"""

import logging
import sys
from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings

BUNDLED_SCENARIO_DIR = Path(__file__).parent / "scenarios"

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


class Settings(BaseSettings):
    """Simulation settings loaded from environment variables."""

    # Logging
    log_level: str = Field(default="INFO", alias="DISTRISIM_LOG_LEVEL")
    log_file: Optional[str] = Field(default=None, alias="DISTRISIM_LOG_FILE")

    # Playback
    default_speed: float = Field(default=1.0, gt=0, alias="DISTRISIM_DEFAULT_SPEED")
    base_interval_ms: int = Field(default=1000, gt=0, alias="DISTRISIM_BASE_INTERVAL_MS")

    # Delivery / logical time
    delivery_delay_ticks: int = Field(default=1, ge=0, alias="DISTRISIM_DELIVERY_DELAY_TICKS")
    tick_ms: int = Field(default=100, gt=0, alias="DISTRISIM_TICK_MS")
    random_seed: int = Field(default=42, alias="DISTRISIM_RANDOM_SEED")

    # Scenarios
    scenario_dir: Path = Field(default=BUNDLED_SCENARIO_DIR, alias="DISTRISIM_SCENARIO_DIR")

    # Metrics
    metrics_enabled: bool = Field(default=False, alias="DISTRISIM_METRICS_ENABLED")

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = False
        populate_by_name = True
        extra = "ignore"

    @property
    def step_interval_ms(self) -> float:
        """Playback interval at the default speed."""
        return self.base_interval_ms / self.default_speed


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


def setup_logging(level: Optional[str] = None, log_file: Optional[str] = None):
    """
    Configure the root logger.

    Args:
        level: Level name, defaults to the configured ``log_level``
        log_file: Optional file receiving the same records
    """
    settings = get_settings()
    level = (level or settings.log_level).upper()
    log_file = log_file or settings.log_file

    formatter = logging.Formatter(LOG_FORMAT)
    handlers = [logging.StreamHandler(sys.stdout)]
    if log_file:
        handlers.append(logging.FileHandler(log_file, encoding="utf-8"))

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level, logging.INFO))
    root_logger.handlers.clear()
    for handler in handlers:
        handler.setFormatter(formatter)
        root_logger.addHandler(handler)
