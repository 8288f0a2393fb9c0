"""
Runtime configuration for FM4 Mirror - read from environment variables
"""
import os
import logging
from dataclasses import dataclass


logger = logging.getLogger(__name__)


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning(f"Invalid integer for {name}: {raw!r}, using default {default}")
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning(f"Invalid number for {name}: {raw!r}, using default {default}")
        return default


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    return raw.lower() in ("true", "1", "yes")


@dataclass
class Settings:
    database_url: str = "sqlite:///data/fm4.db"

    # Upstream (ORF audioapi)
    api_base_url: str = "https://audioapi.orf.at/fm4/json/4.0"
    loopstream_base_url: str = "https://loopstreamfm4.apa.at"
    timezone: str = "Europe/Vienna"
    feed_timeout: float = 30.0
    image_timeout: float = 60.0

    # Scraper
    scrape_interval_hours: int = 6
    keep_history_days: int = 30
    scrape_request_delay: float = 0.1

    # Live monitor
    live_check_interval: int = 30
    live_completion_cooldown: int = 300

    # Images
    image_storage_path: str = "data/images"
    image_max_width: int = 1750

    # System
    log_level: str = "INFO"
    log_dir: str = "logs"
    log_max_lines: int = 5000
    log_backup_count: int = 5
    scheduler_enabled: bool = True

    @classmethod
    def from_env(cls) -> "Settings":
        defaults = cls()
        return cls(
            database_url=os.getenv("DATABASE_URL", defaults.database_url),
            api_base_url=os.getenv("FM4_API_BASE_URL", defaults.api_base_url),
            loopstream_base_url=os.getenv("FM4_LOOPSTREAM_BASE_URL", defaults.loopstream_base_url),
            timezone=os.getenv("FM4_TIMEZONE", defaults.timezone),
            feed_timeout=_env_float("FEED_TIMEOUT", defaults.feed_timeout),
            image_timeout=_env_float("IMAGE_TIMEOUT", defaults.image_timeout),
            scrape_interval_hours=_env_int("SCRAPE_INTERVAL_HOURS", defaults.scrape_interval_hours),
            keep_history_days=_env_int("KEEP_HISTORY_DAYS", defaults.keep_history_days),
            scrape_request_delay=_env_float("SCRAPE_REQUEST_DELAY", defaults.scrape_request_delay),
            live_check_interval=_env_int("LIVE_CHECK_INTERVAL", defaults.live_check_interval),
            live_completion_cooldown=_env_int("LIVE_COMPLETION_COOLDOWN", defaults.live_completion_cooldown),
            image_storage_path=os.getenv("IMAGE_STORAGE_PATH", defaults.image_storage_path),
            image_max_width=_env_int("IMAGE_MAX_WIDTH", defaults.image_max_width),
            log_level=os.getenv("LOG_LEVEL", defaults.log_level).upper(),
            log_dir=os.getenv("LOG_DIR", defaults.log_dir),
            log_max_lines=_env_int("LOG_MAX_LINES", defaults.log_max_lines),
            log_backup_count=_env_int("LOG_BACKUP_COUNT", defaults.log_backup_count),
            scheduler_enabled=_env_bool("SCHEDULER_ENABLED", defaults.scheduler_enabled),
        )
