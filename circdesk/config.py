import logging
import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv

load_dotenv()


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("true", "1", "yes")


@dataclass
class Settings:
    # API
    api_host: str = os.getenv("API_HOST", "127.0.0.1")
    api_port: int = int(os.getenv("API_PORT", "8000"))

    # Database
    database_file: str = os.getenv("LIBRARY_DB_FILE", "circulation.db")
    database_timeout: float = float(os.getenv("DB_TIMEOUT", "10"))

    # Library settings cache (seconds)
    settings_cache_ttl: int = int(os.getenv("SETTINGS_CACHE_TTL", "3600"))

    # Google Books
    google_books_api_key: Optional[str] = os.getenv("GOOGLE_BOOKS_API_KEY")
    google_books_timeout: float = float(os.getenv("GOOGLE_BOOKS_TIMEOUT", "10"))
    enable_google_books: bool = _env_flag("ENABLE_GOOGLE_BOOKS", "True")

    # Application
    app_name: str = os.getenv("APP_NAME", "Circulation Desk")
    app_version: str = os.getenv("APP_VERSION", "1.0.0")
    log_level: str = os.getenv("LOG_LEVEL", "INFO").upper()
    debug: bool = _env_flag("DEBUG", "False")


settings = Settings()


def configure_logging(level: Optional[str] = None) -> None:
    """Apply the configured log level to the root logger."""
    logging.basicConfig(
        level=(level or settings.log_level),
        format="%(asctime)s | %(levelname)-8s | %(name)s - %(message)s",
    )
