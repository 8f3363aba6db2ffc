import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        log_level: str,
        create_schema: bool,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.log_level = log_level
        self.create_schema = create_schema


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("FINTRACK_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


def normalize_database_url(url: str) -> str:
    if url.startswith("postgres://"):
        url = url.replace("postgres://", "postgresql+psycopg://", 1)
    return url


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    database_url = os.getenv("FINTRACK_DATABASE_URL")
    if not database_url:
        default_db = _ensure_data_dir() / "fintrack.db"
        database_url = f"sqlite:///{default_db}"
    timezone = os.getenv("FINTRACK_TIMEZONE", "UTC")
    log_level = os.getenv("FINTRACK_LOG_LEVEL", "INFO").upper()
    return Settings(
        database_url=normalize_database_url(database_url),
        timezone=timezone,
        log_level=log_level,
        create_schema=_env_flag("FINTRACK_CREATE_SCHEMA", "true"),
    )
