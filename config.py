import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        cache_url: str,
        auth_secret: str,
        port: int,
        log_level: str,
        timezone: str,
        enable_workers: bool,
        environment: str,
    ) -> None:
        self.database_url = database_url
        self.cache_url = cache_url
        self.auth_secret = auth_secret
        self.port = port
        self.log_level = log_level
        self.timezone = timezone
        self.enable_workers = enable_workers
        self.environment = environment

    @property
    def is_development(self) -> bool:
        return self.environment == "development"


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("SPENDLY_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "spendly.db"
    database_url = os.getenv("SPENDLY_DATABASE_URL", f"sqlite:///{default_db}")
    cache_url = os.getenv("SPENDLY_CACHE_URL", "redis://localhost:6379/0")
    auth_secret = os.getenv("SPENDLY_AUTH_SECRET", "")
    port = int(os.getenv("SPENDLY_PORT", "8000"))
    log_level = os.getenv("SPENDLY_LOG_LEVEL", "INFO").upper()
    timezone = os.getenv("SPENDLY_TIMEZONE", "UTC")
    enable_workers = _env_flag("SPENDLY_ENABLE_WORKERS", "true")
    environment = os.getenv("SPENDLY_ENV", "development")
    return Settings(
        database_url=database_url,
        cache_url=cache_url,
        auth_secret=auth_secret,
        port=port,
        log_level=log_level,
        timezone=timezone,
        enable_workers=enable_workers,
        environment=environment,
    )
