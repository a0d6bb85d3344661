import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        cache_ttl_secs: float,
        scheduler_enabled: bool,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.cache_ttl_secs = cache_ttl_secs
        self.scheduler_enabled = scheduler_enabled


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("BUDGETS_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "budgets.db"
    database_url = os.getenv("BUDGETS_DATABASE_URL", f"sqlite:///{default_db}")
    timezone = os.getenv("BUDGETS_TIMEZONE", "Europe/Berlin")
    cache_ttl_secs = float(os.getenv("BUDGETS_CACHE_TTL_SECS", "60"))
    scheduler_enabled = _env_flag("BUDGETS_SCHEDULER_ENABLED", "0")
    return Settings(
        database_url=database_url,
        timezone=timezone,
        cache_ttl_secs=cache_ttl_secs,
        scheduler_enabled=scheduler_enabled,
    )
