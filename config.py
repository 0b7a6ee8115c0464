import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        csrf_secret: str,
        forecast_months: int,
        log_level: str,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.csrf_secret = csrf_secret
        self.forecast_months = forecast_months
        self.log_level = log_level


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("PLANNER_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "planner.db"
    database_url = os.getenv("PLANNER_DATABASE_URL", f"sqlite:///{default_db}")
    timezone = os.getenv("PLANNER_TIMEZONE", "Europe/Berlin")
    csrf_secret = os.getenv(
        "PLANNER_CSRF_SECRET",
        "5f0c2d8e91a4b7c63e1d0a9f8b7c6d5e4f3a2b1c0d9e8f7a6b5c4d3e2f1a0b9c",
    )
    forecast_months = int(os.getenv("PLANNER_FORECAST_MONTHS", "3"))
    log_level = os.getenv("PLANNER_LOG_LEVEL", "INFO").upper()
    return Settings(
        database_url=database_url,
        timezone=timezone,
        csrf_secret=csrf_secret,
        forecast_months=forecast_months,
        log_level=log_level,
    )
