from pydantic_settings import BaseSettings, SettingsConfigDict
from pathlib import Path


class Settings(BaseSettings):
    APP_NAME: str = "Cashflow Backend"
    ENV: str = "dev"

    # apps/backend/db.sqlite3를 절대경로로 지정하여 CWD에 따른 경로 문제 방지
    _default_db_path = Path(__file__).resolve().parents[2] / "db.sqlite3"
    DATABASE_URL: str = f"sqlite:///{_default_db_path}"
    # Upper bound for a single store call (SQLite busy timeout / pool checkout)
    DB_TIMEOUT_SECONDS: float = 10.0

    CORS_ORIGINS: list[str] = ["*"]
    TIMEZONE: str = "UTC"
    DEFAULT_TEMPLATE_TIMEZONE: str = "UTC"

    MATERIALIZE_MAX_WORKERS: int = 1
    SCHEDULER_ENABLED: bool = False
    SCHEDULER_RUN_AT: str = "00:00"

    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = False

    model_config = SettingsConfigDict(env_file=(".env",), env_prefix="CASHFLOW_", case_sensitive=False)


settings = Settings()
