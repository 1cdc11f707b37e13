"""Application configuration using pydantic-settings."""
from functools import lru_cache
from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""
    model_config = SettingsConfigDict(
        env_file=str(Path(__file__).resolve().parents[3] / ".env"),
        case_sensitive=False,
    )

    # Application
    log_level: str = "INFO"
    log_json: bool = False
    app_mode: str = "demo"

    # Ledger storage
    ledger_db_path: str = "./data/status_ledger.db"
    ledger_busy_timeout_seconds: float = 30.0
    ledger_max_retries: int = 3
    ledger_retry_backoff_seconds: float = 0.01
    idempotency_max_entries: int = 10000

    # Analytics
    bottleneck_count: int = 3

    # Fleet report recommendation thresholds
    report_bottleneck_share_pct: float = 40.0
    report_slow_completion_seconds: float = 24 * 3600.0
    report_active_case_threshold: int = 20

    def resolved_ledger_db_path(self) -> Path:
        """Absolute ledger database path; parent directories are created on open."""
        return Path(self.ledger_db_path).expanduser().resolve()

    def normalized_app_mode(self) -> str:
        mode = (self.app_mode or "").strip().lower()
        return mode if mode in {"demo", "production"} else "production"


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
