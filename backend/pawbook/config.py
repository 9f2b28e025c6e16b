# backend/pawbook/config.py

from pathlib import Path
from pydantic_settings import BaseSettings, SettingsConfigDict

BASE_DIR = Path(__file__).resolve().parents[2]


class Settings(BaseSettings):
    database_url: str = "sqlite:///./data/pawbook.db"
    redis_url: str | None = None

    # All rule times and booking timestamps are naive local time in this zone
    timezone: str = "Europe/London"

    log_level: str = "INFO"

    # Hide slots that start today or earlier from the client listing
    exclude_same_day: bool = True

    lock_timeout_seconds: float = 10.0

    model_config = SettingsConfigDict(
        env_file=BASE_DIR / ".env",
        env_prefix="PAWBOOK_",
        extra="ignore",
    )

    @property
    def resolved_database_url(self) -> str:
        url = self.database_url
        if url.startswith("sqlite:///./"):
            # Relative sqlite paths are anchored at the repository root
            relative_path = url.replace("sqlite:///./", "")
            absolute_path = BASE_DIR / relative_path
            absolute_path.parent.mkdir(parents=True, exist_ok=True)
            return f"sqlite:///{absolute_path}"
        return url


settings = Settings()
