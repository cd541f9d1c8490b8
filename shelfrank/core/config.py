from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Optional
import json
from pathlib import Path


class Settings(BaseSettings):
    # Database
    DATABASE_URL: str = "sqlite:///./shelfrank.db"

    # CORS - can be JSON string or comma-separated string
    CORS_ORIGINS: str = '["http://localhost:3000", "http://localhost:5173"]'

    # Environment
    ENVIRONMENT: str = "development"
    DEBUG: bool = False

    # External store calls (catalog, social graph, preferences, cache, feedback)
    STORE_TIMEOUT_SECONDS: float = 10.0

    # Recommendation engine
    RECS_EXPERIMENTS_ENABLED: Optional[bool] = None  # None = use the embedded default
    RECS_CONFIG_PATH: Optional[str] = None  # JSON file with partial overrides

    # Cache maintenance job
    CACHE_CLEANUP_ENABLED: bool = False
    CACHE_CLEANUP_HOUR_UTC: int = 4

    model_config = SettingsConfigDict(
        # Load from .env at the repository root
        env_file=str(Path(__file__).resolve().parents[2] / ".env"),
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        if not self.DATABASE_URL or self.DATABASE_URL.strip() == "":
            raise RuntimeError(
                "DATABASE_URL is not set. Add DATABASE_URL=sqlite:///./shelfrank.db "
                "(or a postgresql:// URL) to .env"
            )

        # Every store call must carry an explicit, bounded timeout
        if not 5.0 <= self.STORE_TIMEOUT_SECONDS <= 15.0:
            raise RuntimeError(
                f"STORE_TIMEOUT_SECONDS must be between 5 and 15 seconds, got {self.STORE_TIMEOUT_SECONDS}"
            )

        if not 0 <= self.CACHE_CLEANUP_HOUR_UTC <= 23:
            raise RuntimeError(
                f"CACHE_CLEANUP_HOUR_UTC must be an hour of the day (0-23), got {self.CACHE_CLEANUP_HOUR_UTC}"
            )

    @property
    def is_sqlite(self) -> bool:
        return self.DATABASE_URL.startswith("sqlite")

    def get_masked_database_url(self) -> str:
        """Return DATABASE_URL with password masked for logging."""
        if self.is_sqlite:
            return self.DATABASE_URL
        try:
            from urllib.parse import urlparse, urlunparse
            parsed = urlparse(self.DATABASE_URL)
            masked_netloc = f"{parsed.username}:***@{parsed.hostname}"
            if parsed.port:
                masked_netloc += f":{parsed.port}"
            return urlunparse((
                parsed.scheme,
                masked_netloc,
                parsed.path,
                parsed.params,
                parsed.query,
                parsed.fragment,
            ))
        except Exception:
            scheme = self.DATABASE_URL.split("://")[0]
            host = self.DATABASE_URL.split("@")[-1] if "@" in self.DATABASE_URL else "localhost"
            return f"{scheme}://<user>:***@{host}"

    @property
    def cors_origins_list(self) -> list[str]:
        """Parse CORS_ORIGINS from JSON string or comma-separated string."""
        if not self.CORS_ORIGINS:
            return ["http://localhost:3000", "http://localhost:5173"]

        try:
            parsed = json.loads(self.CORS_ORIGINS)
            if isinstance(parsed, list):
                return parsed
            return [str(parsed)]
        except (json.JSONDecodeError, TypeError):
            origins = [origin.strip() for origin in self.CORS_ORIGINS.split(",") if origin.strip()]
            return origins if origins else ["http://localhost:3000", "http://localhost:5173"]


settings = Settings()
