"""Application configuration loaded from environment variables."""

from functools import lru_cache

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """All configuration is loaded from environment variables (or .env file).

    Variables are prefixed with ``MINAKAMI_`` (e.g. ``MINAKAMI_LOG_LEVEL``).
    """

    # --- App ---
    app_name: str = "Minakami"
    app_version: str = "0.1.0"
    log_level: str = "INFO"

    # --- Fusion ---
    fusion_config_path: str | None = None  # defaults to the bundled fusion_config.yaml
    bucket_width_ms: int = 5 * 60 * 1000
    store_timeout_seconds: float = 2.0
    timezone: str = "UTC"  # IANA name; defines calendar days and bedtimes

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "env_prefix": "MINAKAMI_",
    }


@lru_cache
def get_settings() -> Settings:
    return Settings()
