from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    # License Server
    DATABASE_URL: str = "sqlite:///./licenses.db"
    SERVER_HOST: str = "0.0.0.0"
    SERVER_PORT: int = 5000
    DEFAULT_MAX_ACTIVATIONS: int = 2

    # License Client
    LICENSE_API_URL: str = "http://127.0.0.1:5000/api"
    ACTIVATE_TIMEOUT_SECONDS: float = 10.0
    VALIDATE_TIMEOUT_SECONDS: float = 10.0
    HEALTH_TIMEOUT_SECONDS: float = 3.0

    # Local data (activation state, machine id)
    APP_DATA_DIR: Path = Path.home() / ".ps-license"

    # Offline grace
    OFFLINE_WARNING_DAYS: int = 30
    REVALIDATION_ADVISORY_DAYS: int = 90

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = False


settings = Settings()
