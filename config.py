from pydantic_settings import BaseSettings
from typing import List

class Settings(BaseSettings):
    # Database
    DATABASE_URL: str = "sqlite:///./casesync.db"

    # Security
    SECRET_KEY: str = "casesync-secret-key-change-in-production-2025"
    ALGORITHM: str = "HS256"

    # API
    API_TITLE: str = "CaseSync API"
    API_VERSION: str = "0.3.0"
    CORS_ORIGINS: List[str] = ["*"]

    # Monolegal
    PROVIDER_BASE_URL: str = "https://apiexpedientedigital.monolegal.co/api"
    PROVIDER_EMAIL: str = ""
    PROVIDER_PASSWORD: str = ""
    PROVIDER_TOKEN_HOURS: int = 23
    PROVIDER_TIMEOUT_SECONDS: float = 30.0
    PROVIDER_MAX_PAGES: int = 100

    # Expedientes
    INTERNAL_CODE_PREFIX: str = "ML"
    CLIENT_IMPORT_CODE_PREFIX: str = "CE"
    HEARING_KEYWORDS: List[str] = [
        "audiencia", "fija fecha", "señala fecha", "fijar fecha", "diligencia"
    ]

    # Sincronización
    SYNC_SCHEDULE_HOURS: List[int] = [6, 14]
    SYNC_TIMEZONE: str = "America/Bogota"
    SCHEDULER_ENABLED: bool = True
    STARTUP_DELAY_SECONDS: float = 5.0
    SYNC_BATCH_SIZE: int = 10
    HISTORY_DAY_DELAY_SECONDS: float = 2.0
    SCHEDULED_ERROR_SAMPLE: int = 5
    MANUAL_ERROR_SAMPLE: int = 50
    SYNC_USER_ID: str = ""

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT: str = "json"

    class Config:
        env_file = ".env"
        case_sensitive = True

settings = Settings()
