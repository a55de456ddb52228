from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Dict, List
from pydantic import field_validator
import json


class Settings(BaseSettings):
    # Database (empty -> in-memory stores; e.g. postgresql+asyncpg://... or sqlite+aiosqlite:///...)
    DATABASE_URL: str = ""

    # Registry service (empty -> in-memory registry)
    REGISTRY_BASE_URL: str = ""
    REGISTRY_TIMEOUT_SECONDS: float = 10.0
    REGISTRY_MAX_ATTEMPTS: int = 3

    # Application
    DEBUG: bool = False
    ENVIRONMENT: str = "production"
    APP_NAME: str = "OrganMatch Matching Engine"
    APP_VERSION: str = "1.0.0"
    CORS_ORIGINS: str = "http://localhost:3000,http://127.0.0.1:3000"

    # Server Configuration
    HOST: str = "0.0.0.0"
    PORT: int = 8000
    WORKERS: int = 1

    # Matching
    MATCH_MIN_SCORE: int = 70
    MATCH_TOP_N: int = 5
    URGENCY_BOOSTS: str = '{"normal": 0, "urgent": 8, "critical": 15}'
    ELEVATION_BOOSTS: str = '{"low": 2, "medium": 5, "high": 10, "critical": 15}'
    DEATH_CONFIRMATION_DEADLINE_SECONDS: float = 30.0

    # Attestation: JSON object of hospital id -> Ed25519 public key (hex)
    AUTHORIZED_HOSPITAL_KEYS: str = "{}"

    # Notification delivery
    NOTIFY_MAX_ATTEMPTS: int = 3
    NOTIFY_BASE_DELAY_SECONDS: float = 0.5
    NOTIFY_MAX_DELAY_SECONDS: float = 5.0

    # Background Worker Configuration (asyncio-based)
    WORKER_ENABLED: bool = True
    WORKER_MAX_CONCURRENT: int = 4
    LEDGER_POLL_INTERVAL: float = 2.0  # seconds between ledger polls

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    LOG_FILE: str = "logs/app.log"

    @field_validator('DEBUG', 'WORKER_ENABLED', mode='before')
    @classmethod
    def parse_bool(cls, v):
        """Parse boolean from string."""
        if isinstance(v, str):
            return v.lower() in ("true", "1", "yes")
        return bool(v)

    @field_validator('URGENCY_BOOSTS', 'ELEVATION_BOOSTS', 'AUTHORIZED_HOSPITAL_KEYS')
    @classmethod
    def must_be_json_object(cls, v: str) -> str:
        try:
            parsed = json.loads(v)
        except json.JSONDecodeError as e:
            raise ValueError(f"must be a JSON object: {e}") from e
        if not isinstance(parsed, dict):
            raise ValueError("must be a JSON object")
        return v

    @property
    def cors_origins_list(self) -> List[str]:
        """Get CORS_ORIGINS as a list."""
        return [item.strip() for item in self.CORS_ORIGINS.split(',') if item.strip()]

    @property
    def urgency_boosts(self) -> Dict[str, float]:
        return {k: float(v) for k, v in json.loads(self.URGENCY_BOOSTS).items()}

    @property
    def elevation_boosts(self) -> Dict[str, float]:
        return {k: float(v) for k, v in json.loads(self.ELEVATION_BOOSTS).items()}

    @property
    def authorized_hospital_keys(self) -> Dict[str, str]:
        return dict(json.loads(self.AUTHORIZED_HOSPITAL_KEYS))

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=True,
        env_file_encoding="utf-8",
        extra="ignore",
    )


def get_settings() -> Settings:
    return Settings()
