import os
from typing import List, Optional

from dotenv import load_dotenv
from pydantic_settings import BaseSettings

load_dotenv()


class Settings(BaseSettings):
    """Runtime settings for the clinic view engine."""

    PROJECT_NAME: str = os.getenv("PROJECT_NAME", "Clinic View Engine")

    # Collaborating clinic backend
    API_BASE_URL: str = os.getenv("API_BASE_URL", "http://localhost:8080")
    # 0 disables the per-request timeout; the ready timeout is then the only clock
    HTTP_TIMEOUT_SECONDS: float = float(os.getenv("HTTP_TIMEOUT_SECONDS", "0"))

    # Fetch plan
    READY_TIMEOUT_SECONDS: float = float(os.getenv("READY_TIMEOUT_SECONDS", "10"))
    PRIMARY_RETRIES: int = int(os.getenv("PRIMARY_RETRIES", "1"))
    RETRY_BACKOFF_SECONDS: float = float(os.getenv("RETRY_BACKOFF_SECONDS", "1.0"))
    MEMO_TTL_SECONDS: float = float(os.getenv("MEMO_TTL_SECONDS", "300"))

    # Record linking
    ENABLE_HEURISTIC_LINKING: bool = os.getenv("ENABLE_HEURISTIC_LINKING", "true").lower() == "true"

    # Web surface, comma separated
    CORS_ORIGINS: str = os.getenv("CORS_ORIGINS", "http://127.0.0.1:5173,http://localhost:5173")

    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")

    class Config:
        case_sensitive = True

    @property
    def cors_origins(self) -> List[str]:
        return [origin.strip() for origin in self.CORS_ORIGINS.split(",") if origin.strip()]

    @property
    def http_timeout(self) -> Optional[float]:
        return self.HTTP_TIMEOUT_SECONDS or None


settings = Settings()
