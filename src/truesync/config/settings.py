import os
from pathlib import Path
from typing import List

from pydantic_settings import BaseSettings

# Project base directory (repo root)
BASE_DIR = Path(__file__).resolve().parents[3]

# Where the file-backed calibration cache lives
DATA_DIR = os.getenv("TRUESYNC_DATA_DIR", str(BASE_DIR / "data"))


class Settings(BaseSettings):
    """Application settings with environment variable support (prefix ``TRUESYNC_``)"""

    # NTP pools and query policy
    NTP_POOL_HOSTS: List[str] = ["time.google.com", "time.cloudflare.com", "pool.ntp.org"]
    REPEAT_COUNT: int = 5
    RETRY_COUNT: int = 20
    RETRY_BACKOFF_S: float = 1.0

    # Response acceptance thresholds (milliseconds)
    ROOT_DELAY_MAX_MS: float = 100.0
    ROOT_DISPERSION_MAX_MS: float = 100.0
    SERVER_RESPONSE_DELAY_MAX_MS: int = 750

    # Network timeouts
    EXCHANGE_TIMEOUT_S: float = 30.0
    PROBE_TIMEOUT_S: float = 5.0
    PROBE_PORT: int = 80
    PROBE_ENABLED: bool = True
    MAX_WORKERS: int = 32

    # Calibration cache
    CACHE_BACKEND: str = "file"
    DATA_DIR: str = DATA_DIR
    CACHE_FILE: str = "calibration.json"
    MONGO_URI: str = "mongodb://localhost:27017"
    MONGO_DB: str = "truesync"
    MONGO_COLLECTION: str = "calibration"

    LOG_LEVEL: str = "INFO"

    class Config:
        env_prefix = "TRUESYNC_"
        env_file = ".env"
        case_sensitive = True


# Global settings instance
settings = Settings()
