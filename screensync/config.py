from typing import List, Optional
from pydantic_settings import BaseSettings, SettingsConfigDict

class Settings(BaseSettings):
    # Device-management API
    DEVICE_API_BASE_URL: str = "http://localhost:8000/api/v2"
    DEVICE_API_TOKEN: str = ""
    DEVICE_API_AUTH_SCHEME: str = "Token"
    SEQUENCE_NAME_PREFIX: str = "SCREEN | LOC"

    # Host application (location directory, approved ads, baseline)
    HOST_API_BASE_URL: str = "http://localhost:5000/api"
    HOST_API_TOKEN: Optional[str] = None

    # Desired state
    BASELINE_SOURCE: str = "template"  # template, host
    BASELINE_TEMPLATE_SEQUENCE_ID: Optional[str] = None
    BASELINE_MAX_ITEMS: int = 10
    BASELINE_FALLBACK_MEDIA_IDS: List[str] = []
    MAX_ADS_PER_SCREEN: int = 20
    DEFAULT_ITEM_DURATION_SECONDS: int = 10

    # Remote state
    ONLINE_THRESHOLD_SECONDS: int = 300

    # Writes & refresh
    BIND_READBACK_DELAY_SECONDS: float = 1.0
    REFRESH_SETTLE_SECONDS: float = 10.0
    REFRESH_WHEN_UNCHANGED: bool = False

    # Proof of play
    PLACEHOLDER_MAX_BYTES: int = 15000
    PLACEHOLDER_HASHES: List[str] = []
    PROOF_POLL_DELAYS_SECONDS: List[float] = [5, 10, 15, 30, 45]
    PROOF_DEADLINE_SECONDS: float = 150.0

    # Retries
    VENDOR_RETRY_DELAYS_SECONDS: List[float] = [1, 3]
    VENDOR_RETRY_DEADLINE_SECONDS: float = 20.0

    # Concurrency
    MAX_CONCURRENT_RECONCILES: int = 3
    LOCK_WAIT_TIMEOUT_SECONDS: float = 300.0

    # Sweep & status
    SWEEP_ENABLED: bool = True
    SWEEP_INTERVAL_SECONDS: int = 900
    STATUS_CACHE_TTL_SECONDS: int = 60

    # Persistence
    STATE_PATH: str = "/data/state.json"
    PERSIST_ENABLED: bool = True

    # System
    LOG_LEVEL: str = "INFO"
    HTTP_SERVER_ENABLED: bool = False
    HTTP_SERVER_PORT: int = 8080
    HTTP_SERVER_TOKEN: Optional[str] = None
    REQUEST_TIMEOUT_SECONDS: int = 30

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore"
    )

settings = Settings()
