"""
Application Configuration
"""
from pydantic_settings import BaseSettings
from pydantic import field_validator, model_validator

# Supported distance/ETA estimators
VALID_ESTIMATOR_PROVIDERS = {"straight_line", "osrm"}


class Settings(BaseSettings):
    """Application settings loaded from environment variables"""

    APP_NAME: str = "Fleet Dispatch"
    DEBUG: bool = False

    # CORS
    # Comma-separated list of allowed origins. Empty disables CORS.
    ALLOWED_ORIGINS: str = ""

    # Database
    DATABASE_URL: str = "sqlite+aiosqlite:///./fleet_dispatch.db"

    @field_validator("DATABASE_URL", mode="before")
    @classmethod
    def convert_database_url(cls, v: str) -> str:
        """Convert postgres:// or postgresql:// to postgresql+asyncpg:// for async support"""
        if v:
            if v.startswith("postgres://"):
                return v.replace("postgres://", "postgresql+asyncpg://", 1)
            if v.startswith("postgresql://"):
                return v.replace("postgresql://", "postgresql+asyncpg://", 1)
        return v

    # Dispatch policy
    OFFER_WINDOW_SECONDS: int = 15
    COMMISSION_RATE: float = 0.15
    MAX_MISSES_BEFORE_SUSPENSION: int = 3
    SUSPENSION_HOURS: float = 2.0
    WAITING_GRACE_SECONDS: int = 300  # 5 free minutes after arrival
    MAX_PICKUP_RADIUS_KM: float = 10.0  # 0 disables the radius filter

    # Night window, local time. Start > end means the window wraps midnight.
    NIGHT_START_HOUR: int = 23
    NIGHT_END_HOUR: int = 6
    LOCAL_UTC_OFFSET_HOURS: int = 8

    # Built-in "default" pricing plan
    DEFAULT_BASE_FARE: int = 150
    DEFAULT_PER_KM: int = 30
    DEFAULT_PER_MINUTE: int = 5
    DEFAULT_NIGHT_SURCHARGE: int = 50
    DEFAULT_WAITING_FEE_PER_MINUTE: int = 10

    # Distance / ETA estimator
    ESTIMATOR_PROVIDER: str = "straight_line"
    OSRM_BASE_URL: str = ""
    OSRM_TIMEOUT_SECONDS: float = 5.0
    WINDING_FACTOR: float = 1.35
    AVERAGE_SPEED_KMH: float = 30.0

    @field_validator("ESTIMATOR_PROVIDER", mode="before")
    @classmethod
    def validate_estimator_provider(cls, v: str) -> str:
        """Normalize and fail fast at start-up rather than on the first trip"""
        v = v.strip().lower()
        if v not in VALID_ESTIMATOR_PROVIDERS:
            raise ValueError(
                f"ESTIMATOR_PROVIDER='{v}' is not supported. "
                f"Allowed values: {', '.join(sorted(VALID_ESTIMATOR_PROVIDERS))}"
            )
        return v

    # Driver / group notifications
    NOTIFY_WEBHOOK_URL: str = ""  # empty: notifications are only logged
    NOTIFY_GROUP_ID: str = "drivers-main"
    NOTIFY_MAX_RETRIES: int = 3
    NOTIFY_TRANSIENT_STATUS_CODES: str = "502,503,504,429"

    @field_validator("OSRM_BASE_URL", "NOTIFY_WEBHOOK_URL", mode="before")
    @classmethod
    def normalize_service_url(cls, v: str) -> str:
        """Render style host:port values come without a scheme"""
        if v and not v.startswith("http"):
            v = f"http://{v}"
        return v.rstrip("/") if v else v

    @field_validator("NOTIFY_MAX_RETRIES", "MAX_MISSES_BEFORE_SUSPENSION", mode="after")
    @classmethod
    def validate_at_least_one(cls, v: int) -> int:
        if v < 1:
            raise ValueError("value must be at least 1")
        return v

    @field_validator("COMMISSION_RATE", mode="after")
    @classmethod
    def validate_commission_rate(cls, v: float) -> float:
        if not 0 <= v <= 1:
            raise ValueError("COMMISSION_RATE must be between 0 and 1")
        return v

    @model_validator(mode="after")
    def validate_cross_fields(self) -> "Settings":
        """Cross-field checks that would otherwise surface mid-dispatch.

        1. The OSRM estimator needs a base URL.
        2. Night hours must be valid clock hours.
        3. The offer window must leave a driver time to answer.
        """
        if self.ESTIMATOR_PROVIDER == "osrm" and not self.OSRM_BASE_URL:
            raise ValueError("ESTIMATOR_PROVIDER=osrm requires OSRM_BASE_URL")

        for name in ("NIGHT_START_HOUR", "NIGHT_END_HOUR"):
            if not 0 <= getattr(self, name) <= 23:
                raise ValueError(f"{name} must be between 0 and 23")

        if self.OFFER_WINDOW_SECONDS <= 0:
            raise ValueError("OFFER_WINDOW_SECONDS must be > 0")

        return self

    class Config:
        env_file = ".env"
        case_sensitive = True


settings = Settings()
