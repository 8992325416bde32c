"""Application configuration."""

from pathlib import Path

from pydantic import BaseModel, Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

GIB = 1024 * 1024 * 1024


class TierLimits(BaseModel):
    """Limits and priority for one subscription tier."""

    max_upload_bytes: int = Field(gt=0)
    max_running: int = Field(default=2, ge=1)
    max_pending: int = Field(default=20, ge=1)
    retention_seconds: int = Field(default=86400, gt=0)
    # Higher value is served first
    priority: int = 0


def _default_tiers() -> dict[str, TierLimits]:
    # Size limits follow the published pricing plans
    return {
        "free": TierLimits(max_upload_bytes=1 * GIB, max_running=2, max_pending=10, priority=0),
        "basic": TierLimits(max_upload_bytes=int(1.5 * GIB), max_running=4, max_pending=50, priority=1),
        "standard": TierLimits(max_upload_bytes=2 * GIB, max_running=6, max_pending=100, priority=2),
        "pro": TierLimits(max_upload_bytes=5 * GIB, max_running=8, max_pending=200, priority=3),
        "scale": TierLimits(max_upload_bytes=20 * GIB, max_running=16, max_pending=1000, priority=4),
    }


class Settings(BaseSettings):
    """
    Application settings.

    Environment variables will be loaded and validated using Pydantic.
    Per-tier limits can be replaced wholesale with a JSON document in ``TIERS``.
    """

    app_name: str = "File Converter Service"
    version: str = "0.1.0"

    # Storage and workers
    DATA_DIR: Path = Path("./data")
    WORKERS: int = Field(default=4, ge=1)
    JOB_TIMEOUT_SEC: float = Field(default=1800, gt=0)

    # Expiry
    SWEEP_INTERVAL_SEC: float = Field(default=60, gt=0)
    STAGING_TTL_SEC: int = Field(default=3600, gt=0)
    TOMBSTONE_TTL_SEC: int = Field(default=86400, ge=0)

    # Conversion guard rails
    MAX_OUTPUT_PIXELS: int = Field(default=400_000_000, gt=0)

    # Tiers and client identity
    DEFAULT_TIER: str = "free"
    TIERS: dict[str, TierLimits] = Field(default_factory=_default_tiers)
    API_KEYS: dict[str, str] = Field(default_factory=dict)

    # Job access token hashing (argon2id)
    TOKEN_HASH_TIME_COST: int = Field(default=3, ge=1)
    TOKEN_HASH_MEMORY_KIB: int = Field(default=65536, ge=8)

    # Logging Settings
    LOG_LEVEL: str = "INFO"
    JSON_LOGS: bool = True

    # Dev server
    HOST: str = "0.0.0.0"
    PORT: int = 8080
    RELOAD: bool = True

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    @model_validator(mode="after")
    def _check_tiers(self) -> "Settings":
        if self.DEFAULT_TIER not in self.TIERS:
            raise ValueError(f"DEFAULT_TIER {self.DEFAULT_TIER!r} is not a configured tier")
        unknown = sorted(set(self.API_KEYS.values()) - set(self.TIERS))
        if unknown:
            raise ValueError(f"API_KEYS reference unknown tiers: {', '.join(unknown)}")
        return self

    def tier(self, name: str) -> TierLimits:
        return self.TIERS[name]

    def tiers_by_priority(self) -> list[str]:
        return sorted(self.TIERS, key=lambda name: self.TIERS[name].priority, reverse=True)
