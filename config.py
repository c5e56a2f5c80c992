from typing import Optional

from pydantic_settings import BaseSettings
from pydantic import Field


class Settings(BaseSettings):
    # =========================
    # Environment
    # =========================
    ENV: str = Field(default="dev")
    LOG_LEVEL: str = Field(default="INFO")

    # =========================
    # Database (bans, whitelist, verifications, connection log)
    # =========================
    DATABASE_URL: str = Field(default="sqlite:///./access_gate.db")

    # =========================
    # Redis (cross-worker fetch leases)
    # =========================
    REDIS_URL: str

    # =========================
    # Reputation sources
    # =========================
    STEAM_API_BASE_URL: str = Field(default="https://api.steampowered.com")
    STEAM_API_KEY: str = Field(default="")
    RATING_API_BASE_URL: str = Field(default="https://api.gokz.top")

    # =========================
    # Audit sink (compliance plane)
    # =========================
    AUDIT_SINK_URL: Optional[str] = Field(default=None)
    AUDIT_SHARED_SECRET: str = Field(default="")

    # =========================
    # Plugin access (comma-separated SHA-256 hashes)
    # =========================
    PLUGIN_API_KEY_HASHES: str = Field(default="")

    # =========================
    # Verification cache tunables (seconds)
    # =========================
    VERIFICATION_TTL_SECONDS: int = Field(default=86400)
    FETCH_TIMEOUT_SECONDS: float = Field(default=10.0)
    MAX_PENDING_AGE_SECONDS: int = Field(default=120)
    FETCH_RETRY_BACKOFF_SECONDS: int = Field(default=30)

    # =========================
    # Judgment thresholds (unset = plugin decides)
    # =========================
    MIN_ACCOUNT_LEVEL: Optional[int] = Field(default=None)
    MIN_PLAYTIME_MINUTES: Optional[int] = Field(default=None)
    MIN_RATING: Optional[float] = Field(default=None)

    class Config:
        env_file = ".env"
        case_sensitive = True
        extra = "ignore"

    def plugin_key_hashes(self) -> set:
        return {h.strip() for h in self.PLUGIN_API_KEY_HASHES.split(",") if h.strip()}


# Singleton
settings = Settings()
