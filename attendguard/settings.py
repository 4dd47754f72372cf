"""Application settings and configuration (Pydantic v2)."""
from typing import Optional
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field


class Settings(BaseSettings):
    """Application settings."""

    # Database (Docker uses host "db")
    database_url: str = Field(
        default="postgresql://attendance_user:attendance_pass@db:5432/attendance",
        description="Postgres DSN",
    )

    # JWT
    jwt_secret_key: str = Field(
        default="your-super-secret-jwt-key-change-this-in-production",
    )
    jwt_algorithm: str = Field(default="HS256")
    jwt_access_token_expire_minutes: int = Field(default=30)

    # Admin user
    admin_user: str = Field(default="admin")
    admin_pass: str = Field(default="admin123")

    # Server-held key for check-in token signatures and fingerprint hashing
    signing_secret: Optional[str] = Field(default=None)

    # Session defaults
    rotation_interval_ms: int = Field(default=30000, ge=1000)
    default_radius_m: float = Field(default=50, gt=0)
    default_duration_minutes: int = Field(default=60, gt=0)
    late_threshold_minutes: int = Field(default=15, ge=0)
    required_accuracy_m: float = Field(default=150, gt=0)

    # Device trust
    trust_floor: int = Field(default=50, ge=0, le=100)
    trust_mismatch_penalty: int = Field(default=20, ge=0, le=100)
    trust_recovery_step: int = Field(default=5, ge=0, le=100)
    multi_device_window_minutes: int = Field(default=15, gt=0)

    # Abuse throttling
    checkin_rate_limit: int = Field(default=10, gt=0)
    checkin_rate_window_seconds: int = Field(default=60, gt=0)

    # Background expiry sweep; 0 disables it
    sweep_interval_seconds: int = Field(default=30, ge=0)

    log_level: str = Field(default="INFO")

    # Pydantic v2 settings
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        env_prefix="",
    )

    # ---- Backwards-compat properties (UPPERCASE) ----
    @property
    def SIGNING_SECRET(self) -> Optional[str]:
        return self.signing_secret


# Global settings instance
settings = Settings()
