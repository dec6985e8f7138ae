"""
Application Configuration
=========================

Centralized configuration using Pydantic Settings.
Loads from environment variables with validation.
"""

from functools import lru_cache
from typing import List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Environment
    ENVIRONMENT: str = Field(default="development")

    # Server
    PORT: int = Field(default=8000, description="Port to bind to")
    ALLOWED_ORIGINS: str = Field(default="http://localhost:5173,capacitor://localhost")

    # Database - Supabase Postgres
    SUPABASE_DATABASE_URL: str = Field(default="")
    DATABASE_POOL_SIZE: int = Field(default=10)
    DATABASE_STATEMENT_TIMEOUT_SECONDS: float = Field(default=5.0, gt=0)
    DATABASE_POOL_TIMEOUT_SECONDS: float = Field(default=30.0, gt=0)

    # Redis (processed webhook event ledger)
    REDIS_URL: str = Field(default="redis://localhost:6379/0")
    WEBHOOK_EVENT_TTL_SECONDS: int = Field(default=86400 * 7, gt=0)
    REDIS_SOCKET_TIMEOUT_SECONDS: float = Field(default=2.0, gt=0)

    # Supabase Auth (bearer tokens issued to the mobile/web client)
    SUPABASE_JWT_SECRET: str = Field(default="change-this-secret-in-production-please")
    JWT_ALGORITHM: str = Field(default="HS256")
    JWT_AUDIENCE: str = Field(default="authenticated")

    # Stripe (web checkout)
    STRIPE_SECRET_KEY: str = Field(default="")
    STRIPE_WEBHOOK_SECRET: str = Field(default="")
    STRIPE_API_TIMEOUT_SECONDS: float = Field(default=10.0, gt=0)
    STRIPE_PRICE_ADFREE: str = Field(default="")
    STRIPE_PRICE_PRO: str = Field(default="")
    STRIPE_PRICE_PREMIUM: str = Field(default="")

    # Tier table override (JSON object: tier_name -> limits)
    TIER_CONFIG_JSON: Optional[str] = Field(default=None)

    # RevenueCat (native in-app purchases)
    REVENUECAT_API_KEY: str = Field(default="")
    REVENUECAT_WEBHOOK_SECRET: str = Field(default="")
    REVENUECAT_API_URL: str = Field(default="https://api.revenuecat.com/v1")
    VERIFICATION_TIMEOUT_SECONDS: float = Field(default=10.0, gt=0)

    # Native sync trust policy
    NATIVE_FALLBACK_PERIOD_DAYS: int = Field(default=30, gt=0)
    NATIVE_FALLBACK_TIER_CEILING: str = Field(default="adfree")

    @property
    def allowed_origins_list(self) -> List[str]:
        """Parse ALLOWED_ORIGINS into a list."""
        return [origin.strip() for origin in self.ALLOWED_ORIGINS.split(",")]

    @property
    def stripe_price_map(self) -> dict[str, str]:
        """Configured Stripe price IDs keyed to tier names (unset prices skipped)."""
        configured = {
            self.STRIPE_PRICE_ADFREE: "adfree",
            self.STRIPE_PRICE_PRO: "pro",
            self.STRIPE_PRICE_PREMIUM: "premium",
        }
        return {price.strip(): tier for price, tier in configured.items() if price.strip()}

    @property
    def database_url_async(self) -> str:
        """Convert database URL to async format for asyncpg."""
        if self.SUPABASE_DATABASE_URL:
            return self.SUPABASE_DATABASE_URL.replace(
                "postgresql://", "postgresql+asyncpg://"
            )
        return ""

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.ENVIRONMENT.lower() == "production"

    @property
    def is_development(self) -> bool:
        """Check if running in development environment."""
        return self.ENVIRONMENT.lower() == "development"

    @field_validator("SUPABASE_JWT_SECRET")
    @classmethod
    def validate_jwt_secret(cls, v: str) -> str:
        """Ensure JWT secret is sufficiently long."""
        if len(v) < 32:
            raise ValueError("SUPABASE_JWT_SECRET must be at least 32 characters long")
        return v


@lru_cache
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are loaded only once.
    """
    return Settings()


# Export a default settings instance
settings = get_settings()
