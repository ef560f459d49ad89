"""
Configuration management for the Farm Shop API.

Loads settings from .env via pydantic-settings.

Security notes:
    - validate_production_settings() refuses to boot production without
      Stripe, Google and JWT secrets, and blocks wildcard CORS
    - Stripe webhook secret is never optional: webhooks fail closed without it
"""
import logging

from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import List

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # ── Database ────────────────────────────────────────────────────
    database_url: str = "sqlite:///./data/farm_shop.db"

    # ── Application ─────────────────────────────────────────────────
    environment: str = "development"
    currency: str = "usd"
    max_quantity_per_order: int = 20

    # ── Stripe ──────────────────────────────────────────────────────
    stripe_secret_key: str = ""
    stripe_publishable_key: str = ""
    stripe_webhook_secret: str = ""
    stripe_webhook_tolerance_seconds: int = 300

    # ── Google OAuth ────────────────────────────────────────────────
    google_client_id: str = ""
    google_client_secret: str = ""
    google_redirect_uri: str = "http://localhost:8000/auth/google/callback"
    oauth_state_ttl_minutes: int = 10
    frontend_login_redirect: str = ""

    # ── Auth (JWT sessions) ─────────────────────────────────────────
    jwt_secret: str = ""
    jwt_issuer: str = "farm-shop-api"
    jwt_access_ttl_minutes: int = 60 * 24
    admin_emails: str = ""

    # ── Email (SMTP) ────────────────────────────────────────────────
    # Empty smtp_host => emails are logged instead of sent.
    smtp_host: str = ""
    smtp_port: int = 587
    smtp_username: str = ""
    smtp_password: str = ""
    smtp_use_tls: bool = True
    email_from: str = "orders@farm-shop.local"

    # ── Notification dispatcher ─────────────────────────────────────
    notification_max_attempts: int = 5
    notification_backoff_base_seconds: float = 2.0
    notification_backoff_max_seconds: float = 300.0
    notification_poll_seconds: int = 15

    # ── Inventory reservations ──────────────────────────────────────
    reservation_ttl_minutes: int = 30
    reservation_sweep_seconds: int = 60

    # ── Blocking I/O (Stripe SDK, SMTP) ─────────────────────────────
    blocking_io_workers: int = 8

    # ── Rate limiting ───────────────────────────────────────────────
    rate_limit_enabled: bool = True

    # ── CORS ────────────────────────────────────────────────────────
    cors_origins: str = "http://localhost:3000,http://127.0.0.1:3000,http://localhost:5173,http://127.0.0.1:5173"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",  # allow unknown .env keys without crashing
    )

    @property
    def cors_origins_list(self) -> List[str]:
        """Parse CORS origins from comma-separated string."""
        return [origin.strip() for origin in self.cors_origins.split(",") if origin.strip()]

    @property
    def admin_emails_list(self) -> List[str]:
        """Lower-cased admin emails; users signing in with these get role=admin."""
        return [e.strip().lower() for e in self.admin_emails.split(",") if e.strip()]

    def validate_production_settings(self):
        """
        Validate settings for production safety.

        Called during app startup.
        """
        if self.environment == "production":
            if "*" in self.cors_origins:
                raise ValueError(
                    "CORS_ORIGINS must not contain '*' in production. "
                    "Set explicit allowed origins."
                )
            if not self.jwt_secret:
                raise ValueError(
                    "JWT_SECRET must be set in production. "
                    "It is used to sign session tokens."
                )
            if not self.stripe_secret_key:
                raise ValueError("STRIPE_SECRET_KEY must be set in production.")
            if not self.stripe_webhook_secret:
                raise ValueError(
                    "STRIPE_WEBHOOK_SECRET must be set in production. "
                    "Webhooks are rejected without it."
                )
            if not (self.google_client_id and self.google_client_secret):
                raise ValueError(
                    "GOOGLE_CLIENT_ID and GOOGLE_CLIENT_SECRET must be set in production."
                )
            logger.info("✅ Production settings validated")
        else:
            warnings = []
            if not self.stripe_webhook_secret:
                warnings.append("STRIPE_WEBHOOK_SECRET empty (all webhooks will be rejected)")
            if not self.smtp_host:
                warnings.append("SMTP_HOST empty (order emails are logged, not sent)")
            if "*" in self.cors_origins:
                warnings.append("CORS_ORIGINS contains '*' (open access)")
            for w in warnings:
                logger.warning(f"⚠️  {w}")


# Global settings instance
settings = Settings()
