"""
Application Configuration - Pydantic Settings for type-safe config.

NO DICTIONARIES - All configuration is strongly typed.
FAIL FAST - Critical config is validated at startup.
"""

import sys

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class ConfigurationError(Exception):
    """Raised when critical configuration is missing or invalid."""

    pass


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database Configuration - NO DEFAULT for production safety
    database_url: str = ""
    database_pool_size: int = 25
    database_max_overflow: int = 10
    database_pool_timeout: int = 30
    database_pool_recycle: int = 3600
    run_migrations_on_startup: bool = True

    # API Configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    api_title: str = "Workflow Generation API"
    api_version: str = "0.1.0"
    api_description: str = "Prompt-to-workflow generation with credit metering"

    # Authentication
    auth_jwt_secret: str = ""  # HS256 secret shared with the identity gateway
    cron_secret: str = ""  # Bearer secret for the credit expiry job

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"  # json or console

    # Observability - Metrics
    metrics_enabled: bool = True

    # Observability - Tracing
    tracing_enabled: bool = True
    otlp_endpoint: str = "http://otel-collector:4317"
    otlp_insecure: bool = True
    service_name: str = "workflow-generation-api"
    deployment_environment: str = "production"
    tracing_sample_ratio: float = 1.0

    # Payment Provider - Stripe
    stripe_api_key: str = ""
    stripe_webhook_secret: str = ""
    stripe_webhook_tolerance_seconds: int = 300
    stripe_price_starter: str = ""
    stripe_price_pro: str = ""
    stripe_price_payg_pack: str = ""

    # Generative capability (OpenAI-compatible chat completions)
    generation_api_url: str = "https://api.openai.com/v1/chat/completions"
    generation_api_key: str = ""
    generation_model: str = "gpt-4o"
    generation_temperature: float = 0.3
    generation_max_output_tokens: int = 4000
    generation_timeout_seconds: float = 90.0
    fast_generation_timeout_seconds: float = 30.0

    # Pricing Configuration
    trial_credits: int = 100
    trial_days: int = 7
    starter_monthly_credits: int = 300
    pro_monthly_credits: int = 500
    payg_pack_credits: int = 100
    purchased_credit_expiry_days: int = 30
    generation_cost_credits: int = 1
    grace_credit_threshold: int = 10
    grace_days_threshold: int = 1

    # Billing race policy: return a generated document unbilled when the
    # atomic spend loses to a concurrent request (False rejects the request)
    return_unbilled_on_spend_race: bool = True

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    @model_validator(mode="after")
    def validate_critical_config(self) -> "Settings":
        """
        FAIL FAST: Validate critical configuration at startup.

        The app MUST NOT start if critical config is missing.
        """
        errors: list[str] = []

        if not self.database_url:
            errors.append("DATABASE_URL is required but empty or missing")
        elif not self.database_url.startswith(("postgresql", "postgres", "sqlite")):
            errors.append(
                f"DATABASE_URL must be a PostgreSQL or SQLite URL, got: {self.database_url[:20]}..."
            )

        if self.generation_cost_credits <= 0:
            errors.append("GENERATION_COST_CREDITS must be positive")

        if errors:
            error_msg = "\n".join(
                [
                    "",
                    "=" * 60,
                    "CRITICAL CONFIGURATION ERROR - APPLICATION CANNOT START",
                    "=" * 60,
                    *[f"  ✗ {e}" for e in errors],
                    "=" * 60,
                    "",
                ]
            )
            print(error_msg, file=sys.stderr)
            raise ConfigurationError(error_msg)

        return self

    @property
    def is_sqlite(self) -> bool:
        """SQLite is used for local development and tests."""
        return self.database_url.startswith("sqlite")

    def plan_allowance(self, plan: str) -> int | None:
        """Monthly credit allowance for a subscription plan (None if not a subscription)."""
        return {
            "starter": self.starter_monthly_credits,
            "pro": self.pro_monthly_credits,
        }.get(plan)

    def price_for(self, plan: str) -> str:
        """Stripe price id sold for a plan ("" when not configured)."""
        return {
            "starter": self.stripe_price_starter,
            "pro": self.stripe_price_pro,
            "payg": self.stripe_price_payg_pack,
        }.get(plan, "")


# Global settings instance - validates at import time
settings = Settings()


def get_settings() -> Settings:
    """Get application settings instance."""
    return settings
