"""
Configuration Management for Cashflow Billing

Uses pydantic-settings for type-safe configuration from environment variables.

DESIGN DECISION: All configuration is centralized here.
This makes it easy to see what external dependencies exist
(Paystack, Google Sheets) and ensures required values are validated
before the first payment is attempted.
"""

from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class PaystackSettings(BaseSettings):
    """Paystack payment gateway configuration."""

    model_config = SettingsConfigDict(
        env_prefix="PAYSTACK_",
        extra="ignore"
    )

    secret_key: str = Field(
        ...,
        description="Paystack secret key (sent as bearer credential)"
    )
    public_key: Optional[str] = Field(
        default=None,
        description="Paystack public key (only needed by client-side widgets)"
    )
    api_url: str = Field(
        default="https://api.paystack.co",
        description="Paystack API base URL"
    )
    timeout_seconds: float = Field(
        default=10.0,
        gt=0,
        le=60,
        description="Timeout for every Paystack HTTP call"
    )
    verify_retries: int = Field(
        default=3,
        ge=1,
        le=5,
        description="Attempts for the (idempotent) verify call on transport errors"
    )

    @field_validator('secret_key')
    @classmethod
    def validate_secret_key(cls, v: str) -> str:
        """Paystack secret keys always start with sk_."""
        if not v.startswith("sk_"):
            raise ValueError("Paystack secret key must start with 'sk_'")
        return v


class GoogleSheetsSettings(BaseSettings):
    """Google Sheets storage configuration (remote entitlement store)."""

    model_config = SettingsConfigDict(
        env_prefix="GOOGLE_SHEETS_",
        extra="ignore"
    )

    credentials_path: str = Field(
        ...,
        description="Path to Google service account credentials JSON"
    )
    spreadsheet_id: str = Field(
        ...,
        description="ID of the Google Sheets spreadsheet to use"
    )

    # Sheet names within the spreadsheet
    subscriptions_sheet_name: str = Field(
        default="Subscriptions",
        description="Name of the sheet for subscription snapshots"
    )
    transactions_sheet_name: str = Field(
        default="PaymentTransactions",
        description="Name of the sheet for payment transactions"
    )
    audit_sheet_name: str = Field(
        default="AuditLog",
        description="Name of the sheet for audit logs"
    )

    @field_validator('credentials_path')
    @classmethod
    def validate_credentials_path(cls, v: str) -> str:
        """Warn if credentials file doesn't exist (but don't fail - might be mounted later)."""
        if not Path(v).exists():
            import warnings
            warnings.warn(
                f"Google credentials file not found at {v}. "
                "Make sure it exists before running the application."
            )
        return v


class BillingSettings(BaseSettings):
    """Trial, currency and payment-flow configuration."""

    model_config = SettingsConfigDict(
        env_prefix="BILLING_",
        extra="ignore"
    )

    trial_duration_days: int = Field(
        default=14,
        ge=1,
        le=365,
        description="Length of the free trial in days"
    )
    remote_timeout_seconds: float = Field(
        default=5.0,
        gt=0,
        le=30,
        description="Upper bound for any single remote store call"
    )
    callback_url: str = Field(
        default="cashflowtracker://payment/callback",
        description="Deep link the hosted payment page redirects to"
    )

    # Currencies per channel
    card_currency: str = Field(
        default="USD",
        min_length=3,
        max_length=3,
        description="Settlement currency for card payments"
    )
    mobile_money_currency: str = Field(
        default="KES",
        min_length=3,
        max_length=3,
        description="Settlement currency for mobile money payments"
    )
    mobile_money_provider: str = Field(
        default="mpesa",
        description="Mobile money provider code sent to the gateway"
    )
    kes_per_usd: float = Field(
        default=130.0,
        gt=0,
        description="Conversion rate used to price plans for mobile money"
    )

    rewarded_access_hours: int = Field(
        default=24,
        ge=1,
        le=168,
        description="How long a rewarded-access grant lasts"
    )
    cache_path: str = Field(
        default=".cashflow_cache.json",
        description="File backing the local entitlement cache"
    )


class AppSettings(BaseSettings):
    """
    Main application settings.

    Loads configuration from environment variables and .env file.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    # Environment
    app_environment: str = Field(
        default="development",
        description="Application environment"
    )
    debug_mode: bool = Field(
        default=False,
        description="Enable debug mode"
    )

    @property
    def is_production(self) -> bool:
        return self.app_environment.strip().lower() == "production"


class Settings(BaseSettings):
    """
    Root settings container.

    Aggregates all sub-settings for easy access.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    # Note: These are loaded lazily to allow partial configuration

    @property
    def paystack(self) -> PaystackSettings:
        return PaystackSettings()

    @property
    def google_sheets(self) -> GoogleSheetsSettings:
        return GoogleSheetsSettings()

    @property
    def billing(self) -> BillingSettings:
        return BillingSettings()

    @property
    def app(self) -> AppSettings:
        return AppSettings()


@lru_cache()
def get_settings() -> Settings:
    """
    Get application settings (cached).

    Uses LRU cache to ensure settings are only loaded once.
    Call get_settings.cache_clear() to reload if needed.
    """
    return Settings()


def validate_all_settings() -> dict[str, bool]:
    """
    Validate all settings are properly configured.

    Returns a dict of {setting_name: is_valid}.
    Useful for startup checks.
    """
    results = {}

    settings = get_settings()

    for name in ("paystack", "google_sheets", "billing", "app"):
        try:
            _ = getattr(settings, name)
            results[name] = True
        except Exception as e:
            results[name] = False
            results[f"{name}_error"] = str(e)

    return results
