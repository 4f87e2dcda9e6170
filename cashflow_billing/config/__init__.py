"""Configuration package."""

from cashflow_billing.config.settings import (
    AppSettings,
    BillingSettings,
    GoogleSheetsSettings,
    PaystackSettings,
    Settings,
    get_settings,
    validate_all_settings,
)

__all__ = [
    "AppSettings",
    "BillingSettings",
    "GoogleSheetsSettings",
    "PaystackSettings",
    "Settings",
    "get_settings",
    "validate_all_settings",
]
