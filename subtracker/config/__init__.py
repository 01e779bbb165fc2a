"""Configuration package."""

from subtracker.config.settings import (
    AppSettings,
    GeminiSettings,
    GoogleSheetsSettings,
    ReconciliationSettings,
    SchedulerSettings,
    Settings,
    get_settings,
    validate_all_settings,
)

__all__ = [
    "AppSettings",
    "GeminiSettings",
    "GoogleSheetsSettings",
    "ReconciliationSettings",
    "SchedulerSettings",
    "Settings",
    "get_settings",
    "validate_all_settings",
]
