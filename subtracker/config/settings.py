"""
Configuration Management for the Subscription Tracker

Uses pydantic-settings for type-safe configuration from environment variables.

DESIGN DECISION: All configuration is centralized here.
This makes it easy to see what external dependencies exist and
ensures all required configuration is validated at startup.
"""

from functools import lru_cache
from pathlib import Path

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class GoogleSheetsSettings(BaseSettings):
    """Google Sheets storage configuration."""

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
        description="Name of the sheet for canonical subscriptions"
    )
    potentials_sheet_name: str = Field(
        default="PotentialSubscriptions",
        description="Name of the sheet for potential subscriptions"
    )
    ledger_sheet_name: str = Field(
        default="ProcessedEvidence",
        description="Name of the sheet for the idempotency ledger"
    )
    checkpoints_sheet_name: str = Field(
        default="SyncCheckpoints",
        description="Name of the sheet for per-user sync checkpoints"
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


class GeminiSettings(BaseSettings):
    """Gemini LLM configuration."""

    model_config = SettingsConfigDict(
        env_prefix="GEMINI_",
        extra="ignore"
    )

    api_key: str = Field(
        ...,
        description="Gemini API key"
    )
    model_name: str = Field(
        default="gemini-1.5-flash",
        description="Gemini model used for evidence extraction and statement analysis"
    )
    classifier_model_name: str = Field(
        default="gemini-1.5-flash-8b",
        description="Cheaper model used for the subscription yes/no screen"
    )
    max_tokens: int = Field(
        default=2048,
        ge=100,
        le=8192,
        description="Maximum tokens in response"
    )
    temperature: float = Field(
        default=0.1,
        ge=0.0,
        le=1.0,
        description="Model temperature (lower = more deterministic)"
    )
    max_input_chars: int = Field(
        default=8000,
        ge=500,
        description="Email text is truncated to this many characters"
    )
    max_statement_chars: int = Field(
        default=30000,
        ge=1000,
        description="Statement text is truncated to this many characters"
    )


class ReconciliationSettings(BaseSettings):
    """
    Tunables of the reconciliation engine.

    The frequency bands are inclusive day ranges for the mean gap
    between consecutive charges.
    """

    model_config = SettingsConfigDict(
        env_prefix="RECONCILIATION_",
        extra="ignore"
    )

    amount_tolerance: float = Field(
        default=0.05,
        ge=0.0,
        le=1.0,
        description="Relative amount tolerance when grouping charges"
    )
    lookback_months: int = Field(
        default=6,
        ge=1,
        description="How far back the pattern detector looks"
    )
    match_window_days: int = Field(
        default=7,
        ge=0,
        description="Email search window around a transaction date"
    )

    monthly_min_days: int = 25
    monthly_max_days: int = 35
    yearly_min_days: int = 350
    yearly_max_days: int = 380
    weekly_min_days: int = 6
    weekly_max_days: int = 8

    projection_max_steps: int = Field(
        default=120,
        ge=1,
        description="Cap on steps when projecting from start_date"
    )
    rollforward_max_steps: int = Field(
        default=24,
        ge=1,
        description="Cap on steps when rolling an overdue renewal date forward"
    )
    auto_next_billing_days: int = Field(
        default=30,
        description="Next billing offset for an auto-applied monthly charge"
    )

    initial_scan_days: int = Field(
        default=90,
        ge=1,
        description="Email lookback on a user's first scan"
    )
    max_emails_per_scan: int = Field(
        default=100,
        ge=1,
        le=500,
    )
    bank_sync_days: int = Field(
        default=30,
        ge=1,
        description="Bank lookback on each sync"
    )
    io_timeout_seconds: float = Field(
        default=30.0,
        gt=0,
        description="Per-call timeout for collaborator I/O"
    )
    alert_days: int = Field(
        default=5,
        ge=1,
        description="Alert this many days before a renewal"
    )
    min_statement_chars: int = Field(
        default=100,
        ge=1,
        description="Extracted statement text shorter than this is rejected"
    )

    @model_validator(mode='after')
    def validate_bands(self) -> 'ReconciliationSettings':
        for name in ("monthly", "yearly", "weekly"):
            low = getattr(self, f"{name}_min_days")
            high = getattr(self, f"{name}_max_days")
            if low > high:
                raise ValueError(f"{name} band is empty: {low} > {high}")
        return self


class SchedulerSettings(BaseSettings):
    """Periodic job configuration (5-field cron specs)."""

    model_config = SettingsConfigDict(
        env_prefix="SCHEDULER_",
        extra="ignore"
    )

    email_scan_cron: str = Field(
        default="0 9,21 * * *",
        description="Email scan, twice a day"
    )
    bank_sync_cron: str = Field(
        default="0 2 * * *",
        description="Bank sync, nightly"
    )
    renewal_alert_cron: str = Field(
        default="0 8 * * *",
        description="Renewal alerts, every morning"
    )
    timezone: str = Field(
        default="UTC",
        description="Timezone the cron specs are evaluated in"
    )
    broker_url: str = Field(
        default="redis://localhost:6379/0",
        description="Celery broker URL"
    )

    @field_validator('email_scan_cron', 'bank_sync_cron', 'renewal_alert_cron')
    @classmethod
    def validate_cron(cls, v: str) -> str:
        if len(v.split()) != 5:
            raise ValueError(f"Expected a 5-field cron spec, got {v!r}")
        return v


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

    app_environment: str = Field(
        default="development",
        description="Application environment"
    )
    debug_mode: bool = Field(
        default=False,
        description="Enable debug mode"
    )
    default_currency: str = Field(
        default="USD",
        min_length=3,
        max_length=3,
        description="Currency assumed when evidence carries none"
    )


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
    def google_sheets(self) -> GoogleSheetsSettings:
        return GoogleSheetsSettings()

    @property
    def gemini(self) -> GeminiSettings:
        return GeminiSettings()

    @property
    def reconciliation(self) -> ReconciliationSettings:
        return ReconciliationSettings()

    @property
    def scheduler(self) -> SchedulerSettings:
        return SchedulerSettings()

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

    Returns a dict of {setting_name: is_valid}, with a
    "<name>_error" entry for each section that failed.
    Useful for startup checks.
    """
    results = {}

    settings = get_settings()

    for name in ("google_sheets", "gemini", "reconciliation", "scheduler", "app"):
        try:
            getattr(settings, name)
            results[name] = True
        except Exception as e:
            results[name] = False
            results[f"{name}_error"] = str(e)

    return results
