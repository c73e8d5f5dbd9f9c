from pydantic_settings import BaseSettings
from pydantic import Field
import os
from pathlib import Path
import dotenv

# Always load apps/.env (relative to this file), regardless of where the process is started.
_APPS_DIR = Path(__file__).resolve().parents[1]
dotenv.load_dotenv(dotenv_path=_APPS_DIR / ".env", override=False)


class Settings(BaseSettings):
    APP_HOST: str = Field(default=os.getenv("APP_HOST", "0.0.0.0"))
    APP_PORT: int = Field(default=int(os.getenv("APP_PORT", "8000")))
    # Auto-reload is for local development only.
    APP_RELOAD: bool = Field(default=(os.getenv("APP_RELOAD", "false").strip().lower() == "true"))
    # Share links are built as <PUBLIC_BASE_URL>/i/<public_id> and /o/<public_id>.
    PUBLIC_BASE_URL: str = Field(default=os.getenv("PUBLIC_BASE_URL", "http://localhost:3000"))
    CORS_ORIGINS: str = Field(default=os.getenv("CORS_ORIGINS", "http://localhost:3000"))
    LOG_LEVEL: str = Field(default=os.getenv("LOG_LEVEL", "INFO"))

    # Firestore service account key. If missing, default Google credentials are tried.
    FIREBASE_CREDENTIALS_PATH: str = Field(
        default=os.getenv("FIREBASE_CREDENTIALS_PATH", str(_APPS_DIR / "serviceAccountKey.json"))
    )

    # Email settings
    SMTP_SERVER: str = Field(default=os.getenv("SMTP_SERVER", "smtp.gmail.com"))
    SMTP_PORT: int = Field(default=int(os.getenv("SMTP_PORT", "587")))
    SMTP_USERNAME: str = Field(default=os.getenv("SMTP_USERNAME", ""))
    # Gmail app passwords are often copied with spaces; SMTP login expects the raw token.
    SMTP_PASSWORD: str = Field(default=os.getenv("SMTP_PASSWORD", "").strip().replace(" ", ""))
    EMAIL_FROM: str = Field(default=os.getenv("EMAIL_FROM", "invoices@puyer.org"))

    # If true, backend sends invoice/offer/reminder emails via SMTP.
    ENABLE_INVOICE_EMAILS: bool = Field(default=(os.getenv("ENABLE_INVOICE_EMAILS", "false").strip().lower() == "true"))

    # Operator alerts for scheduler runs that ended with errors.
    ALERT_WEBHOOK_URL: str = Field(default=os.getenv("ALERT_WEBHOOK_URL", ""))

    # ---------------------------------------------------------------------
    # Scheduler triggers
    #
    # /cron/* endpoints require: Authorization: Bearer <CRON_SECRET>.
    # An empty secret rejects every call.
    # ---------------------------------------------------------------------
    CRON_SECRET: str = Field(default=os.getenv("CRON_SECRET", ""))
    # Calendar-day truncation ("local midnight") is done in this zone.
    BUSINESS_TIMEZONE: str = Field(default=os.getenv("BUSINESS_TIMEZONE", "UTC"))
    # A recurring generation claim older than this is considered abandoned.
    RECURRING_CLAIM_TTL_SECONDS: int = Field(default=int(os.getenv("RECURRING_CLAIM_TTL_SECONDS", "600")))
    # Payment terms for generated invoices when the template has no due date.
    RECURRING_DEFAULT_DUE_DAYS: int = Field(default=int(os.getenv("RECURRING_DEFAULT_DUE_DAYS", "14")))
    MANUAL_REMINDER_INTERVAL_HOURS: int = Field(default=int(os.getenv("MANUAL_REMINDER_INTERVAL_HOURS", "24")))

    # Payment processor settlement webhooks (Stripe-style signatures).
    STRIPE_WEBHOOK_SECRET: str = Field(default=os.getenv("STRIPE_WEBHOOK_SECRET", ""))
    WEBHOOK_TOLERANCE_SECONDS: int = Field(default=int(os.getenv("WEBHOOK_TOLERANCE_SECONDS", "300")))

    # Pricing
    VAT_RATE: str = Field(default=os.getenv("VAT_RATE", "0.20"))
    PROCESSING_FEE_PERCENT: str = Field(default=os.getenv("PROCESSING_FEE_PERCENT", "0.015"))
    # Comma-separated CUR:minor_units pairs.
    PROCESSING_FEE_FIXED: str = Field(default=os.getenv("PROCESSING_FEE_FIXED", "GBP:20,USD:30,EUR:30"))
    PROCESSING_FEE_DEFAULT_FIXED: int = Field(default=int(os.getenv("PROCESSING_FEE_DEFAULT_FIXED", "30")))
    # Same threshold for every currency.
    MINIMUM_CHARGE_MINOR_UNITS: int = Field(default=int(os.getenv("MINIMUM_CHARGE_MINOR_UNITS", "100")))

    # Free plan: max invoices per owner. Paid plans are unlimited.
    FREE_INVOICE_LIMIT: int = Field(default=int(os.getenv("FREE_INVOICE_LIMIT", "3")))

    class Config:
        env_file = ".env"
        extra = "ignore"


settings = Settings()
