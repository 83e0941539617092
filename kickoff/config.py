"""Application configuration using Pydantic Settings."""

from functools import lru_cache
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database
    DATABASE_URL: str = "sqlite:///./kickoff.db"

    # API Security
    API_KEY: str = ""  # Optional API key for admin endpoints
    API_KEY_HEADER: str = "X-API-Key"
    RATE_LIMIT_PER_MINUTE: str = "60/minute"

    # ═══════════════════════════════════════════════════════════════
    # Braze (remote campaign platform)
    # ═══════════════════════════════════════════════════════════════
    BRAZE_API_KEY: str = ""
    BRAZE_REST_ENDPOINT: str = ""  # e.g. https://rest.fra-02.braze.eu
    BRAZE_CAMPAIGN_ID: str = ""  # API-triggered pre-match campaign
    BRAZE_CONGRATS_CAMPAIGN_ID: str = ""  # API-triggered post-match campaign
    BRAZE_TIMEOUT_SECONDS: float = 30.0
    BRAZE_LIST_RETRIES: int = 3  # Reads only; writes are never retried in-call

    # Embedded in trigger_properties so the reconciler only touches our schedules
    SCHEDULE_ORIGIN: str = "kickoff-notifier"
    # Remote ids the platform no longer accepts for updates (legacy send ids)
    LEGACY_SCHEDULE_ID_PATTERN: str = r"^legacy[-_:]"

    # ═══════════════════════════════════════════════════════════════
    # Convergence scheduler
    # ═══════════════════════════════════════════════════════════════
    NOTIFICATIONS_ENABLED: bool = True  # Kill-switch for every remote-affecting unit
    SEND_OFFSET_MINUTES: int = 60  # Send this many minutes before kickoff
    UPDATE_BUFFER_MINUTES: int = 20  # Don't touch schedules this close to firing
    LOOKAHEAD_DAYS: int = 30
    LOCK_TTL_MINUTES: int = 10
    LOCAL_TIMEZONE: str = "Asia/Baghdad"  # Timezone of the kickoff_local trigger property

    # Reconciler
    RECONCILE_LOOKAHEAD_DAYS: int = 90
    LEDGER_RETENTION_DAYS: int = 30

    # Webhook correlator
    WEBHOOK_MATCH_WINDOW_MINUTES: int = 10
    WEBHOOK_SECRET: str = ""  # Optional shared secret (X-Webhook-Secret header)

    # Verifier / gap detector
    GAP_WINDOW_HOURS: int = 48
    GAP_AUTO_REPAIR_ENABLED: bool = True
    STALE_PENDING_GRACE_MINUTES: int = 15  # Webhooks lag the actual send
    STALE_PENDING_LOOKBACK_HOURS: int = 48

    # Congrats (post-match, send-immediate)
    CONGRATS_ENABLED: bool = False
    CONGRATS_LOOKBACK_HOURS: int = 6
    CONGRATS_EXCLUDED_COMPETITIONS: str = "FL1,DED,EL,ECL"  # CSV of competition codes

    # Outcome log housekeeping
    OUTCOME_LOG_RETENTION_DAYS: int = 14

    # Prometheus /metrics
    METRICS_BEARER_TOKEN: str = ""

    # Sentry
    SENTRY_DSN: str = ""
    SENTRY_ENVIRONMENT: str = "development"
    SENTRY_TRACES_SAMPLE_RATE: float = 0.05

    # SMTP alerting
    SMTP_ENABLED: bool = False
    SMTP_HOST: str = "smtp.gmail.com"
    SMTP_PORT: int = 587
    SMTP_USERNAME: str = ""
    SMTP_PASSWORD: str = ""
    SMTP_FROM_EMAIL: str = ""
    SMTP_TO_EMAIL: str = ""
    ALERT_COOLDOWN_MINUTES: int = 60

    class Config:
        env_file = ".env"
        extra = "ignore"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


def parse_csv(value: str) -> list[str]:
    """Split a comma-separated setting into trimmed, non-empty items."""
    return [item.strip() for item in (value or "").split(",") if item.strip()]
