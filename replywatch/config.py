"""
Application configuration. Loads from environment variables.
Secrets and sensitive config must never be hardcoded.
"""

import os

from dotenv import load_dotenv

load_dotenv()
from functools import lru_cache


@lru_cache(maxsize=1)
def get_settings() -> "Settings":
    """Return cached settings instance."""
    return Settings()


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


class Settings:
    """Application settings loaded from environment."""

    # App
    app_name: str = "ReplyWatch"
    debug: bool = False

    # Database (postgresql+psycopg for psycopg3; sqlite:/// accepted for local runs and tests)
    database_url: str = "postgresql+psycopg://localhost:5432/replywatch_dev"
    db_connect_timeout: int = 10  # seconds

    # Security
    internal_job_token: str = ""  # Required for /internal/* and /api/review/* endpoints

    # Job defaults
    job_max_attempts: int = 5
    job_default_priority: int = 5
    on_send_initial_delay_seconds: int = 120

    # Retry backoff: min(base * 2^(attempt-1), cap) + jitter
    retry_base_delay_seconds: int = 60
    retry_max_delay_seconds: int = 3600
    retry_jitter_ratio: float = 0.1

    # Quorum: explicit min healthy layers wins; otherwise strict majority by fraction
    quorum_min_healthy_layers: int | None = None
    quorum_fraction: float = 0.5

    # Detection layers
    layer_timeout_seconds: float = 30.0
    inbox_sweep_max_pages: int = 3
    history_page_size: int = 100
    history_sync_max_pages: int = 5
    history_candidate_retention_hours: int = 336
    alias_batch_size: int = 10

    # Checkpoints
    checkpoint_cache_ttl_seconds: float = 30.0
    checkpoint_cache_max_entries: int = 1024
    checkpoint_error_threshold: int = 5

    # Dispatch
    dispatch_batch_size: int = 20
    job_lease_timeout_seconds: int = 900
    worker_concurrency: int = 4
    worker_poll_interval_seconds: float = 5.0
    mailbox_max_jobs_per_minute: int = 6

    # Reconciliation
    reconciliation_grace_minutes: int = 30
    reconciliation_window_hours: int = 168
    reconciliation_recheck_hours: int = 24
    reconciliation_batch_limit: int = 500
    sync_stale_hours: int = 6

    # Anomalies
    quorum_failure_anomaly_streak: int = 2
    stale_detection_hours: int = 48

    # Alerts (SMTP)
    alert_email_enabled: bool = False
    alert_smtp_host: str = ""
    alert_smtp_port: int = 587
    alert_smtp_user: str = ""
    alert_smtp_password: str = ""
    alert_smtp_from: str = ""
    alert_email_to: str = ""
    alert_cooldown_minutes: int = 60

    # Provider
    use_static_provider: bool = False

    def __init__(self) -> None:
        self.app_name = os.getenv("APP_NAME", self.app_name)
        self.debug = os.getenv("DEBUG", "false").lower() == "true"

        default_user = os.getenv("PGUSER") or os.getenv("USER") or "postgres"
        default_url = (
            f"postgresql+psycopg://{default_user}:"
            f"{os.getenv('PGPASSWORD', '')}@"
            f"{os.getenv('PGHOST', 'localhost')}:"
            f"{os.getenv('PGPORT', '5432')}/"
            f"{os.getenv('PGDATABASE', 'replywatch_dev')}"
        )
        raw_url = os.getenv("DATABASE_URL", default_url)
        # Ensure psycopg3 driver if URL uses generic postgresql://
        if raw_url.startswith("postgresql://") and not raw_url.startswith("postgresql+psycopg"):
            raw_url = raw_url.replace("postgresql://", "postgresql+psycopg://", 1)
        self.database_url = raw_url
        self.db_connect_timeout = int(os.getenv("DB_CONNECT_TIMEOUT", str(self.db_connect_timeout)))

        self.internal_job_token = os.getenv("INTERNAL_JOB_TOKEN", "")

        self.job_max_attempts = int(os.getenv("JOB_MAX_ATTEMPTS", str(self.job_max_attempts)))
        self.job_default_priority = int(
            os.getenv("JOB_DEFAULT_PRIORITY", str(self.job_default_priority))
        )
        self.on_send_initial_delay_seconds = int(
            os.getenv("ON_SEND_INITIAL_DELAY_SECONDS", str(self.on_send_initial_delay_seconds))
        )

        self.retry_base_delay_seconds = int(
            os.getenv("RETRY_BASE_DELAY_SECONDS", str(self.retry_base_delay_seconds))
        )
        self.retry_max_delay_seconds = int(
            os.getenv("RETRY_MAX_DELAY_SECONDS", str(self.retry_max_delay_seconds))
        )
        self.retry_jitter_ratio = float(
            os.getenv("RETRY_JITTER_RATIO", str(self.retry_jitter_ratio))
        )

        # Empty or unset = use QUORUM_FRACTION
        _min_healthy = os.getenv("QUORUM_MIN_HEALTHY_LAYERS", "").strip()
        self.quorum_min_healthy_layers = int(_min_healthy) if _min_healthy else None
        self.quorum_fraction = float(os.getenv("QUORUM_FRACTION", str(self.quorum_fraction)))

        self.layer_timeout_seconds = float(
            os.getenv("LAYER_TIMEOUT_SECONDS", str(self.layer_timeout_seconds))
        )
        self.inbox_sweep_max_pages = int(
            os.getenv("INBOX_SWEEP_MAX_PAGES", str(self.inbox_sweep_max_pages))
        )
        self.history_page_size = int(os.getenv("HISTORY_PAGE_SIZE", str(self.history_page_size)))
        self.history_sync_max_pages = int(
            os.getenv("HISTORY_SYNC_MAX_PAGES", str(self.history_sync_max_pages))
        )
        self.history_candidate_retention_hours = int(
            os.getenv(
                "HISTORY_CANDIDATE_RETENTION_HOURS", str(self.history_candidate_retention_hours)
            )
        )
        self.alias_batch_size = int(os.getenv("ALIAS_BATCH_SIZE", str(self.alias_batch_size)))

        self.checkpoint_cache_ttl_seconds = float(
            os.getenv("CHECKPOINT_CACHE_TTL_SECONDS", str(self.checkpoint_cache_ttl_seconds))
        )
        self.checkpoint_cache_max_entries = int(
            os.getenv("CHECKPOINT_CACHE_MAX_ENTRIES", str(self.checkpoint_cache_max_entries))
        )
        self.checkpoint_error_threshold = int(
            os.getenv("CHECKPOINT_ERROR_THRESHOLD", str(self.checkpoint_error_threshold))
        )

        self.dispatch_batch_size = int(
            os.getenv("DISPATCH_BATCH_SIZE", str(self.dispatch_batch_size))
        )
        self.job_lease_timeout_seconds = int(
            os.getenv("JOB_LEASE_TIMEOUT_SECONDS", str(self.job_lease_timeout_seconds))
        )
        self.worker_concurrency = int(os.getenv("WORKER_CONCURRENCY", str(self.worker_concurrency)))
        self.worker_poll_interval_seconds = float(
            os.getenv("WORKER_POLL_INTERVAL_SECONDS", str(self.worker_poll_interval_seconds))
        )
        # 0 = disabled
        self.mailbox_max_jobs_per_minute = int(
            os.getenv("MAILBOX_MAX_JOBS_PER_MINUTE", str(self.mailbox_max_jobs_per_minute))
        )

        self.reconciliation_grace_minutes = int(
            os.getenv("RECONCILIATION_GRACE_MINUTES", str(self.reconciliation_grace_minutes))
        )
        self.reconciliation_window_hours = int(
            os.getenv("RECONCILIATION_WINDOW_HOURS", str(self.reconciliation_window_hours))
        )
        self.reconciliation_recheck_hours = int(
            os.getenv("RECONCILIATION_RECHECK_HOURS", str(self.reconciliation_recheck_hours))
        )
        self.reconciliation_batch_limit = int(
            os.getenv("RECONCILIATION_BATCH_LIMIT", str(self.reconciliation_batch_limit))
        )
        # 0 = disabled
        self.sync_stale_hours = int(os.getenv("SYNC_STALE_HOURS", str(self.sync_stale_hours)))

        self.quorum_failure_anomaly_streak = int(
            os.getenv("QUORUM_FAILURE_ANOMALY_STREAK", str(self.quorum_failure_anomaly_streak))
        )
        self.stale_detection_hours = int(
            os.getenv("STALE_DETECTION_HOURS", str(self.stale_detection_hours))
        )

        self.alert_email_enabled = _env_bool("ALERT_EMAIL_ENABLED", False)
        self.alert_smtp_host = os.getenv("ALERT_SMTP_HOST", "")
        self.alert_smtp_port = int(os.getenv("ALERT_SMTP_PORT", "587"))
        self.alert_smtp_user = os.getenv("ALERT_SMTP_USER", "")
        self.alert_smtp_password = os.getenv("ALERT_SMTP_PASSWORD", "")
        self.alert_smtp_from = os.getenv("ALERT_SMTP_FROM", "")
        self.alert_email_to = os.getenv("ALERT_EMAIL_TO", "")
        self.alert_cooldown_minutes = int(
            os.getenv("ALERT_COOLDOWN_MINUTES", str(self.alert_cooldown_minutes))
        )

        self.use_static_provider = _env_bool("USE_STATIC_PROVIDER", False)
