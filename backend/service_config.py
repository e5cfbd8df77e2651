"""
Service Configuration
=====================
Environment-driven settings for the lead-scraper checkout service, plus the
one-time structlog setup used by every component.

Secrets (Stripe keys, Apify token) are read from the process environment and
are never echoed back through the public config endpoint.
"""

import logging
import os
from dataclasses import dataclass, field
from typing import Optional

import structlog


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


@dataclass
class ServiceConfig:
    """Configuration for checkout, fulfillment and delivery."""

    # Stripe
    stripe_secret_key: str = ""
    stripe_webhook_secret: str = ""
    stripe_webhook_tolerance: int = 300

    # Apify actor
    apify_token: str = ""
    apollo_actor_id: str = "code_crafter/apollo-io-scraper"
    apify_base_url: str = "https://api.apify.com/v2"
    job_trigger_timeout: float = 30.0

    # Notification channel (empty URL disables it)
    email_webhook_url: str = ""
    notification_timeout: float = 10.0
    result_forward_timeout: float = 60.0

    # Local stores
    pending_orders_dir: str = "/tmp/apollo-urls"
    processed_sessions_dir: str = "/tmp/processed-sessions"

    # Stripe metadata limits
    metadata_field_length: int = 450
    metadata_max_keys: int = 50

    # Order limits and pricing
    min_leads: int = 500
    max_leads: int = 50000
    default_leads: int = 100
    price_per_lead_cents: float = 0.5
    min_amount_cents: int = 250
    max_amount_cents: int = 25000

    # HTTP
    public_base_url: str = ""
    cors_origins: list[str] = field(default_factory=lambda: ["*"])

    # Claims and sweeping
    claim_ttl_seconds: int = 120
    order_ttl_hours: int = 48
    sweep_interval_seconds: int = 3600
    sweep_enabled: bool = True

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"

    @classmethod
    def from_env(cls) -> "ServiceConfig":
        return cls(
            stripe_secret_key=os.getenv("STRIPE_SECRET_KEY", ""),
            stripe_webhook_secret=os.getenv("STRIPE_WEBHOOK_SECRET", ""),
            stripe_webhook_tolerance=int(os.getenv("STRIPE_WEBHOOK_TOLERANCE", "300")),
            apify_token=os.getenv("APIFY_TOKEN", ""),
            apollo_actor_id=os.getenv("APOLLO_ACTOR_ID", "code_crafter/apollo-io-scraper"),
            apify_base_url=os.getenv("APIFY_BASE_URL", "https://api.apify.com/v2").rstrip("/"),
            job_trigger_timeout=float(os.getenv("JOB_TRIGGER_TIMEOUT", "30")),
            email_webhook_url=os.getenv("EMAIL_WEBHOOK_URL", ""),
            notification_timeout=float(os.getenv("NOTIFICATION_TIMEOUT", "10")),
            result_forward_timeout=float(os.getenv("RESULT_FORWARD_TIMEOUT", "60")),
            pending_orders_dir=os.getenv("PENDING_ORDERS_DIR", "/tmp/apollo-urls"),
            processed_sessions_dir=os.getenv("PROCESSED_SESSIONS_DIR", "/tmp/processed-sessions"),
            metadata_field_length=int(os.getenv("METADATA_FIELD_LENGTH", "450")),
            metadata_max_keys=int(os.getenv("METADATA_MAX_KEYS", "50")),
            min_leads=int(os.getenv("MIN_LEADS", "500")),
            max_leads=int(os.getenv("MAX_LEADS", "50000")),
            default_leads=int(os.getenv("DEFAULT_LEADS", "100")),
            price_per_lead_cents=float(os.getenv("PRICE_PER_LEAD_CENTS", "0.5")),
            min_amount_cents=int(os.getenv("MIN_AMOUNT_CENTS", "250")),
            max_amount_cents=int(os.getenv("MAX_AMOUNT_CENTS", "25000")),
            public_base_url=os.getenv("PUBLIC_BASE_URL", "").rstrip("/"),
            cors_origins=os.getenv("CORS_ORIGINS", "*").split(","),
            claim_ttl_seconds=int(os.getenv("CLAIM_TTL_SECONDS", "120")),
            order_ttl_hours=int(os.getenv("ORDER_TTL_HOURS", "48")),
            sweep_interval_seconds=int(os.getenv("SWEEP_INTERVAL_SECONDS", "3600")),
            sweep_enabled=_env_bool("SWEEP_ENABLED", "true"),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
            log_format=os.getenv("LOG_FORMAT", "json").lower(),
        )

    @property
    def notifications_enabled(self) -> bool:
        return bool(self.email_webhook_url)

    @property
    def job_trigger_configured(self) -> bool:
        return bool(self.apify_token and self.apollo_actor_id)


_config: Optional[ServiceConfig] = None


def get_config() -> ServiceConfig:
    """Get or create the singleton configuration."""
    global _config
    if _config is None:
        _config = ServiceConfig.from_env()
    return _config


# =============================================================================
# STRUCTURED LOGGING SETUP
# =============================================================================

def configure_logging(config: Optional[ServiceConfig] = None) -> None:
    """Configure structlog once at process start."""
    config = config or get_config()
    level = logging.getLevelName(config.log_level)
    if not isinstance(level, int):
        level = logging.INFO

    renderer = (
        structlog.dev.ConsoleRenderer(colors=True)
        if config.log_format == "console"
        else structlog.processors.JSONRenderer()
    )

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )
