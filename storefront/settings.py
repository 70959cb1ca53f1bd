import os
import logging
from dataclasses import dataclass, field
from typing import Tuple

import structlog


def _flag(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _csv(name: str, default: str = "") -> Tuple[str, ...]:
    raw = os.getenv(name, default)
    return tuple(part.strip() for part in raw.split(",") if part.strip())


@dataclass(frozen=True)
class Settings:
    database_url: str = "mongodb://localhost:27017"
    database_name: str = "storefront"
    razorpay_key_id: str | None = None
    razorpay_key_secret: str | None = None
    razorpay_base_url: str = "https://api.razorpay.com/v1"
    currency: str = "INR"
    shipping_cost: float = 0.0
    use_transactions: bool = False
    reconcile_grace_seconds: int = 300
    admin_emails: Tuple[str, ...] = field(default_factory=tuple)
    cors_origins: Tuple[str, ...] = ("*",)
    log_json: bool = False

    @property
    def razorpay_configured(self) -> bool:
        return bool(self.razorpay_key_id and self.razorpay_key_secret)


def get_settings() -> Settings:
    """Read configuration from the environment."""
    return Settings(
        database_url=os.getenv("DATABASE_URL", "mongodb://localhost:27017"),
        database_name=os.getenv("DATABASE_NAME", "storefront"),
        razorpay_key_id=os.getenv("RAZORPAY_KEY_ID"),
        razorpay_key_secret=os.getenv("RAZORPAY_KEY_SECRET"),
        razorpay_base_url=os.getenv("RAZORPAY_BASE_URL", "https://api.razorpay.com/v1"),
        currency=os.getenv("STORE_CURRENCY", "INR"),
        shipping_cost=float(os.getenv("SHIPPING_COST", "0")),
        use_transactions=_flag("MONGO_TRANSACTIONS"),
        reconcile_grace_seconds=int(os.getenv("RECONCILE_GRACE_SECONDS", "300")),
        admin_emails=tuple(e.lower() for e in _csv("ADMIN_EMAILS")),
        cors_origins=_csv("CORS_ORIGINS", "*"),
        log_json=_flag("LOG_JSON"),
    )


def configure_logging(settings: Settings) -> None:
    logging.basicConfig(format="%(message)s", level=logging.INFO)
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
    ]
    if settings.log_json:
        processors += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    else:
        processors.append(structlog.dev.ConsoleRenderer())
    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(logging.INFO),
    )
