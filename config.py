"""
Runtime configuration and logging setup.

Every setting comes from the environment once, at startup. The resulting
Settings object is handed to whatever needs it; nothing else calls os.getenv.
"""
import logging
import os
import sys
from dataclasses import dataclass, field
from typing import List


def _flag(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class Settings:
    database_url: str = "mongodb://localhost:27017"
    database_name: str = "mobile_shop"
    database_transactions: bool = True
    database_transaction_attempts: int = 3

    jwt_secret: str = "dev-secret-change-me"
    jwt_expires_min: int = 60 * 24 * 7

    stripe_secret_key: str = ""
    stripe_webhook_secret: str = ""
    stripe_currency: str = "usd"
    stripe_timeout: float = 10.0
    stripe_max_retries: int = 0

    cors_origins: List[str] = field(default_factory=lambda: ["*"])
    log_level: str = "INFO"
    port: int = 8000

    @classmethod
    def from_env(cls) -> "Settings":
        origins = os.getenv("CORS_ORIGINS", "*")
        return cls(
            database_url=os.getenv("DATABASE_URL", cls.database_url),
            database_name=os.getenv("DATABASE_NAME", cls.database_name),
            database_transactions=_flag(os.getenv("DATABASE_TRANSACTIONS", "true")),
            database_transaction_attempts=int(os.getenv("DATABASE_TRANSACTION_ATTEMPTS",
                                                        str(cls.database_transaction_attempts))),
            jwt_secret=os.getenv("JWT_SECRET", cls.jwt_secret),
            jwt_expires_min=int(os.getenv("JWT_EXPIRES_MIN", str(cls.jwt_expires_min))),
            stripe_secret_key=os.getenv("STRIPE_SECRET_KEY", ""),
            stripe_webhook_secret=os.getenv("STRIPE_WEBHOOK_SECRET", ""),
            stripe_currency=os.getenv("STRIPE_CURRENCY", cls.stripe_currency),
            stripe_timeout=float(os.getenv("STRIPE_TIMEOUT", str(cls.stripe_timeout))),
            stripe_max_retries=int(os.getenv("STRIPE_MAX_RETRIES", str(cls.stripe_max_retries))),
            cors_origins=[o.strip() for o in origins.split(",") if o.strip()],
            log_level=os.getenv("LOG_LEVEL", cls.log_level),
            port=int(os.getenv("PORT", str(cls.port))),
        )


LOG_FORMAT = "%(asctime)s - %(name)s - [%(levelname)-7s] - %(message)s"


def setup_logging(level: str = "INFO") -> None:
    """Configures the root logger once."""
    root = logging.getLogger()
    root.setLevel(level.upper())
    if not root.handlers:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        root.addHandler(handler)
