import os
from typing import Dict

from dotenv import load_dotenv
from pydantic import BaseModel, Field


class Settings(BaseModel):
    database_url: str = "sqlite:///./booking.db"
    stripe_api_key: str = ""
    stripe_webhook_secret: str = ""
    jwt_secret: str = "devsecret-change-me"
    jwt_algorithm: str = "HS256"
    default_currency: str = "usd"
    # insurance tier -> flat cost added to a booking total
    insurance_costs: Dict[str, float] = Field(
        default_factory=lambda: {"basic": 10.0, "premium": 25.0, "full": 40.0}
    )
    cancellation_window_hours: int = 24
    transient_retry_attempts: int = 3
    transient_retry_backoff: float = 0.2
    log_level: str = "INFO"


def load_settings() -> Settings:
    """
    Build Settings from the process environment (and a local .env file if present).
    Call once at process start and hand the result to BookingContext.
    """
    load_dotenv()
    defaults = Settings()
    return Settings(
        database_url=os.getenv("DATABASE_URL", defaults.database_url),
        stripe_api_key=os.getenv("STRIPE_API_KEY", ""),
        stripe_webhook_secret=os.getenv("STRIPE_WEBHOOK_SECRET", ""),
        jwt_secret=os.getenv("JWT_SECRET", defaults.jwt_secret),
        jwt_algorithm=os.getenv("JWT_ALGORITHM", defaults.jwt_algorithm),
        default_currency=os.getenv("DEFAULT_CURRENCY", defaults.default_currency).lower(),
        insurance_costs={
            "basic": float(os.getenv("INSURANCE_BASIC_COST", "10")),
            "premium": float(os.getenv("INSURANCE_PREMIUM_COST", "25")),
            "full": float(os.getenv("INSURANCE_FULL_COST", "40")),
        },
        cancellation_window_hours=int(os.getenv("CANCELLATION_WINDOW_HOURS", "24")),
        transient_retry_attempts=int(os.getenv("TRANSIENT_RETRY_ATTEMPTS", "3")),
        transient_retry_backoff=float(os.getenv("TRANSIENT_RETRY_BACKOFF", "0.2")),
        log_level=os.getenv("LOG_LEVEL", defaults.log_level).upper(),
    )
