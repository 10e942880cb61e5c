"""
Runtime configuration for the storefront API.

A single Settings object is built at process start (Settings.from_env) and
handed to the app factory, which passes it on to the repositories, the
payment client and the order reconciler.
"""
import logging
import os
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, Field


class PricingConfig(BaseModel):
    """Tax and shipping constants shared by cart totals and checkout summary."""
    tax_rate: Decimal = Field(Decimal("0.10"), ge=0, le=1)
    free_shipping_threshold: Decimal = Field(Decimal("50.00"), ge=0)
    flat_shipping_cost: Decimal = Field(Decimal("5.00"), ge=0)
    currency: str = "GHS"


class Settings(BaseModel):
    database_url: str = "mongodb://localhost:27017"
    database_name: str = "storefront"

    pricing: PricingConfig = Field(default_factory=PricingConfig)

    jwt_secret: str = "change-me"
    jwt_cookie_name: str = "jwt"
    token_ttl_days: int = 7
    remember_me_ttl_days: int = 30
    cookie_secure: bool = False

    bcrypt_rounds: int = Field(12, ge=4, le=31)
    otp_expiry_minutes: int = 10
    max_otp_attempts: int = 5
    reset_token_ttl_minutes: int = 60

    paystack_secret_key: str = ""
    paystack_public_key: str = ""
    paystack_base_url: str = "https://api.paystack.co"
    paystack_timeout: float = 15.0

    google_client_id: str = ""
    google_client_secret: str = ""
    facebook_app_id: str = ""
    facebook_app_secret: str = ""
    oauth_callback_base_url: str = "http://localhost:8000"

    frontend_url: str = "http://localhost:5173"
    cors_origins: List[str] = Field(default_factory=lambda: ["http://localhost:5173"])
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, environ: Optional[dict] = None) -> "Settings":
        env = os.environ if environ is None else environ

        def get(name: str, default: str) -> str:
            return env.get(name) or default

        pricing = PricingConfig(
            tax_rate=Decimal(get("TAX_RATE", "0.10")),
            free_shipping_threshold=Decimal(get("FREE_SHIPPING_THRESHOLD", "50.00")),
            flat_shipping_cost=Decimal(get("FLAT_SHIPPING_COST", "5.00")),
            currency=get("CURRENCY", "GHS"),
        )
        origins = [o.strip() for o in get("CORS_ORIGINS", "http://localhost:5173").split(",") if o.strip()]
        return cls(
            database_url=get("DATABASE_URL", "mongodb://localhost:27017"),
            database_name=get("DATABASE_NAME", "storefront"),
            pricing=pricing,
            jwt_secret=get("JWT_SECRET", "change-me"),
            token_ttl_days=int(get("TOKEN_TTL_DAYS", "7")),
            remember_me_ttl_days=int(get("REMEMBER_ME_TTL_DAYS", "30")),
            cookie_secure=get("NODE_ENV", get("ENVIRONMENT", "development")) == "production",
            bcrypt_rounds=int(get("BCRYPT_ROUNDS", "12")),
            otp_expiry_minutes=int(get("OTP_EXPIRY_MINUTES", "10")),
            max_otp_attempts=int(get("MAX_OTP_ATTEMPTS", "5")),
            reset_token_ttl_minutes=int(get("RESET_TOKEN_TTL_MINUTES", "60")),
            paystack_secret_key=get("PAYSTACK_SECRET_KEY", ""),
            paystack_public_key=get("PAYSTACK_PUBLIC_KEY", ""),
            paystack_base_url=get("PAYSTACK_BASE_URL", "https://api.paystack.co"),
            google_client_id=get("GOOGLE_CLIENT_ID", ""),
            google_client_secret=get("GOOGLE_CLIENT_SECRET", ""),
            facebook_app_id=get("FACEBOOK_APP_ID", ""),
            facebook_app_secret=get("FACEBOOK_APP_SECRET", ""),
            oauth_callback_base_url=get("OAUTH_CALLBACK_URL", "http://localhost:8000"),
            frontend_url=get("FRONTEND_URL", "http://localhost:5173"),
            cors_origins=origins,
            log_level=get("LOG_LEVEL", "INFO"),
        )


def configure_logging(settings: Settings) -> None:
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
