"""
Configuration - FatFood Backend
===============================
Environment-driven settings for the server, the database and the four
payment providers, plus the one-time structlog setup.

Provider settings are pydantic models so tests can build them directly;
`ensure()` is called at request time, never at import, so a missing
credential only breaks the endpoints of its own provider.

pip install pydantic structlog
"""

import logging
import os
from typing import Optional

import structlog
from pydantic import BaseModel

from errors import ConfigurationError


# =============================================================================
# SERVER / DATABASE
# =============================================================================

class ServerConfig:
    """Server configuration from environment"""

    HOST = os.getenv("HOST", "0.0.0.0")
    PORT = int(os.getenv("PORT", "8000"))
    ENV = os.getenv("ENV", "development")
    DEBUG = ENV == "development"

    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "*").split(",")
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

    # Shared with the gateway that sets X-User-Id / X-User-Role; unset disables header identity
    GATEWAY_SECRET = os.getenv("GATEWAY_SECRET")


class DatabaseConfig:
    """Database configuration from environment"""

    DATABASE_URL = os.getenv("DATABASE_URL")
    MIN_POOL_SIZE = int(os.getenv("DB_MIN_POOL_SIZE", "5"))
    MAX_POOL_SIZE = int(os.getenv("DB_MAX_POOL_SIZE", "20"))


server_config = ServerConfig()
database_config = DatabaseConfig()


# =============================================================================
# PAYMENT PROVIDERS
# =============================================================================

def _missing(config: BaseModel, fields: list[str]) -> list[str]:
    return [name for name in fields if not getattr(config, name)]


class VnpayConfig(BaseModel):
    tmn_code: Optional[str] = None
    hash_secret: Optional[str] = None
    pay_url: str = "https://sandbox.vnpayment.vn/paymentv2/vpcpay.html"
    return_url: Optional[str] = None
    locale: str = "vn"
    debug_sign: bool = False

    @classmethod
    def from_env(cls) -> "VnpayConfig":
        return cls(
            tmn_code=os.getenv("VNP_TMN_CODE"),
            hash_secret=os.getenv("VNP_HASH_SECRET"),
            pay_url=os.getenv("VNP_URL", "https://sandbox.vnpayment.vn/paymentv2/vpcpay.html"),
            return_url=os.getenv("VNP_RETURN_URL"),
            locale=os.getenv("VNP_LOCALE", "vn"),
            debug_sign=os.getenv("VNP_DEBUG_SIGN") == "1",
        )

    def ensure(self) -> "VnpayConfig":
        missing = _missing(self, ["tmn_code", "hash_secret", "return_url"])
        if missing:
            raise ConfigurationError(
                "Missing VNPAY configuration (VNP_TMN_CODE, VNP_HASH_SECRET, VNP_RETURN_URL)",
                code="VNPAY_CONFIG_MISSING",
                metadata={"missing": missing},
            )
        return self


class PaypalConfig(BaseModel):
    client_id: Optional[str] = None
    client_secret: Optional[str] = None
    webhook_id: Optional[str] = None
    currency: str = "USD"
    return_url: str = "http://localhost:8000/api/payments/paypal/return"
    cancel_url: str = "http://localhost:8000/api/payments/paypal/cancel"
    environment: str = "sandbox"

    @classmethod
    def from_env(cls) -> "PaypalConfig":
        return cls(
            client_id=os.getenv("PAYPAL_CLIENT_ID"),
            client_secret=os.getenv("PAYPAL_CLIENT_SECRET"),
            webhook_id=os.getenv("PAYPAL_WEBHOOK_ID"),
            currency=os.getenv("PAYPAL_CURRENCY", "USD").upper(),
            return_url=os.getenv("PAYPAL_RETURN_URL", "http://localhost:8000/api/payments/paypal/return"),
            cancel_url=os.getenv("PAYPAL_CANCEL_URL", "http://localhost:8000/api/payments/paypal/cancel"),
            environment=os.getenv("PAYPAL_ENVIRONMENT", "sandbox").lower(),
        )

    @property
    def base_url(self) -> str:
        if self.environment == "live":
            return "https://api-m.paypal.com"
        return "https://api-m.sandbox.paypal.com"

    def ensure(self) -> "PaypalConfig":
        missing = _missing(self, ["client_id", "client_secret"])
        if missing:
            raise ConfigurationError(
                "Missing PAYPAL_CLIENT_ID or PAYPAL_CLIENT_SECRET",
                code="PAYPAL_CONFIG_MISSING",
                metadata={"missing": missing},
            )
        return self

    def ensure_webhook(self) -> str:
        self.ensure()
        if not self.webhook_id:
            raise ConfigurationError(
                "Missing PAYPAL_WEBHOOK_ID for webhook verification",
                code="PAYPAL_WEBHOOK_ID_MISSING",
            )
        return self.webhook_id


class StripeConfig(BaseModel):
    secret_key: Optional[str] = None
    webhook_secret: Optional[str] = None
    currency: str = "vnd"

    @classmethod
    def from_env(cls) -> "StripeConfig":
        return cls(
            secret_key=os.getenv("STRIPE_SECRET_KEY"),
            webhook_secret=os.getenv("STRIPE_WEBHOOK_SECRET"),
            currency=os.getenv("STRIPE_CURRENCY", "vnd").lower(),
        )

    def ensure(self) -> "StripeConfig":
        if not self.secret_key:
            raise ConfigurationError("Missing STRIPE_SECRET_KEY", code="STRIPE_CONFIG_MISSING")
        return self

    def ensure_webhook(self) -> str:
        if not self.webhook_secret:
            raise ConfigurationError("Missing STRIPE_WEBHOOK_SECRET", code="STRIPE_WEBHOOK_SECRET_MISSING")
        return self.webhook_secret


class VietQrConfig(BaseModel):
    bank: Optional[str] = None
    account_no: Optional[str] = None
    account_name: str = ""

    @classmethod
    def from_env(cls) -> "VietQrConfig":
        return cls(
            bank=os.getenv("VIETQR_BANK"),
            account_no=os.getenv("VIETQR_ACCOUNT_NO"),
            account_name=os.getenv("VIETQR_ACCOUNT_NAME", ""),
        )

    def ensure(self) -> "VietQrConfig":
        missing = _missing(self, ["bank", "account_no"])
        if missing:
            raise ConfigurationError(
                "Missing VietQR configuration (VIETQR_BANK, VIETQR_ACCOUNT_NO)",
                code="VIETQR_CONFIG_MISSING",
                metadata={"missing": missing},
            )
        return self


# =============================================================================
# STRUCTURED LOGGING SETUP
# =============================================================================

def configure_logging(level: Optional[str] = None, json_logs: Optional[bool] = None) -> None:
    """Configure structlog once for the process."""
    level_name = (level or server_config.LOG_LEVEL).upper()
    if json_logs is None:
        json_logs = not server_config.DEBUG

    renderer = (
        structlog.processors.JSONRenderer()
        if json_logs
        else structlog.dev.ConsoleRenderer(colors=False)
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
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level_name, logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )
