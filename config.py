"""Configuration management for the BMS workflow service"""

import os
import logging
from dataclasses import dataclass
from typing import Dict, Optional

logger = logging.getLogger(__name__)


def _env_int(env_var: str, default: int, min_val: int = 0, max_val: int = 10_000) -> int:
    """Read an integer setting, falling back to the default on bad or out-of-range values"""
    raw = os.getenv(env_var)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        logger.warning(f"⚠️ Invalid {env_var}={raw!r}, using default {default}")
        return default
    if value < min_val or value > max_val:
        logger.warning(
            f"⚠️ {env_var}={value} outside [{min_val}, {max_val}], using default {default}"
        )
        return default
    return value


def _env_bool(env_var: str, default: bool) -> bool:
    raw = os.getenv(env_var)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


class Config:
    """Application configuration"""

    # Environment detection: ENVIRONMENT takes absolute priority
    ENVIRONMENT = os.getenv("ENVIRONMENT", "development").lower().strip()
    IS_PRODUCTION = ENVIRONMENT == "production"
    CURRENT_ENVIRONMENT = "production" if IS_PRODUCTION else "development"

    # Database
    DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./bms.db")
    DATABASE_POOL_SIZE = _env_int("DATABASE_POOL_SIZE", 10, 1, 200)
    DATABASE_MAX_OVERFLOW = _env_int("DATABASE_MAX_OVERFLOW", 20, 0, 400)

    # External services: "mock" keeps every provider call in-process
    EXTERNAL_SERVICES_MODE = os.getenv("EXTERNAL_SERVICES_MODE", "mock").lower().strip()
    HTTP_TIMEOUT_SECONDS = _env_int("HTTP_TIMEOUT_SECONDS", 30, 1, 300)

    # Stripe
    STRIPE_SECRET_KEY = os.getenv("STRIPE_SECRET_KEY")
    STRIPE_PUBLISHABLE_KEY = os.getenv("STRIPE_PUBLISHABLE_KEY")
    STRIPE_API_BASE = os.getenv("STRIPE_API_BASE", "https://api.stripe.com/v1")

    # SendGrid
    SENDGRID_API_KEY = os.getenv("SENDGRID_API_KEY")
    SENDGRID_API_BASE = os.getenv("SENDGRID_API_BASE", "https://api.sendgrid.com/v3")
    EMAIL_FROM = os.getenv("EMAIL_FROM", "noreply@bms.local")

    # KYC/AML screening provider
    SCREENING_API_URL = os.getenv("SCREENING_API_URL")
    SCREENING_API_KEY = os.getenv("SCREENING_API_KEY")

    # Support SLA (hours until first response is due, by ticket priority)
    SLA_HOURS_CRITICAL = _env_int("SLA_HOURS_CRITICAL", 1, 1, 720)
    SLA_HOURS_HIGH = _env_int("SLA_HOURS_HIGH", 4, 1, 720)
    SLA_HOURS_MEDIUM = _env_int("SLA_HOURS_MEDIUM", 24, 1, 720)
    SLA_HOURS_LOW = _env_int("SLA_HOURS_LOW", 72, 1, 720)

    # Treasury controls
    DEFAULT_REQUIRED_CONFIRMATIONS = _env_int("DEFAULT_REQUIRED_CONFIRMATIONS", 6, 0, 1000)
    DEFAULT_REQUIRED_APPROVALS = _env_int("DEFAULT_REQUIRED_APPROVALS", 1, 1, 20)
    WALLET_OP_FOUR_EYES = _env_bool("WALLET_OP_FOUR_EYES", True)

    # Compliance filing windows (days from report creation)
    COMPLIANCE_DUE_DAYS = {
        "sar": _env_int("COMPLIANCE_DUE_DAYS_SAR", 30, 1, 365),
        "str": _env_int("COMPLIANCE_DUE_DAYS_STR", 30, 1, 365),
        "ctr": _env_int("COMPLIANCE_DUE_DAYS_CTR", 15, 1, 365),
        "fbar": _env_int("COMPLIANCE_DUE_DAYS_FBAR", 180, 1, 365),
    }

    @staticmethod
    def sla_hours() -> Dict[str, int]:
        """SLA hours keyed by ticket priority"""
        return {
            "critical": Config.SLA_HOURS_CRITICAL,
            "high": Config.SLA_HOURS_HIGH,
            "medium": Config.SLA_HOURS_MEDIUM,
            "low": Config.SLA_HOURS_LOW,
        }

    @staticmethod
    def log_environment_config():
        """Log current environment configuration for debugging"""
        logger.info(f"🔧 BMS Environment Configuration:")
        logger.info(f"   Environment: {Config.CURRENT_ENVIRONMENT.upper()}")
        logger.info(f"   External services: {Config.EXTERNAL_SERVICES_MODE}")
        logger.info(f"   Four-eyes on wallet operations: {Config.WALLET_OP_FOUR_EYES}")
        logger.info(f"   Default confirmations: {Config.DEFAULT_REQUIRED_CONFIRMATIONS}")

    @staticmethod
    def validate_production_config():
        """Check live-mode credentials are present; returns list of missing keys"""
        missing = []
        if Config.EXTERNAL_SERVICES_MODE == "live":
            for key in ("STRIPE_SECRET_KEY", "SENDGRID_API_KEY", "SCREENING_API_URL"):
                if not getattr(Config, key):
                    missing.append(key)
        if missing:
            logger.error(f"❌ Live external services configured but missing: {', '.join(missing)}")
        return missing


@dataclass(frozen=True)
class IntegrationSettings:
    """
    Provider settings resolved once at startup.

    Adapters receive this object instead of reading the environment themselves,
    which keeps them constructible in tests with explicit values.
    """

    mode: str = "mock"
    http_timeout_seconds: int = 30
    stripe_secret_key: Optional[str] = None
    stripe_publishable_key: Optional[str] = None
    stripe_api_base: str = "https://api.stripe.com/v1"
    sendgrid_api_key: Optional[str] = None
    sendgrid_api_base: str = "https://api.sendgrid.com/v3"
    email_from: str = "noreply@bms.local"
    screening_api_url: Optional[str] = None
    screening_api_key: Optional[str] = None

    @property
    def is_live(self) -> bool:
        return self.mode == "live"

    @classmethod
    def from_config(cls) -> "IntegrationSettings":
        if Config.EXTERNAL_SERVICES_MODE not in ("mock", "live"):
            logger.warning(
                f"⚠️ Unknown EXTERNAL_SERVICES_MODE={Config.EXTERNAL_SERVICES_MODE!r}, using mock"
            )
        mode = "live" if Config.EXTERNAL_SERVICES_MODE == "live" else "mock"
        return cls(
            mode=mode,
            http_timeout_seconds=Config.HTTP_TIMEOUT_SECONDS,
            stripe_secret_key=Config.STRIPE_SECRET_KEY,
            stripe_publishable_key=Config.STRIPE_PUBLISHABLE_KEY,
            stripe_api_base=Config.STRIPE_API_BASE,
            sendgrid_api_key=Config.SENDGRID_API_KEY,
            sendgrid_api_base=Config.SENDGRID_API_BASE,
            email_from=Config.EMAIL_FROM,
            screening_api_url=Config.SCREENING_API_URL,
            screening_api_key=Config.SCREENING_API_KEY,
        )
