"""
Configuration
=============
Environment-driven settings for the order core, read once and checked at
startup so a bad deployment fails before serving a request.

Settings only; nothing here talks to the store, Twilio or the network.
"""

import os
import logging
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Optional, Dict, Any, List

from dotenv import load_dotenv


logger = logging.getLogger(__name__)

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


class ConfigurationError(Exception):
    """A setting is missing or has an unusable value."""
    pass


def load_environment():
    """Merge a local .env into the process environment when one exists."""
    env_file = Path(".env")
    if env_file.exists():
        load_dotenv(env_file)
        logger.info(f"Environment loaded from {env_file.resolve()}")
    else:
        logger.debug("No .env file, reading process environment only")


# ============================================================================
# ENVIRONMENT READERS
# ============================================================================

def _env(key: str, default: Optional[str] = None) -> Optional[str]:
    raw = os.getenv(key)
    if raw is None or not raw.strip():
        return default
    return raw.strip()


def _require(key: str, what: str) -> str:
    """
    Read a setting that has no default.

    Raises:
        ConfigurationError: If it is unset or blank
    """
    value = _env(key)
    if value is None:
        raise ConfigurationError(f"{key} is required ({what})")
    return value


def _flag(key: str, default: bool = False) -> bool:
    value = _env(key)
    if value is None:
        return default
    return value.lower() in ("true", "1", "yes", "on", "enabled")


def _integer(key: str, default: int) -> int:
    value = _env(key)
    if value is None:
        return default

    try:
        return int(value)
    except ValueError:
        raise ConfigurationError(f"{key} must be a whole number, got {value!r}")


def _decimal(key: str, default: str) -> Decimal:
    value = _env(key, default)

    try:
        return Decimal(value)
    except InvalidOperation:
        raise ConfigurationError(f"{key} must be a number, got {value!r}")


# ============================================================================
# SECTIONS
# ============================================================================

class StoreConfig:
    """Which data store backs the core, and how to reach it."""

    BACKENDS = ("memory", "supabase")

    def __init__(self):
        self.backend = _env("STORE_BACKEND", "memory").lower()
        if self.backend not in self.BACKENDS:
            raise ConfigurationError(
                f"STORE_BACKEND must be one of {', '.join(self.BACKENDS)}, got {self.backend!r}"
            )

        self.supabase_url: Optional[str] = None
        self.supabase_key: Optional[str] = None

        if self.backend == "supabase":
            self.supabase_url = _require("SUPABASE_URL", "Supabase project URL")
            self.supabase_key = _require("SUPABASE_KEY", "Supabase service role key")

            if not self.supabase_url.startswith("https://"):
                raise ConfigurationError("SUPABASE_URL must be an https:// URL")

        self.timeout = _integer("STORE_TIMEOUT", 10)

        # Sample menu and accounts for local runs on the memory backend
        self.seed_demo_data = _flag("SEED_DEMO_DATA")


class TwilioConfig:
    """Order status texts."""

    def __init__(self):
        self.enabled = _flag("ENABLE_SMS")
        self.account_sid: Optional[str] = None
        self.auth_token: Optional[str] = None
        self.phone_number: Optional[str] = None

        if self.enabled:
            self.account_sid = _require("TWILIO_ACCOUNT_SID", "Twilio account SID")
            self.auth_token = _require("TWILIO_AUTH_TOKEN", "Twilio auth token")
            self.phone_number = _require("TWILIO_PHONE_NUMBER", "sender number in E.164")

            if not self.account_sid.startswith("AC"):
                raise ConfigurationError("TWILIO_ACCOUNT_SID should start with AC")

            if not self.phone_number.startswith("+"):
                raise ConfigurationError("TWILIO_PHONE_NUMBER must be E.164, e.g. +15551234567")

        # Applied to customer numbers stored without a country prefix
        self.default_country_code = _env("SMS_DEFAULT_COUNTRY_CODE", "+91")
        if not self.default_country_code.startswith("+"):
            raise ConfigurationError("SMS_DEFAULT_COUNTRY_CODE must start with +")

        self.cafe_name = _env("CAFE_NAME", "Café Delight")


class LoyaltyConfig:
    """Reward point valuation."""

    def __init__(self):
        # Currency discounted per redeemed point
        self.point_value = _decimal("POINT_VALUE", "0.5")
        # Share of the paid total returned as points
        self.earn_rate = _decimal("EARN_RATE", "0.1")
        self.max_redeem_points = _integer("MAX_REDEEM_POINTS", 100)

        if self.point_value < 0:
            raise ConfigurationError("POINT_VALUE cannot be negative")

        if not 0 <= self.earn_rate <= 1:
            raise ConfigurationError("EARN_RATE must lie between 0 and 1")

        if self.max_redeem_points < 0:
            raise ConfigurationError("MAX_REDEEM_POINTS cannot be negative")


class ServerConfig:
    """HTTP listener and logging."""

    def __init__(self):
        self.host = _env("HOST", "0.0.0.0")
        self.port = _integer("PORT", 5000)
        self.cors_origins = [o.strip() for o in _env("CORS_ORIGINS", "*").split(",")]

        self.log_level = _env("LOG_LEVEL", "INFO").upper()
        self.log_json = _flag("LOG_JSON")

        if self.log_level not in LOG_LEVELS:
            raise ConfigurationError(f"LOG_LEVEL must be one of {', '.join(LOG_LEVELS)}")


# ============================================================================
# ROOT
# ============================================================================

class Config:
    """
    Every settings section, validated on construction.

    Raises:
        ConfigurationError: On the first missing or invalid setting
    """

    def __init__(self):
        try:
            self.store = StoreConfig()
            self.twilio = TwilioConfig()
            self.loyalty = LoyaltyConfig()
            self.server = ServerConfig()
        except ConfigurationError as e:
            logger.error(f"Invalid configuration: {e}")
            raise

    def get_safe_summary(self) -> Dict[str, Any]:
        """Settings that are safe to log; credentials are left out."""
        return {
            "store_backend": self.store.backend,
            "sms_enabled": self.twilio.enabled,
            "cafe_name": self.twilio.cafe_name,
            "loyalty": {
                "point_value": str(self.loyalty.point_value),
                "earn_rate": str(self.loyalty.earn_rate),
                "max_redeem_points": self.loyalty.max_redeem_points,
            },
            "server": {
                "host": self.server.host,
                "port": self.server.port,
                "log_level": self.server.log_level,
            }
        }

    def validate_runtime_dependencies(self) -> List[str]:
        """Non-fatal deployment warnings."""
        warnings = []

        if self.store.backend == "memory":
            warnings.append("memory store in use: orders and balances vanish on restart")

        if not self.twilio.enabled:
            warnings.append("ENABLE_SMS is off: no status texts will be sent")

        return warnings


_config: Optional[Config] = None


def get_config() -> Config:
    """Process-wide settings, built on first use."""
    global _config

    if _config is None:
        load_environment()
        _config = Config()

    return _config


def reload_config() -> Config:
    """Re-read the environment and replace the cached settings."""
    global _config
    load_environment()
    _config = Config()
    return _config


def validate_configuration(config: Optional[Config] = None):
    """Log the effective settings and any deployment warnings."""
    config = config or get_config()
    summary = config.get_safe_summary()

    logger.info(
        f"store={summary['store_backend']} sms={summary['sms_enabled']} "
        f"max_redeem={summary['loyalty']['max_redeem_points']} "
        f"listen={summary['server']['host']}:{summary['server']['port']} "
        f"log_level={summary['server']['log_level']}"
    )

    for warning in config.validate_runtime_dependencies():
        logger.warning(warning)
