"""
Configuration Module
====================
Environment loading and typed settings for storage, payments, catalog and
the HTTP server. Invalid values raise ConfigurationError at startup.

NO BUSINESS LOGIC - settings only.
"""

import os
import logging
from decimal import Decimal, InvalidOperation
from typing import Optional, Dict, Any, List
from pathlib import Path
from dotenv import load_dotenv


# ============================================================================
# LOGGING
# ============================================================================

logger = logging.getLogger(__name__)


# ============================================================================
# ENVIRONMENT LOADING
# ============================================================================

def load_environment():
    """
    Load .env into the process environment when the file exists.
    Idempotent.
    """
    env_path = Path(".env")
    if env_path.exists():
        load_dotenv(env_path)
        logger.info("Loaded environment from .env file")
    else:
        logger.info("No .env file found, using system environment variables")


# Load on module import
load_environment()


# ============================================================================
# CONFIGURATION EXCEPTION
# ============================================================================

class ConfigurationError(Exception):
    """Raised when configuration is invalid or missing."""
    pass


# ============================================================================
# VALIDATION HELPERS
# ============================================================================

def _get_required_env(key: str, description: str = None) -> str:
    """
    Get required environment variable.

    Args:
        key: Environment variable name
        description: Optional description for error message

    Returns:
        Environment variable value

    Raises:
        ConfigurationError: If variable is missing or empty
    """
    value = os.getenv(key)

    if not value or value.strip() == "":
        desc = f" ({description})" if description else ""
        raise ConfigurationError(
            f"Missing required environment variable: {key}{desc}"
        )

    return value.strip()


def _get_optional_env(key: str, default: str = None) -> Optional[str]:
    """Get optional environment variable, stripped."""
    value = os.getenv(key, default)
    return value.strip() if value else default


def _get_bool_env(key: str, default: bool = False) -> bool:
    """Get boolean environment variable."""
    value = os.getenv(key, str(default)).lower()
    return value in ("true", "1", "yes", "on", "enabled")


def _get_int_env(key: str, default: int = None) -> Optional[int]:
    """
    Get integer environment variable.

    Raises:
        ConfigurationError: If value is not a valid integer
    """
    value = os.getenv(key)

    if not value:
        return default

    try:
        return int(value)
    except ValueError:
        raise ConfigurationError(
            f"Invalid integer value for {key}: {value}"
        )


def _get_float_env(key: str, default: float = None) -> Optional[float]:
    value = os.getenv(key)

    if not value:
        return default

    try:
        return float(value)
    except ValueError:
        raise ConfigurationError(
            f"Invalid float value for {key}: {value}"
        )


def _get_decimal_env(key: str, default: str) -> Decimal:
    """
    Get decimal environment variable (money and percentages).

    Raises:
        ConfigurationError: If value is not a valid decimal
    """
    value = os.getenv(key) or default

    try:
        return Decimal(value.strip())
    except InvalidOperation:
        raise ConfigurationError(
            f"Invalid decimal value for {key}: {value}"
        )


# ============================================================================
# STORAGE CONFIGURATION
# ============================================================================

SUPPORTED_BACKENDS = ("supabase", "nocodb", "memory")

DEFAULT_NOCODB_TABLES = {
    "categories": "mhzfcqmgq9kbj3c",
    "menu": "mmrv37h1hbu2hl6",
    "extras": "mk1ufwpu8salnvx",
    "orders": "mcgorx1a6qxkfsp",
}


class StorageConfig:
    """Record store backends and resilience settings."""

    def __init__(self):
        raw_backends = _get_optional_env("STORAGE_BACKENDS", "memory")
        self.backends = [
            b.strip().lower() for b in raw_backends.split(",") if b.strip()
        ]

        if not self.backends:
            raise ConfigurationError("STORAGE_BACKENDS must list at least one backend")

        for backend in self.backends:
            if backend not in SUPPORTED_BACKENDS:
                raise ConfigurationError(
                    f"Invalid storage backend: {backend}. "
                    f"Must be one of {', '.join(SUPPORTED_BACKENDS)}"
                )

        # Supabase (required only when listed)
        self.supabase_url: Optional[str] = None
        self.supabase_key: Optional[str] = None

        if "supabase" in self.backends:
            self.supabase_url = _get_required_env(
                "SUPABASE_URL",
                "Supabase project URL"
            )
            self.supabase_key = _get_required_env(
                "SUPABASE_KEY",
                "Supabase anon or service role key"
            )

            if not self.supabase_url.startswith("https://"):
                raise ConfigurationError(
                    f"SUPABASE_URL must start with https://: {self.supabase_url}"
                )

        # NocoDB (required only when listed)
        base_url = _get_optional_env("NOCODB_BASE_URL", "https://app.nocodb.com")
        # Dashboard links carry a "/#/..." suffix that the API does not accept
        self.nocodb_base_url = base_url.split("/#/")[0].rstrip("/")
        self.nocodb_token: Optional[str] = None

        if "nocodb" in self.backends:
            self.nocodb_token = _get_required_env(
                "NOCODB_TOKEN",
                "NocoDB API token (xc-token)"
            )

        self.nocodb_tables = {
            table: _get_optional_env(f"NOCODB_TABLE_{table.upper()}", table_id)
            for table, table_id in DEFAULT_NOCODB_TABLES.items()
        }

        # Resilience
        self.max_retries = _get_int_env("STORE_MAX_RETRIES", 3)
        self.retry_delay = _get_float_env("STORE_RETRY_DELAY", 0.5)
        self.timeout = _get_float_env("STORE_TIMEOUT", 10.0)
        self.circuit_breaker_threshold = _get_int_env("CIRCUIT_BREAKER_THRESHOLD", 5)
        self.circuit_breaker_timeout = _get_int_env("CIRCUIT_BREAKER_TIMEOUT", 30)

        if self.max_retries < 0:
            raise ConfigurationError(
                f"STORE_MAX_RETRIES must be >= 0: {self.max_retries}"
            )

        self.seed_memory_store = _get_bool_env("SEED_MEMORY_STORE", True)


# ============================================================================
# PAYMENT CONFIGURATION
# ============================================================================

class PaymentConfig:
    """Card simulation, wallet token and promotional discount settings."""

    def __init__(self):
        self.crypto_discount_percent = _get_decimal_env(
            "CRYPTO_DISCOUNT_PERCENT",
            "10"
        )

        if not Decimal("0") <= self.crypto_discount_percent <= Decimal("100"):
            raise ConfigurationError(
                f"CRYPTO_DISCOUNT_PERCENT must be between 0 and 100: "
                f"{self.crypto_discount_percent}"
            )

        self.card_enabled = _get_bool_env("CARD_PAYMENTS_ENABLED", True)
        self.crypto_enabled = _get_bool_env("CRYPTO_PAYMENTS_ENABLED", True)

        # Base mainnet
        self.chain_id = _get_int_env("CHAIN_ID", 8453)
        self.recipient_address = _get_optional_env(
            "PAYMENT_RECIPIENT_ADDRESS",
            "0x7fDECF16574bd21Fd5cce60B701D01A6F83826ab"
        )

        self.tokens = {
            "PRDX": {
                "address": _get_optional_env(
                    "PRDX_TOKEN_ADDRESS",
                    "0x61dd008f1582631aa68645ff92a1a5ecaedbed19"
                ),
                "decimals": 18,
            },
            "USDC": {
                "address": _get_optional_env(
                    "USDC_TOKEN_ADDRESS",
                    "0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913"
                ),
                "decimals": 6,
            },
        }

        self.declined_card_number = _get_optional_env(
            "DECLINED_CARD_NUMBER",
            "4000000000000002"
        )


# ============================================================================
# CATALOG CONFIGURATION
# ============================================================================

class CatalogConfig:

    def __init__(self):
        self.cache_ttl = _get_int_env("CATALOG_CACHE_TTL", 60)

        if self.cache_ttl < 0:
            raise ConfigurationError(
                f"CATALOG_CACHE_TTL must be >= 0: {self.cache_ttl}"
            )


# ============================================================================
# SERVER CONFIGURATION
# ============================================================================

class ServerConfig:
    """Web server configuration."""

    def __init__(self):
        self.host = _get_optional_env("HOST", "0.0.0.0")
        self.port = _get_int_env("PORT", 8000)

        # CORS settings
        self.cors_origins = _get_optional_env("CORS_ORIGINS", "*").split(",")

        # Staff console polling
        self.order_poll_interval = _get_int_env("ORDER_POLL_INTERVAL", 5)

        # Session carts
        self.cart_ttl = _get_int_env("CART_TTL", 3600)
        self.max_carts = _get_int_env("CART_MAX_SESSIONS", 10000)

        if self.cart_ttl <= 0 or self.max_carts <= 0:
            raise ConfigurationError(
                f"CART_TTL and CART_MAX_SESSIONS must be > 0: "
                f"{self.cart_ttl}, {self.max_carts}"
            )

        # Logging
        self.log_level = _get_optional_env("LOG_LEVEL", "INFO").upper()

        if self.log_level not in ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]:
            raise ConfigurationError(
                f"Invalid LOG_LEVEL: {self.log_level}"
            )


# ============================================================================
# MAIN CONFIGURATION CLASS
# ============================================================================

class Config:
    """
    All settings sections, validated on construction.
    """

    def __init__(self):
        """
        Initialize and validate all configuration.

        Raises:
            ConfigurationError: If any configuration is missing or invalid
        """
        try:
            self.storage = StorageConfig()
            self.payments = PaymentConfig()
            self.catalog = CatalogConfig()
            self.server = ServerConfig()

            logger.info("Configuration loaded and validated successfully")

        except ConfigurationError as e:
            logger.error(f"Configuration error: {str(e)}")
            raise
        except Exception as e:
            logger.error(f"Unexpected error loading configuration: {str(e)}")
            raise ConfigurationError(f"Configuration initialization failed: {str(e)}")

    def get_safe_summary(self) -> Dict[str, Any]:
        """
        Settings summary for logs and /health. Keys and tokens are omitted.
        """
        return {
            "storage": {
                "backends": list(self.storage.backends),
                "max_retries": self.storage.max_retries,
                "circuit_breaker_threshold": self.storage.circuit_breaker_threshold,
            },
            "payments": {
                "card": self.payments.card_enabled,
                "crypto": self.payments.crypto_enabled,
                "crypto_discount_percent": str(self.payments.crypto_discount_percent),
                "chain_id": self.payments.chain_id,
                "tokens": sorted(self.payments.tokens.keys()),
            },
            "catalog": {
                "cache_ttl": self.catalog.cache_ttl,
            },
            "server": {
                "host": self.server.host,
                "port": self.server.port,
                "log_level": self.server.log_level,
                "order_poll_interval": self.server.order_poll_interval,
                "cart_ttl": self.server.cart_ttl,
                "max_carts": self.server.max_carts,
            },
        }

    def validate_runtime_dependencies(self) -> List[str]:
        """
        Validate runtime settings that are legal but suspicious.

        Returns:
            List of warnings (empty if all OK)
        """
        warnings = []

        if self.storage.backends[-1] != "memory":
            warnings.append(
                "No in-memory fallback configured; catalog reads will be empty "
                "when every remote backend is down"
            )

        if not (self.payments.card_enabled or self.payments.crypto_enabled):
            warnings.append("All payment methods are disabled; checkout will fail")

        return warnings


# ============================================================================
# SINGLETON INSTANCE
# ============================================================================

_config: Optional[Config] = None


def get_config() -> Config:
    """
    Get global configuration instance.
    Initializes on first call.

    Raises:
        ConfigurationError: If configuration is invalid
    """
    global _config

    if _config is None:
        _config = Config()

    return _config


def reload_config() -> Config:
    """
    Reload configuration from environment.
    Tests call this after changing the environment.
    """
    global _config
    load_environment()
    _config = Config()
    logger.info("Configuration reloaded")
    return _config


# ============================================================================
# VALIDATION FUNCTION
# ============================================================================

def validate_configuration():
    """
    Validate configuration and log summary.
    Called once by the server entrypoint.

    Raises:
        ConfigurationError: If configuration is invalid
    """
    config = get_config()
    summary = config.get_safe_summary()

    logger.info("Configuration Summary:")
    logger.info(f"  Storage backends: {', '.join(summary['storage']['backends'])}")
    logger.info(f"  Crypto discount: {summary['payments']['crypto_discount_percent']}%")
    logger.info(f"  Chain ID: {summary['payments']['chain_id']}")
    logger.info(f"  Server: {summary['server']['host']}:{summary['server']['port']}")
    logger.info(f"  Log Level: {summary['server']['log_level']}")

    warnings = config.validate_runtime_dependencies()
    if warnings:
        logger.warning("Configuration warnings:")
        for warning in warnings:
            logger.warning(f"  - {warning}")

    logger.info("Configuration validation complete")
