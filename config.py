# config.py
"""
Configuration management for the commission engine.
Loads from .env, validates critical keys.
"""
import os
import json
import logging
from typing import Any, Dict
from dotenv import load_dotenv

logger = logging.getLogger(__name__)


class ConfigurationError(Exception):
    """Configuration error exception."""
    pass


class Config:
    """
    Configuration manager with static and dynamic values.

    Usage:
        # Load from .env
        Config.initialize_from_env()

        # Get value
        url = Config.get(Config.DATABASE_URL)

        # Set dynamic value
        Config.set(Config.SYSTEM_READY, True)
    """

    # ═══════════════════════════════════════════════════════════════════════
    # CONFIGURATION KEYS
    # ═══════════════════════════════════════════════════════════════════════

    # Database
    DATABASE_URL = "DATABASE_URL"

    # Commission rules
    RULE_TABLES_PATH = "RULE_TABLES_PATH"
    PAYMENT_CALENDAR = "PAYMENT_CALENDAR"

    # Automation runner
    RUNNER_BATCH_SIZE = "RUNNER_BATCH_SIZE"
    RUNNER_MAX_DURATION_SECONDS = "RUNNER_MAX_DURATION_SECONDS"
    RUNNER_MAX_ATTEMPTS = "RUNNER_MAX_ATTEMPTS"
    RUNNER_INTERVAL_SECONDS = "RUNNER_INTERVAL_SECONDS"

    # System
    SYSTEM_READY = "SYSTEM_READY"

    # ═══════════════════════════════════════════════════════════════════════
    # CRITICAL KEYS (must be present)
    # ═══════════════════════════════════════════════════════════════════════

    CRITICAL_KEYS = [
        DATABASE_URL,
    ]

    # ═══════════════════════════════════════════════════════════════════════
    # STORAGE
    # ═══════════════════════════════════════════════════════════════════════

    _config: Dict[str, Any] = {}
    _initialized: bool = False

    # ═══════════════════════════════════════════════════════════════════════
    # METHODS
    # ═══════════════════════════════════════════════════════════════════════

    @classmethod
    def initialize_from_env(cls) -> None:
        """
        Load configuration from .env file and environment.

        Raises:
            ConfigurationError: If a value cannot be parsed
        """
        load_dotenv()

        logger.info("Loading configuration from environment...")

        try:
            # Database
            cls._config[cls.DATABASE_URL] = os.getenv(
                "DATABASE_URL",
                "sqlite:///commissions.db"
            )

            # Commission rules
            cls._config[cls.RULE_TABLES_PATH] = os.getenv("RULE_TABLES_PATH")

            calendar_str = os.getenv("PAYMENT_CALENDAR", "{}")
            try:
                cls._config[cls.PAYMENT_CALENDAR] = json.loads(calendar_str)
            except json.JSONDecodeError as e:
                logger.error(f"Failed to parse PAYMENT_CALENDAR JSON: {e}")
                cls._config[cls.PAYMENT_CALENDAR] = {}

            # Automation runner
            cls._config[cls.RUNNER_BATCH_SIZE] = int(os.getenv("RUNNER_BATCH_SIZE", "100"))
            cls._config[cls.RUNNER_MAX_DURATION_SECONDS] = float(
                os.getenv("RUNNER_MAX_DURATION_SECONDS", "60")
            )
            cls._config[cls.RUNNER_MAX_ATTEMPTS] = int(os.getenv("RUNNER_MAX_ATTEMPTS", "5"))
            cls._config[cls.RUNNER_INTERVAL_SECONDS] = int(
                os.getenv("RUNNER_INTERVAL_SECONDS", "300")
            )

            # System
            cls._config[cls.SYSTEM_READY] = False

            cls._initialized = True
            logger.info("Configuration loaded from environment successfully")

        except Exception as e:
            logger.error(f"Failed to load configuration: {e}")
            raise ConfigurationError(f"Configuration loading failed: {e}")

    @classmethod
    async def validate_critical_keys(cls) -> None:
        """
        Validate that all critical configuration keys are present.

        Raises:
            ConfigurationError: If any critical key is missing
        """
        missing = []
        for key in cls.CRITICAL_KEYS:
            if not cls.get(key):
                missing.append(key)

        if missing:
            error_msg = f"Missing critical configuration keys: {', '.join(missing)}"
            logger.critical(error_msg)
            raise ConfigurationError(error_msg)

        logger.info("All critical configuration keys validated ✓")

    @classmethod
    def get(cls, key: str, default: Any = None) -> Any:
        """
        Get configuration value.

        Args:
            key: Configuration key
            default: Default value if key not found

        Returns:
            Configuration value or default
        """
        return cls._config.get(key, default)

    @classmethod
    def set(cls, key: str, value: Any, source: str = "runtime") -> None:
        """
        Set configuration value (for dynamic updates).

        Args:
            key: Configuration key
            value: New value
            source: Source of the update (for logging)
        """
        cls._config[key] = value
        logger.debug(f"Config updated: {key} = {value} (source: {source})")

    @classmethod
    def get_all(cls) -> Dict[str, Any]:
        """
        Get all configuration values.

        Returns:
            Copy of configuration dictionary
        """
        return cls._config.copy()
