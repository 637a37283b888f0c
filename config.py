# matrix-engine/config.py
"""
Configuration management for the Matrix engine.
Loads from .env / environment, validates critical keys.
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
        max_depth = Config.get(Config.MAX_TREE_DEPTH)

        # Set dynamic value
        Config.set(Config.SYSTEM_READY, True)
    """

    # ═══════════════════════════════════════════════════════════════════════
    # CONFIGURATION KEYS
    # ═══════════════════════════════════════════════════════════════════════

    # Database
    DATABASE_URL = "DATABASE_URL"

    # Tree
    MAX_TREE_DEPTH = "MAX_TREE_DEPTH"

    # Periods & scheduling
    PERIOD_LENGTH_DAYS = "PERIOD_LENGTH_DAYS"
    SCHEDULER_TICK_SECONDS = "SCHEDULER_TICK_SECONDS"

    # Ranks
    RANK_CONFIG = "RANK_CONFIG"
    DEMOTION_GRACE_PERIODS = "DEMOTION_GRACE_PERIODS"

    # Dashboard
    RECENT_EARNINGS_LIMIT = "RECENT_EARNINGS_LIMIT"

    # System
    LOG_LEVEL = "LOG_LEVEL"
    SYSTEM_READY = "SYSTEM_READY"

    # ═══════════════════════════════════════════════════════════════════════
    # CRITICAL KEYS (must be present)
    # ═══════════════════════════════════════════════════════════════════════

    CRITICAL_KEYS = [
        DATABASE_URL,
        MAX_TREE_DEPTH,
        PERIOD_LENGTH_DAYS,
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
        Load configuration from .env file and process environment.

        Raises:
            ConfigurationError: If a value cannot be parsed
        """
        load_dotenv()

        logger.info("Loading configuration from environment...")

        try:
            # Database
            cls._config[cls.DATABASE_URL] = os.getenv(
                "DATABASE_URL",
                "sqlite:///matrix.db"
            )

            # Tree
            cls._config[cls.MAX_TREE_DEPTH] = int(os.getenv("MAX_TREE_DEPTH", "50"))

            # Periods & scheduling
            cls._config[cls.PERIOD_LENGTH_DAYS] = int(os.getenv("PERIOD_LENGTH_DAYS", "7"))
            cls._config[cls.SCHEDULER_TICK_SECONDS] = int(
                os.getenv("SCHEDULER_TICK_SECONDS", "60")
            )

            # Ranks (JSON list, optional - built-in ladder is used when absent)
            rank_config_str = os.getenv("RANK_CONFIG")
            if rank_config_str:
                try:
                    cls._config[cls.RANK_CONFIG] = json.loads(rank_config_str)
                except json.JSONDecodeError as e:
                    raise ConfigurationError(f"Failed to parse RANK_CONFIG JSON: {e}")
            else:
                cls._config[cls.RANK_CONFIG] = None

            cls._config[cls.DEMOTION_GRACE_PERIODS] = int(
                os.getenv("DEMOTION_GRACE_PERIODS", "1")
            )

            # Dashboard
            cls._config[cls.RECENT_EARNINGS_LIMIT] = int(
                os.getenv("RECENT_EARNINGS_LIMIT", "20")
            )

            # System
            cls._config[cls.LOG_LEVEL] = os.getenv("LOG_LEVEL", "INFO").upper()
            cls._config[cls.SYSTEM_READY] = False

            cls._initialized = True
            logger.info("Configuration loaded from environment successfully")

        except ConfigurationError:
            raise
        except Exception as e:
            logger.error(f"Failed to load configuration: {e}")
            raise ConfigurationError(f"Configuration loading failed: {e}")

    @classmethod
    def validate_critical_keys(cls) -> None:
        """
        Validate that all critical configuration keys are present and sane.

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

        if cls.get(cls.DEMOTION_GRACE_PERIODS, 1) < 1:
            raise ConfigurationError("DEMOTION_GRACE_PERIODS must be >= 1")

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
