# rankcycle/config.py
"""
Configuration management for Rankcycle.
Loads from .env, validates critical keys.
"""
import os
import logging
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List

from dotenv import load_dotenv

logger = logging.getLogger(__name__)


class ConfigurationError(Exception):
    """Configuration error exception."""
    pass


def _parse_bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


def _parse_percentages(value: str) -> List[Decimal]:
    return [Decimal(part.strip()) for part in value.split(",") if part.strip()]


class Config:
    """
    Configuration manager with static and dynamic values.

    Usage:
        # Load from .env
        Config.initialize_from_env()

        # Get value
        cycle_size = Config.get(Config.CYCLE_SIZE)

        # Set dynamic value
        Config.set(Config.REID_ENABLED, True)
    """

    # ═══════════════════════════════════════════════════════════════════════
    # CONFIGURATION KEYS
    # ═══════════════════════════════════════════════════════════════════════

    # Database
    DATABASE_URL = "DATABASE_URL"

    # Income percentages
    REFERRAL_PERCENTAGE = "REFERRAL_PERCENTAGE"
    LEVEL_PERCENTAGES = "LEVEL_PERCENTAGES"
    MAX_UPLINE_LEVELS = "MAX_UPLINE_LEVELS"

    # Global cycle
    GLOBAL_PERCENTAGE = "GLOBAL_PERCENTAGE"
    GLOBAL_LEVELS = "GLOBAL_LEVELS"
    CYCLE_SIZE = "CYCLE_SIZE"
    AUTO_TOPUP_ENABLED = "AUTO_TOPUP_ENABLED"
    REID_ENABLED = "REID_ENABLED"
    CYCLE_SWEEP_INTERVAL = "CYCLE_SWEEP_INTERVAL"

    # Ranks
    RANK_CONFIG = "RANK_CONFIG"
    RANK_CONFIG_PATH = "RANK_CONFIG_PATH"

    # Display
    CURRENCY = "CURRENCY"

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
        Load configuration from .env file and process environment.

        Raises:
            ConfigurationError: If a value cannot be parsed
        """
        load_dotenv()

        logger.info("Loading configuration from environment...")

        try:
            import json

            # Database
            cls._config[cls.DATABASE_URL] = os.getenv(
                "DATABASE_URL",
                "sqlite:///rankcycle.db"
            )

            # Income percentages
            cls._config[cls.REFERRAL_PERCENTAGE] = Decimal(
                os.getenv("REFERRAL_PERCENTAGE", "50")
            )
            cls._config[cls.LEVEL_PERCENTAGES] = _parse_percentages(
                os.getenv("LEVEL_PERCENTAGES", "5,4,3,1,1,1")
            )
            cls._config[cls.MAX_UPLINE_LEVELS] = int(os.getenv("MAX_UPLINE_LEVELS", "6"))

            # Global cycle
            cls._config[cls.GLOBAL_PERCENTAGE] = Decimal(os.getenv("GLOBAL_PERCENTAGE", "10"))
            cls._config[cls.GLOBAL_LEVELS] = int(os.getenv("GLOBAL_LEVELS", "10"))
            cls._config[cls.CYCLE_SIZE] = int(os.getenv("CYCLE_SIZE", "1024"))
            cls._config[cls.AUTO_TOPUP_ENABLED] = _parse_bool(os.getenv("AUTO_TOPUP_ENABLED", "true"))
            cls._config[cls.REID_ENABLED] = _parse_bool(os.getenv("REID_ENABLED", "false"))
            cls._config[cls.CYCLE_SWEEP_INTERVAL] = int(os.getenv("CYCLE_SWEEP_INTERVAL", "300"))

            # Ranks (JSON file, optional)
            cls._config[cls.RANK_CONFIG_PATH] = os.getenv("RANK_CONFIG_PATH")
            cls._config[cls.RANK_CONFIG] = None

            rank_path = cls._config[cls.RANK_CONFIG_PATH]
            if rank_path:
                with open(rank_path, "r", encoding="utf-8") as f:
                    cls._config[cls.RANK_CONFIG] = json.load(f)
                logger.info(f"Rank table loaded from {rank_path}")

            # Display
            cls._config[cls.CURRENCY] = os.getenv("CURRENCY", "USD")

            if cls._config[cls.CYCLE_SIZE] < 1:
                raise ValueError("CYCLE_SIZE must be positive")

            cls._initialized = True
            logger.info("Configuration loaded from environment successfully")

        except (ValueError, InvalidOperation, OSError) as e:
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
        """Get copy of all configuration values."""
        return cls._config.copy()

    @classmethod
    def is_initialized(cls) -> bool:
        return cls._initialized
