# rankcycle/mlm_system/config/ranks.py
"""
MLM ranks configuration and constants.
Loads from a JSON rank table via Config module, falls back to the built-in table.
"""
from collections import OrderedDict
from decimal import Decimal
from typing import Dict, Any, Optional, List
import logging

from mlm_system.exceptions import UnknownRankError

logger = logging.getLogger(__name__)


# Built-in table, used when RANK_CONFIG_PATH is not configured.
# Keys are rank ids; "index" defines the order.
DEFAULT_RANK_TABLE: Dict[str, Dict[str, Any]] = {
    "azurite": {
        "name": "Azurite", "index": 1, "activationAmount": "5",
        "benefits": {"referralIncome": True, "levelIncome": True, "globalIncome": False, "retopupIncome": True},
    },
    "pearl": {
        "name": "Pearl", "index": 2, "activationAmount": "10",
        "benefits": {"referralIncome": True, "levelIncome": True, "globalIncome": True, "retopupIncome": True},
    },
    "ruby": {
        "name": "Ruby", "index": 3, "activationAmount": "20",
        "benefits": {"referralIncome": True, "levelIncome": True, "globalIncome": True, "retopupIncome": True},
    },
    "emerald": {
        "name": "Emerald", "index": 4, "activationAmount": "40",
        "benefits": {"referralIncome": True, "levelIncome": True, "globalIncome": True, "retopupIncome": True},
    },
    "sapphire": {
        "name": "Sapphire", "index": 5, "activationAmount": "80",
        "benefits": {"referralIncome": True, "levelIncome": True, "globalIncome": True, "retopupIncome": True},
    },
    "diamond": {
        "name": "Diamond", "index": 6, "activationAmount": "160",
        "benefits": {"referralIncome": True, "levelIncome": True, "globalIncome": True, "retopupIncome": True},
    },
    "doubleDiamond": {
        "name": "Double Diamond", "index": 7, "activationAmount": "320",
        "benefits": {"referralIncome": True, "levelIncome": True, "globalIncome": True, "retopupIncome": True},
    },
    "tripleDiamond": {
        "name": "Triple Diamond", "index": 8, "activationAmount": "640",
        "benefits": {"referralIncome": True, "levelIncome": True, "globalIncome": True, "retopupIncome": True},
    },
    "crown": {
        "name": "Crown", "index": 9, "activationAmount": "1280",
        "benefits": {"referralIncome": True, "levelIncome": True, "globalIncome": True, "retopupIncome": True},
    },
    "royalCrown": {
        "name": "Royal Crown", "index": 10, "activationAmount": "2560",
        "benefits": {"referralIncome": True, "levelIncome": True, "globalIncome": True, "retopupIncome": True},
    },
}

BENEFIT_FLAGS = ("referralIncome", "levelIncome", "globalIncome", "retopupIncome")


def build_rank_config(raw_config: Dict[str, Dict[str, Any]]) -> "OrderedDict[str, Dict[str, Any]]":
    """
    Normalize and validate a raw rank table.

    Returns:
        OrderedDict rank id -> config, ordered by index

    Raises:
        ConfigurationError: If the table is empty, indices repeat,
            or activation amounts are not strictly increasing
    """
    from config import ConfigurationError

    if not raw_config:
        raise ConfigurationError("Rank table is empty")

    entries = []
    for rank_key, rank_data in raw_config.items():
        try:
            benefits = rank_data.get("benefits", {})
            entries.append((rank_key, {
                "name": rank_data.get("name", rank_key),
                "index": int(rank_data["index"]),
                "activationAmount": Decimal(str(rank_data["activationAmount"])),
                "benefits": {flag: benefits.get(flag) is True for flag in BENEFIT_FLAGS},
                # Informational only, not enforced by the engine
                "requirements": {
                    "directReferrals": int(rank_data.get("requirements", {}).get("directReferrals", 0)),
                    "teamSize": int(rank_data.get("requirements", {}).get("teamSize", 0)),
                    "totalBusiness": Decimal(str(rank_data.get("requirements", {}).get("totalBusiness", "0"))),
                },
            }))
        except (ValueError, KeyError, ArithmeticError) as e:
            raise ConfigurationError(f"Invalid rank configuration for '{rank_key}': {e}")

    entries.sort(key=lambda item: item[1]["index"])

    previous = None
    for rank_key, rank_data in entries:
        if previous is not None:
            if rank_data["index"] <= previous["index"]:
                raise ConfigurationError(f"Duplicate rank index {rank_data['index']} ('{rank_key}')")
            if rank_data["activationAmount"] <= previous["activationAmount"]:
                raise ConfigurationError(
                    f"Activation amount of '{rank_key}' must be greater than "
                    f"{previous['activationAmount']}"
                )
        previous = rank_data

    return OrderedDict(entries)


def get_rank_config() -> "OrderedDict[str, Dict[str, Any]]":
    """
    Get rank configuration from Config module.

    Returns:
        Ordered dictionary mapping rank id to configuration dict
    """
    from config import Config

    raw_config = Config.get(Config.RANK_CONFIG)

    if not raw_config:
        logger.debug("RANK_CONFIG not configured, using built-in rank table")
        raw_config = DEFAULT_RANK_TABLE

    return build_rank_config(raw_config)


# Lazy-loaded configuration cache
_RANK_CONFIG_CACHE: "OrderedDict[str, Dict[str, Any]]" = OrderedDict()


def get_rank_config_cached() -> "OrderedDict[str, Dict[str, Any]]":
    """
    Get rank configuration with caching.
    Loads from Config on first access, then returns cached version.
    """
    global _RANK_CONFIG_CACHE

    if not _RANK_CONFIG_CACHE:
        _RANK_CONFIG_CACHE = get_rank_config()
        logger.info(f"Loaded RANK_CONFIG: {len(_RANK_CONFIG_CACHE)} ranks")

    return _RANK_CONFIG_CACHE


def reset_rank_config_cache() -> None:
    """Drop cached table, next access reloads from Config."""
    global _RANK_CONFIG_CACHE
    _RANK_CONFIG_CACHE = OrderedDict()


# Public accessor - use this everywhere instead of a module constant
def RANK_CONFIG() -> "OrderedDict[str, Dict[str, Any]]":
    """Get current rank configuration."""
    return get_rank_config_cached()


def get_rank(rank: str) -> Dict[str, Any]:
    """
    Get config of a single rank.

    Raises:
        UnknownRankError: If rank is not in the table
    """
    try:
        return RANK_CONFIG()[rank]
    except KeyError:
        raise UnknownRankError(rank)


def get_rank_order() -> List[str]:
    """Rank ids from lowest to highest."""
    return list(RANK_CONFIG().keys())


def get_next_rank(rank: str) -> Optional[str]:
    """Next rank id, None for the highest rank."""
    order = get_rank_order()
    if rank not in order:
        raise UnknownRankError(rank)

    position = order.index(rank)
    if position == len(order) - 1:
        return None
    return order[position + 1]


def is_highest_rank(rank: str) -> bool:
    return get_next_rank(rank) is None


def has_benefit(rank: str, benefit: str) -> bool:
    """Check benefit flag; unknown ranks have no benefits."""
    rank_config = RANK_CONFIG().get(rank)
    if not rank_config:
        return False
    return rank_config["benefits"].get(benefit) is True


# Constants (these can stay hardcoded as they don't change)
INCOME_TYPES = ("referral", "level", "global", "retopup")
MAX_LEVEL_INCOME_DEPTH = 6
