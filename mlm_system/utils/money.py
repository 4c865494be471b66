# rankcycle/mlm_system/utils/money.py
"""
Monetary helpers for MLM income calculations.

All amounts are Decimal with two fractional digits. Arithmetic goes through
integer cents, rounding is ROUND_HALF_UP (half away from zero).
Float inputs are converted via str(), which drops binary representation noise
(1.005 -> Decimal("1.005") -> 1.01).
"""
import re
from decimal import Decimal, ROUND_HALF_UP, InvalidOperation
from typing import Dict, List, Optional, Sequence, Union
import logging

from config import Config

logger = logging.getLogger(__name__)

Number = Union[Decimal, int, float, str]

CENT = Decimal("0.01")
ZERO = Decimal("0.00")

CURRENCY_SYMBOLS = {
    "USD": "$",
    "EUR": "€",
    "GBP": "£",
    "INR": "₹",
}


def to_decimal(value: Number) -> Decimal:
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def round_to_two_decimals(value: Number) -> Decimal:
    """Round to cents, half away from zero."""
    return to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def to_cents(value: Number) -> int:
    return int((to_decimal(value) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_cents(cents: Union[int, Decimal]) -> Decimal:
    return round_to_two_decimals(Decimal(cents) / 100)


def safe_add(*amounts: Number) -> Decimal:
    """
    Add monetary amounts in cents.

    Example:
        safe_add(0.1, 0.2) -> Decimal("0.30")
    """
    return from_cents(sum(to_cents(amount) for amount in amounts))


def safe_subtract(minuend: Number, subtrahend: Number) -> Decimal:
    return from_cents(to_cents(minuend) - to_cents(subtrahend))


def safe_multiply(amount: Number, multiplier: Number) -> Decimal:
    cents = (Decimal(to_cents(amount)) * to_decimal(multiplier)).quantize(
        Decimal("1"), rounding=ROUND_HALF_UP
    )
    return from_cents(cents)


def safe_divide(dividend: Number, divisor: Number) -> Decimal:
    """
    Divide monetary amount.

    Returns 0.00 when divisor is zero. Callers must not read that as
    "no income due" - any income <= 0 is skipped anyway.
    """
    divisor = to_decimal(divisor)
    if divisor == 0:
        return ZERO

    cents = (Decimal(to_cents(dividend)) / divisor).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    return from_cents(cents)


# ═══════════════════════════════════════════════════════════════════════════
# INCOME FORMULAS
# ═══════════════════════════════════════════════════════════════════════════

def get_referral_percentage() -> Decimal:
    return to_decimal(Config.get(Config.REFERRAL_PERCENTAGE, Decimal("50")))


def get_level_percentages() -> List[Decimal]:
    percentages = Config.get(Config.LEVEL_PERCENTAGES)
    if percentages is None:
        percentages = ["5", "4", "3", "1", "1", "1"]
    return [to_decimal(p) for p in percentages]


def get_level_percentage(level: int, percentages: Optional[Sequence[Number]] = None) -> Decimal:
    """Percentage for upline level (1-based), 0 for unknown levels."""
    from mlm_system.config.ranks import MAX_LEVEL_INCOME_DEPTH

    if percentages is None:
        percentages = get_level_percentages()

    if level < 1 or level > MAX_LEVEL_INCOME_DEPTH or level > len(percentages):
        return Decimal("0")
    return to_decimal(percentages[level - 1])


def calculate_referral_income(activation_amount: Number, percentage: Optional[Number] = None) -> Decimal:
    """
    Referral income for the direct sponsor.

    Example:
        calculate_referral_income(100) -> Decimal("50.00")  # 50%
    """
    if percentage is None:
        percentage = get_referral_percentage()
    return round_to_two_decimals(to_decimal(activation_amount) * to_decimal(percentage) / 100)


def calculate_level_income(
        level: int,
        activation_amount: Number,
        percentages: Optional[Sequence[Number]] = None
) -> Decimal:
    """
    Level income for upline level 1..6.

    Example:
        calculate_level_income(1, 100) -> Decimal("5.00")
        calculate_level_income(7, 100) -> Decimal("0.00")
    """
    percentage = get_level_percentage(level, percentages)
    return round_to_two_decimals(to_decimal(activation_amount) * percentage / 100)


def calculate_global_income(total_amount: Number, level: int, total_levels: int = 10) -> Decimal:
    """
    Equal split of the cycle payout across levels.

    The level only gates the range [1, total_levels]; it does not weight
    the share.
    """
    if level < 1 or level > total_levels:
        return ZERO
    return round_to_two_decimals(to_decimal(total_amount) / total_levels)


def calculate_retopup_income(activation_amount: Number, percentage: Optional[Number] = None) -> Decimal:
    """Same formula and percentage as referral income."""
    return calculate_referral_income(activation_amount, percentage)


# ═══════════════════════════════════════════════════════════════════════════
# BINARY TREE HELPERS
# ═══════════════════════════════════════════════════════════════════════════

def calculate_tree_level(position: int) -> int:
    """Level of 1-based position: floor(log2(position)) + 1, 0 for position <= 0."""
    if position <= 0:
        return 0
    return position.bit_length()


def get_positions_at_level(level: int) -> List[int]:
    """1-based positions on a level: [2^(level-1), 2^level - 1]."""
    if level <= 0:
        return []
    return list(range(2 ** (level - 1), 2 ** level))


# ═══════════════════════════════════════════════════════════════════════════
# RANK HELPERS
# ═══════════════════════════════════════════════════════════════════════════

def get_next_rank_activation_amount(current_rank: str) -> Optional[Decimal]:
    """Activation amount of the next rank, None for unknown or highest rank."""
    from mlm_system.config.ranks import RANK_CONFIG, get_next_rank
    from mlm_system.exceptions import UnknownRankError

    try:
        next_rank = get_next_rank(current_rank)
    except UnknownRankError:
        return None

    if next_rank is None:
        return None
    return RANK_CONFIG()[next_rank]["activationAmount"]


def calculate_global_cycle_requirements(rank: str) -> Dict[str, object]:
    """Cycle size and payout amount for a rank."""
    from mlm_system.config.ranks import RANK_CONFIG

    rank_config = RANK_CONFIG().get(rank)
    activation_amount = rank_config["activationAmount"] if rank_config else Decimal("0")
    cycle_size = int(Config.get(Config.CYCLE_SIZE, 1024))

    return {
        "cycleSize": cycle_size,
        "requiredUsers": cycle_size,
        "payoutAmount": round_to_two_decimals(
            activation_amount * to_decimal(Config.get(Config.GLOBAL_PERCENTAGE, Decimal("10"))) / 100
        ),
    }


# ═══════════════════════════════════════════════════════════════════════════
# FORMATTING
# ═══════════════════════════════════════════════════════════════════════════

def validate_amount_precision(amount: Number) -> bool:
    """True when amount is finite and has at most 2 fractional digits."""
    try:
        value = to_decimal(amount)
    except InvalidOperation:
        return False
    if not value.is_finite():
        return False
    return value == value.quantize(CENT, rounding=ROUND_HALF_UP)


def format_currency(amount: Number, currency: Optional[str] = None) -> str:
    """
    Format amount for display.

    Example:
        format_currency(1234.5) -> "$1,234.50"
    """
    if currency is None:
        currency = Config.get(Config.CURRENCY, "USD")

    value = round_to_two_decimals(amount)
    symbol = CURRENCY_SYMBOLS.get(currency)
    sign = "-" if value < 0 else ""

    if symbol:
        return f"{sign}{symbol}{abs(value):,.2f}"
    return f"{sign}{abs(value):,.2f} {currency}"


def parse_currency(text: str) -> Decimal:
    """Parse "$1,234.50" style strings, 0.00 when nothing numeric is left."""
    numeric = re.sub(r"[^0-9.\-]+", "", text or "")
    try:
        return round_to_two_decimals(Decimal(numeric))
    except InvalidOperation:
        logger.debug(f"Cannot parse currency value '{text}'")
        return ZERO
