"""
Money parsing utilities for US funding amounts.

Handles various formats:
- "$4 million" → 4000000
- "up to $7M" → 7000000
- "$600,000" → 600000
- "$1.5K" → 1500
- "$50,000 - $200,000" → (50000, 200000)
"""

import re
from typing import List, Optional, Tuple


# Magnitude multipliers
_MAGNITUDE_MAP = {
    # Short forms
    "k": 1_000,
    "m": 1_000_000,
    "mm": 1_000_000,
    "b": 1_000_000_000,
    "bn": 1_000_000_000,
    # Long forms
    "thousand": 1_000,
    "million": 1_000_000,
    "billion": 1_000_000_000,
}

_AMOUNT_PATTERN = re.compile(
    r"\$\s*([\d,]+(?:\.\d+)?)\s*(thousand|million|billion|bn|mm|[kmb])?\b",
    re.IGNORECASE,
)


def _to_amount(number_str: str, magnitude_str: Optional[str]) -> Optional[int]:
    try:
        base_amount = float(number_str.replace(",", ""))
    except ValueError:
        return None

    multiplier = _MAGNITUDE_MAP.get((magnitude_str or "").lower(), 1)
    return int(round(base_amount * multiplier))


def parse_usd_amounts(text: str) -> List[int]:
    """
    Extract every dollar amount mentioned in text, in order of appearance.

    Examples:
        >>> parse_usd_amounts("Awards from $50,000 to $1.5 million")
        [50000, 1500000]
    """
    if not text:
        return []

    amounts = []
    for match in _AMOUNT_PATTERN.finditer(text):
        amount = _to_amount(match.group(1), match.group(2))
        if amount is not None:
            amounts.append(amount)
    return amounts


def parse_usd_range(text: str) -> Tuple[Optional[int], Optional[int]]:
    """
    Parse a funding range from text.

    A single amount preceded by "up to" is treated as a maximum; any other
    single amount is used for both ends.

    Examples:
        >>> parse_usd_range("$50,000 - $200,000")
        (50000, 200000)
        >>> parse_usd_range("up to $75K")
        (None, 75000)
    """
    amounts = parse_usd_amounts(text)
    if not amounts:
        return None, None

    if len(amounts) == 1:
        if re.search(r"up\s+to|maximum|max\.?|no more than", text, re.IGNORECASE):
            return None, amounts[0]
        return amounts[0], amounts[0]

    return min(amounts), max(amounts)


def coerce_amount(value) -> Optional[float]:
    """
    Coerce an LLM- or database-supplied amount into a float.

    Accepts numbers, numeric strings, and strings with a dollar amount.
    Returns None for anything that does not carry a positive amount.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value) if value > 0 else None

    text = str(value).strip()
    if not text:
        return None

    try:
        number = float(text.replace(",", ""))
        return number if number > 0 else None
    except ValueError:
        pass

    amounts = parse_usd_amounts(text if "$" in text else f"${text}")
    return float(amounts[0]) if amounts else None


def format_usd_amount(amount: Optional[float]) -> str:
    """
    Format numeric USD amount for display.

    Examples:
        4_000_000 → "$4.0M"
        750_000 → "$750K"
        999 → "$999"
    """
    if amount is None:
        return "Not specified"

    if amount >= 1_000_000:
        return f"${amount / 1_000_000:.1f}M"
    elif amount >= 1_000:
        return f"${amount / 1_000:.0f}K"
    else:
        return f"${amount:,.0f}"
