"""
Centralized parsing helpers for addresses, sizes and sector ranges.

Front ends must import these helpers rather than re-implement them.
"""

from typing import Optional


def parse_offset(value: Optional[str]) -> Optional[int]:
    """
    Parse offset value from string, supporting multiple formats.

    This is the single source of truth for address parsing.

    Accepts:
        - Decimal: "4096"
        - Hex with 0x prefix: "0x1000" or "0X1000"
        - Hex with h suffix: "1000h" or "1000H"
        - None or empty for "not given"

    Returns:
        Parsed integer offset, or None if value is None or empty.

    Raises:
        ValueError: If value cannot be parsed or is negative.
    """
    if value is None:
        return None

    value = value.strip()
    if not value:
        return None

    try:
        # Hex with 0x/0X prefix
        if value.lower().startswith("0x"):
            result = int(value, 16)
        # Hex with h/H suffix
        elif value.lower().endswith("h"):
            result = int(value[:-1], 16)
        # Decimal
        else:
            result = int(value)
    except ValueError:
        raise ValueError(
            f"Invalid offset '{value}'. Use decimal (4096), hex (0x1000), or suffix (1000h)."
        )
    if result < 0:
        raise ValueError(f"Offset must not be negative: '{value}'")
    return result


_SIZE_SUFFIXES = {"k": 1024, "m": 1024 * 1024}


def parse_size(value: str) -> int:
    """
    Parse a byte count.

    Accepts everything parse_offset does plus K/M suffixes ("64K", "2M").

    Raises:
        ValueError: If value cannot be parsed
    """
    text = value.strip()
    multiplier = 1
    if text and text[-1].lower() in _SIZE_SUFFIXES and not text.lower().startswith("0x"):
        multiplier = _SIZE_SUFFIXES[text[-1].lower()]
        text = text[:-1]
    try:
        size = parse_offset(text)
    except ValueError:
        raise ValueError(f"Invalid size '{value}'. Use 4096, 0x1000, 64K or 2M.")
    if size is None:
        raise ValueError("Size must not be empty")
    return size * multiplier


def parse_sector_range(value: str) -> range:
    """
    Parse a sector selection.

    Accepts:
        - Single sector: "3"
        - Inclusive range: "0-4" or "0x00-0x04"
        - Start and count: "4+2" (sectors 4 and 5)

    Returns:
        range of sector indices

    Raises:
        ValueError: If value cannot be parsed or the range is empty
    """
    text = value.strip()
    try:
        if "+" in text:
            start_s, count_s = text.split("+", 1)
            start = parse_offset(start_s)
            count = parse_offset(count_s)
            result = range(start, start + count)
        elif "-" in text:
            start_s, end_s = text.split("-", 1)
            result = range(parse_offset(start_s), parse_offset(end_s) + 1)
        else:
            start = parse_offset(text)
            result = range(start, start + 1)
    except (TypeError, ValueError):
        raise ValueError(
            f"Invalid sector range '{value}'. Use 3, 0-4 or 4+2."
        )
    if len(result) == 0:
        raise ValueError(f"Sector range '{value}' is empty")
    return result
