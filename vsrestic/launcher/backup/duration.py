"""Human-friendly duration parsing for BACKUP_INTERVAL and friends."""

from __future__ import annotations

_UNIT_SECONDS = {
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
    "d": 86400.0,
    "w": 604800.0,
}


def parse_duration(value: str) -> float:
    """Parse a duration into seconds.

    A bare number is seconds. Supported suffixes: s, m, h, d, w.
    Decimals are allowed ("1.5h").

    Examples:
        >>> parse_duration("60")
        60.0
        >>> parse_duration("5m")
        300.0
        >>> parse_duration("1w")
        604800.0

    Raises:
        ValueError: Empty string, missing or non-numeric value, or a
            negative duration
    """
    s = value.strip()
    if not s:
        raise ValueError("empty duration string")

    multiplier = _UNIT_SECONDS.get(s[-1])
    if multiplier is None:
        multiplier = 1.0
        num_str = s
    else:
        num_str = s[:-1]

    num_str = num_str.strip()
    if not num_str:
        raise ValueError("invalid duration: missing numeric value")

    try:
        num = float(num_str)
    except ValueError:
        raise ValueError(f"invalid duration number {num_str!r}")

    if num != num or num in (float("inf"), float("-inf")):
        raise ValueError(f"invalid duration number {num_str!r}")
    if num < 0:
        raise ValueError("duration cannot be negative")

    return num * multiplier
