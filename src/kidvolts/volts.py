"""Utilities for working with volt (point) amounts in KidVolts."""

from __future__ import annotations

import math
from fractions import Fraction
from typing import Union

# Largest value a signed 64-bit SQL INTEGER column can hold.
POINTS_CEILING = 2**63 - 1

RateLike = Union[Fraction, float, int, str]


def require_positive(amount: int, *, allow_zero: bool = False) -> int:
    """Ensure ``amount`` is a positive integer (or non-negative when ``allow_zero`` is true)."""

    if isinstance(amount, bool) or not isinstance(amount, int):
        raise TypeError(f"Volt amounts must be integers, got {type(amount)!r}")
    if allow_zero:
        if amount < 0:
            raise ValueError("Amount must be zero or greater.")
    else:
        if amount <= 0:
            raise ValueError("Amount must be greater than zero.")
    return amount


def saturating_add(balance: int, amount: int) -> int:
    """Return ``balance + amount`` clamped to :data:`POINTS_CEILING`."""

    return min(balance + amount, POINTS_CEILING)


def to_rate(value: RateLike) -> Fraction:
    """Convert ``value`` to an exact :class:`~fractions.Fraction` between 0 and 1."""

    rate = Fraction(str(value)) if isinstance(value, float) else Fraction(value)
    if rate < 0 or rate > 1:
        raise ValueError("Decay rate must be between 0 and 1.")
    return rate


def decayed(points: int, rate: RateLike = Fraction(1, 2)) -> int:
    """Return ``floor(points * rate)`` computed without float rounding."""

    return math.floor(points * to_rate(rate))


def format_volts(amount: int) -> str:
    """Return ``amount`` as a display string (e.g. ``1,250 volts``)."""

    unit = "volt" if amount == 1 else "volts"
    return f"{amount:,} {unit}"


__all__ = ["POINTS_CEILING", "RateLike", "require_positive", "saturating_add", "to_rate", "decayed", "format_volts"]
