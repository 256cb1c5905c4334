"""Utility functions for consistent micros/currency and percent/decimal conversions."""

from __future__ import annotations

MICROS_PER_UNIT = 1_000_000


def micros_to_currency(value: int) -> float:
    """
    Convert integer micros (1_500_000) to currency units (1.5).
    """
    return int(value or 0) / MICROS_PER_UNIT


def currency_to_micros(value: float) -> int:
    """
    Convert currency units (1.5) to integer micros (1_500_000).
    """
    return int(round(float(value or 0) * MICROS_PER_UNIT))


def decimal_to_percentage(value: float) -> float:
    """
    Convert decimal fraction (0.05) to whole percentage (5.0).
    """
    return float(value or 0) * 100.0


def percentage_to_decimal(value: float) -> float:
    """
    Convert whole percentage (5.0) to decimal fraction (0.05).
    """
    return float(value or 0) / 100.0


def clamp(value: float, lower: float, upper: float) -> float:
    return max(lower, min(upper, value))
