from .units import (
    MICROS_PER_UNIT,
    micros_to_currency,
    currency_to_micros,
    decimal_to_percentage,
    percentage_to_decimal,
    clamp,
)

__all__ = [
    "MICROS_PER_UNIT",
    "micros_to_currency",
    "currency_to_micros",
    "decimal_to_percentage",
    "percentage_to_decimal",
    "clamp",
]
