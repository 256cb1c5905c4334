"""Tests for micros and percentage conversions"""

import pytest

from bayesian_bid_engine.utils import (
    clamp,
    currency_to_micros,
    decimal_to_percentage,
    micros_to_currency,
    percentage_to_decimal,
)


def test_micros_and_currency():
    assert micros_to_currency(1_500_000) == 1.5
    assert micros_to_currency(None) == 0.0
    assert currency_to_micros(1.5) == 1_500_000
    assert currency_to_micros(0.1234567) == 123_457


def test_percentages():
    assert decimal_to_percentage(-0.25) == -25.0
    assert percentage_to_decimal(66.67) == pytest.approx(0.6667)
    assert percentage_to_decimal(None) == 0.0


def test_clamp():
    assert clamp(5, 0, 3) == 3
    assert clamp(-1, 0, 3) == 0
    assert clamp(2, 0, 3) == 2
