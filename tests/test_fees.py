"""Tests for the platform fee split."""

import pytest

from lightning_gateway.fees import (
    DEFAULT_PLATFORM_FEE_PERCENT,
    FeeBreakdown,
    calculate_fees,
    get_platform_fee_percent,
)


class TestCalculateFees:
    def test_default_two_percent(self):
        fees = calculate_fees(10)
        assert fees == FeeBreakdown(total_cost=10, dev_earnings=9, platform_fee=1)

    def test_platform_fee_rounds_up(self):
        assert calculate_fees(1).platform_fee == 1
        assert calculate_fees(50).platform_fee == 1
        assert calculate_fees(51).platform_fee == 2
        assert calculate_fees(100).platform_fee == 2

    def test_zero_cost(self):
        fees = calculate_fees(0)
        assert fees.platform_fee == 0
        assert fees.dev_earnings == 0

    def test_one_sat_goes_to_platform(self):
        fees = calculate_fees(1, 2)
        assert fees.dev_earnings == 0
        assert fees.platform_fee == 1

    def test_zero_percent(self):
        fees = calculate_fees(1000, 0)
        assert fees.platform_fee == 0
        assert fees.dev_earnings == 1000

    def test_hundred_percent(self):
        fees = calculate_fees(7, 100)
        assert fees.platform_fee == 7
        assert fees.dev_earnings == 0

    def test_fractional_percent_is_exact(self):
        # 2.5% of 200 is exactly 5; float arithmetic would not round it to 6
        assert calculate_fees(200, 2.5).platform_fee == 5
        assert calculate_fees(200, "2.5").platform_fee == 5
        assert calculate_fees(201, 2.5).platform_fee == 6

    @pytest.mark.parametrize("cost", [0, 1, 2, 3, 9, 10, 49, 50, 51, 99, 1000, 123457])
    @pytest.mark.parametrize("pct", [0, 1, 2, 2.5, 10, 33.3, 100])
    def test_shares_add_up(self, cost, pct):
        fees = calculate_fees(cost, pct)
        assert fees.dev_earnings + fees.platform_fee == cost
        assert fees.dev_earnings >= 0
        assert fees.platform_fee >= 0


class TestGetPlatformFeePercent:
    def test_parses_numbers(self):
        assert get_platform_fee_percent("5") == 5
        assert get_platform_fee_percent("2.5") == 2.5
        assert get_platform_fee_percent(10) == 10

    @pytest.mark.parametrize("value", [None, "", "abc", "nan", "-1", "101", object()])
    def test_falls_back_to_default(self, value):
        assert get_platform_fee_percent(value) == DEFAULT_PLATFORM_FEE_PERCENT

    def test_bounds_are_inclusive(self):
        assert get_platform_fee_percent("0") == 0
        assert get_platform_fee_percent("100") == 100
