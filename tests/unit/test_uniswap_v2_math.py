"""
Unit tests for Uniswap V2 Math implementation.

Tests the exact integer constant product formula, including the truncation
the pair contracts apply.
"""
import pytest

from sandwich_engine.protocols.dex_protocols.uniswap_v2_math import (
    UniswapV2Math,
    get_amount_in,
    get_amount_out,
)


class TestGetAmountOut:
    """Test exact-input pricing."""

    def test_basic_swap_calculation(self):
        """1000 in against a 1M/1M pool: (1000 * 997 * 1e6) / (1e9 + 997000) floored."""
        assert get_amount_out(1000, 10**6, 10**6) == 996

    def test_matches_manual_formula(self):
        amount_in, reserve_in, reserve_out = 5_000, 2_000_000, 1_000_000
        expected = (amount_in * 997 * reserve_out) // (reserve_in * 1000 + amount_in * 997)
        assert get_amount_out(amount_in, reserve_in, reserve_out) == expected

    def test_zero_input_or_empty_pool(self):
        assert get_amount_out(0, 10**6, 10**6) == 0
        assert get_amount_out(1000, 0, 10**6) == 0
        assert get_amount_out(1000, 10**6, 0) == 0

    def test_non_decreasing_in_input(self):
        """Output never falls as input grows."""
        previous = 0
        for amount_in in range(0, 20_000, 137):
            amount_out = get_amount_out(amount_in, 10**6, 10**6)
            assert amount_out >= previous
            previous = amount_out

    def test_strictly_increasing_when_output_reserve_dominates(self):
        previous = -1
        for amount_in in range(1, 2_000):
            amount_out = get_amount_out(amount_in, 10**6, 10**12)
            assert amount_out > previous
            previous = amount_out

    def test_custom_fee(self):
        """A fee-free pool prices strictly better than a 0.3% pool."""
        assert get_amount_out(10_000, 10**6, 10**6, 1000, 1000) > get_amount_out(10_000, 10**6, 10**6)


class TestGetAmountIn:
    """Test exact-output pricing."""

    def test_inverse_of_amount_out(self):
        assert get_amount_in(996, 10**6, 10**6) == 1000

    def test_required_input_buys_at_least_the_output(self):
        for amount_out in (1, 10, 996, 12_345, 400_000):
            amount_in = get_amount_in(amount_out, 10**6, 10**6)
            assert get_amount_out(amount_in, 10**6, 10**6) >= amount_out

    def test_zero_output(self):
        assert get_amount_in(0, 10**6, 10**6) == 0

    def test_insufficient_liquidity(self):
        with pytest.raises(ValueError):
            get_amount_in(10**6, 10**6, 10**6)
        with pytest.raises(ValueError):
            get_amount_in(10, 0, 10**6)


class TestUniswapV2Math:
    """Test the venue-bound math helper."""

    @pytest.fixture
    def v2_math(self):
        return UniswapV2Math()

    def test_invalid_fee(self):
        with pytest.raises(ValueError):
            UniswapV2Math(fee_numerator=0)
        with pytest.raises(ValueError):
            UniswapV2Math(fee_numerator=1001, fee_denominator=1000)

    def test_swap_updates_reserves(self, v2_math):
        amount_out, new_in, new_out = v2_math.swap(1000, 10**6, 10**6)
        assert amount_out == 996
        assert new_in == 10**6 + 1000
        assert new_out == 10**6 - 996

    def test_swap_never_decreases_k(self, v2_math):
        for amount_in in (1, 999, 50_000, 10**6):
            _, new_in, new_out = v2_math.swap(amount_in, 10**6, 3 * 10**6)
            assert new_in * new_out >= 10**6 * 3 * 10**6

    def test_price_impact_grows_with_size(self, v2_math):
        small = v2_math.calculate_price_impact_bps(1_000, 10**9, 10**9)
        large = v2_math.calculate_price_impact_bps(10**8, 10**9, 10**9)
        assert 0 <= small < 5
        assert large > small
        assert v2_math.calculate_price_impact_bps(0, 10**9, 10**9) == 0

    def test_closed_form_seed(self, v2_math):
        """X0 = isqrt(rIn * rOut * V) - rIn."""
        assert v2_math.closed_form_sandwich_seed(10**6, 10**6, 10_000) == 10**8 - 10**6

    def test_closed_form_seed_degenerate_inputs(self, v2_math):
        assert v2_math.closed_form_sandwich_seed(10**6, 10**6, 0) == 0
        assert v2_math.closed_form_sandwich_seed(0, 10**6, 100) == 0
        # sqrt below reserveIn floors at zero
        assert v2_math.closed_form_sandwich_seed(10**12, 1, 1) == 0
