"""
Sandwich profit calculator and optimal sizer.

Everything here is pure integer arithmetic against a reserve snapshot, with
the same truncation the pair contract applies, so an expected profit computed
here is exactly what the executor realizes when the bundle lands unchanged.

The profit of a front leg of size X is

    f(X) = backrun_out(X) - X

where the back leg sells the front leg's output after the victim swap has
moved the price. The sizer searches ``[0, hi]`` where ``hi`` is the smaller of
the pool impact cap and the largest X that still lets the victim's slippage
check pass.
"""
import logging
from dataclasses import dataclass
from typing import Optional

from ..errors import UnprofitableError, UnsupportedRouteError
from ..models import DecodedSwap, PoolState
from ..protocols.contracts import CONSTANT_PRODUCT_VENUES
from ..protocols.dex_protocols.uniswap_v2_math import UniswapV2Math, get_amount_in

logger = logging.getLogger(__name__)

DEFAULT_SCAN_WINDOW = 512


class VictimWouldRevertError(UnprofitableError):
    """The victim swap fails its own slippage check even without a front leg."""


@dataclass(frozen=True)
class SandwichLegs:
    """Outputs of the three swaps for one front-leg size."""
    frontrun_input: int
    frontrun_output: int
    victim_input: int
    victim_output: int
    backrun_output: int
    victim_ok: bool

    @property
    def gross_profit(self) -> int:
        return self.backrun_output - self.frontrun_input


@dataclass(frozen=True)
class SizingResult:
    """Outcome of sizing one sandwich."""
    optimal_amount: int         # refined optimum X*
    amount: int                 # X* after the safety margin, the size actually traded
    search_upper_bound: int     # hi of the feasible domain
    seed: int
    frontrun_output: int
    victim_output: int
    backrun_output: int
    gross_profit: int
    gas_cost: int
    net_profit: int
    evaluations: int


class SandwichSizer:
    """
    Finds the profit-maximizing front-leg size for a constant-product pool.

    Steps: bound the feasible domain, seed with the fee-free closed form,
    narrow with integer ternary search, scan the final window, then
    hill-climb so the returned X* is an exact local maximum.
    """

    def __init__(
        self,
        fee_numerator: int = 997,
        fee_denominator: int = 1000,
        pool_impact_cap_bps: int = 500,
        safety_margin_bps: int = 9_000,
        max_position: Optional[int] = None,
        scan_window: int = DEFAULT_SCAN_WINDOW,
    ):
        """
        Initialize the sizer.

        Args:
            fee_numerator: Venue fee numerator (997 for 0.3%)
            fee_denominator: Venue fee denominator
            pool_impact_cap_bps: Front leg never exceeds this share of reserveIn
            safety_margin_bps: Fraction of X* actually traded
            max_position: Absolute cap on the front leg (None for no cap)
            scan_window: Bracket width at which ternary search switches to a scan
        """
        if not 0 < safety_margin_bps <= 10_000:
            raise ValueError("safety_margin_bps must be in (0, 10000]")
        if scan_window < 3:
            raise ValueError("scan_window must be at least 3")

        self.math = UniswapV2Math(fee_numerator, fee_denominator)
        self.pool_impact_cap_bps = pool_impact_cap_bps
        self.safety_margin_bps = safety_margin_bps
        self.max_position = max_position
        self.scan_window = scan_window

    def simulate(
        self,
        amount: int,
        reserve_in: int,
        reserve_out: int,
        victim_amount_in: int,
        victim_min_out: int,
        exact_output: bool = False,
    ) -> SandwichLegs:
        """
        Run front leg, victim swap and back leg against virtual reserves.

        For exact-output victims ``victim_amount_in`` is amountInMax and
        ``victim_min_out`` the exact amountOut; the victim pays what the
        shifted pool asks for.
        """
        front_out, r_in, r_out = self.math.swap(amount, reserve_in, reserve_out)

        if exact_output:
            try:
                victim_in = get_amount_in(victim_min_out, r_in, r_out,
                                          self.math.fee_numerator, self.math.fee_denominator)
            except ValueError:
                return SandwichLegs(amount, front_out, 0, 0, 0, victim_ok=False)
            victim_ok = victim_in <= victim_amount_in
        else:
            victim_in = victim_amount_in

        victim_out, r_in, r_out = self.math.swap(victim_in, r_in, r_out)
        if not exact_output:
            victim_ok = victim_out >= victim_min_out

        # Back leg sells the front leg's output: reserves swap roles
        back_out = self.math.calculate_amount_out(front_out, r_out, r_in)
        return SandwichLegs(amount, front_out, victim_in, victim_out, back_out, victim_ok)

    def profit(self, amount: int, reserve_in: int, reserve_out: int,
               victim_amount_in: int, victim_min_out: int, exact_output: bool = False) -> int:
        """Gross profit f(amount) in token_in units."""
        return self.simulate(amount, reserve_in, reserve_out, victim_amount_in,
                             victim_min_out, exact_output).gross_profit

    def upper_bound(self, reserve_in: int, reserve_out: int, victim_amount_in: int,
                    victim_min_out: int, exact_output: bool = False) -> int:
        """
        Largest feasible front-leg size.

        Raises:
            VictimWouldRevertError: If the victim fails even with no front leg.
        """
        def feasible(x: int) -> bool:
            return self.simulate(x, reserve_in, reserve_out, victim_amount_in,
                                 victim_min_out, exact_output).victim_ok

        if not feasible(0):
            raise VictimWouldRevertError("Victim swap would revert at current reserves")

        cap = reserve_in * self.pool_impact_cap_bps // 10_000
        if self.max_position is not None:
            cap = min(cap, self.max_position)
        if cap <= 0 or feasible(cap):
            return max(0, cap)

        # Victim output is non-increasing in x: binary search the boundary
        lo, hi = 0, cap
        while hi - lo > 1:
            mid = (lo + hi) // 2
            if feasible(mid):
                lo = mid
            else:
                hi = mid
        return lo

    def size(
        self,
        reserve_in: int,
        reserve_out: int,
        victim_amount_in: int,
        victim_min_out: int,
        gas_cost: int = 0,
        min_profit: int = 0,
        exact_output: bool = False,
    ) -> SizingResult:
        """
        Compute the optimal front-leg size and its profit.

        Args:
            reserve_in: Pool reserve of the token the victim sells
            reserve_out: Pool reserve of the token the victim buys
            victim_amount_in: Victim input (amountInMax for exact-output)
            victim_min_out: Victim minimum output (exact amountOut for exact-output)
            gas_cost: Gas cost of both legs in token_in units
            min_profit: Required profit on top of gas

        Returns:
            SizingResult

        Raises:
            VictimWouldRevertError: Victim fails its slippage check without us.
            UnprofitableError: No size clears gas_cost + min_profit.
        """
        if reserve_in <= 0 or reserve_out <= 0 or victim_amount_in <= 0:
            raise UnprofitableError("Empty pool or zero-size victim")

        calls = 0

        def f(x: int) -> int:
            nonlocal calls
            calls += 1
            return self.profit(x, reserve_in, reserve_out, victim_amount_in, victim_min_out, exact_output)

        hi = self.upper_bound(reserve_in, reserve_out, victim_amount_in, victim_min_out, exact_output)
        seed = min(max(0, self.math.closed_form_sandwich_seed(reserve_in, reserve_out, victim_amount_in)), hi)

        # Integer ternary search down to the scan window
        lo, upper = 0, hi
        while upper - lo > self.scan_window:
            third = (upper - lo) // 3
            m1, m2 = lo + third, upper - third
            f1, f2 = f(m1), f(m2)
            if f1 < f2:
                lo = m1 + 1
            elif f1 > f2:
                upper = m2 - 1
            else:
                upper = m2

        best, best_profit = lo, f(lo)
        for x in range(lo + 1, upper + 1):
            value = f(x)
            if value > best_profit:
                best, best_profit = x, value

        seed_profit = f(seed)
        if seed_profit > best_profit:
            best, best_profit = seed, seed_profit

        # Hill-climb so that f(best) >= f(best +- 1) inside [0, hi]
        improved = True
        while improved:
            improved = False
            if best + 1 <= hi:
                right = f(best + 1)
                if right > best_profit:
                    best, best_profit, improved = best + 1, right, True
                    continue
            if best - 1 >= 0:
                left = f(best - 1)
                if left > best_profit:
                    best, best_profit, improved = best - 1, left, True

        amount = best * self.safety_margin_bps // 10_000
        legs = self.simulate(amount, reserve_in, reserve_out, victim_amount_in, victim_min_out, exact_output)
        net_profit = legs.gross_profit - gas_cost

        if amount <= 0 or net_profit <= min_profit:
            raise UnprofitableError(
                f"Best size {amount} nets {net_profit} (needs > {min_profit} after gas {gas_cost})"
            )

        return SizingResult(
            optimal_amount=best,
            amount=amount,
            search_upper_bound=hi,
            seed=seed,
            frontrun_output=legs.frontrun_output,
            victim_output=legs.victim_output,
            backrun_output=legs.backrun_output,
            gross_profit=legs.gross_profit,
            gas_cost=gas_cost,
            net_profit=net_profit,
            evaluations=calls,
        )

    def evaluate(self, *args, **kwargs) -> Optional[SizingResult]:
        """Same as ``size`` but returns None instead of raising UnprofitableError."""
        try:
            return self.size(*args, **kwargs)
        except UnprofitableError:
            return None

    def size_swap(self, state: PoolState, swap: DecodedSwap, gas_cost: int = 0,
                  min_profit: int = 0) -> SizingResult:
        """
        Size a sandwich around a decoded swap on the given pool.

        Raises:
            UnsupportedRouteError: Multi-hop path or non constant-product venue.
        """
        if not swap.is_single_hop:
            raise UnsupportedRouteError(f"Multi-hop path of {len(swap.path)} tokens")
        if swap.venue not in CONSTANT_PRODUCT_VENUES:
            raise UnsupportedRouteError(f"Venue {swap.venue} is not constant-product")

        reserve_in, reserve_out = state.oriented(swap.token_in)
        return self.size(
            reserve_in,
            reserve_out,
            swap.amount_in,
            swap.min_amount_out,
            gas_cost=gas_cost,
            min_profit=min_profit,
            exact_output=swap.exact_output,
        )


# Convenience functions

def create_sizer_from_config(config) -> SandwichSizer:
    """Build a sizer from an EngineConfig."""
    return SandwichSizer(
        pool_impact_cap_bps=config.pool_impact_cap_bps,
        safety_margin_bps=config.safety_margin_bps,
        max_position=config.max_position_wei,
    )
