"""
LS-LMSR (liquidity-sensitive Logarithmic Market Scoring Rule). Pure math, no state.

All amounts crossing this module's boundary are ints in base units
(1e9 base units = 1 major unit): share quantities in, costs out. The math
itself runs in floats over major units. The caller (market engine) handles
state, fees, and persistence.

Notation:
    q: list of outstanding shares per outcome (base units)
    i: outcome index, 0 <= i < len(q)
    b: float, liquidity parameter in major units (higher = deeper book)

Rounding: cost() truncates to whole base units. buy_cost and sell_cost are
differences of truncated costs, so selling what was just bought returns
exactly what was paid.
"""

import logging
import math

from amm.errors import ArithmeticOverflow, InsufficientShares, InvalidInput
from amm.models import BASE_UNITS, BPS_DENOMINATOR, U64_MAX, checked_add, checked_sub


logger = logging.getLogger(__name__)

# Pooled liquidity (major units) -> b. Policy constant.
LIQUIDITY_SCALE = 100.0


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------

def _check_quantities(q: list[int], b: float) -> None:
    if not q:
        raise InvalidInput("quantities must not be empty")
    if not b > 0:
        raise InvalidInput(f"liquidity parameter must be positive, got {b}")


def _check_index(q: list[int], i: int) -> None:
    if not 0 <= i < len(q):
        raise InvalidInput(f"outcome index {i} out of range for {len(q)} outcomes")


def _check_amount(name: str, value: int) -> None:
    if value < 0:
        raise InvalidInput(f"{name} must not be negative, got {value}")


def _scaled(q: list[int], b: float) -> list[float]:
    """q_i / b with q_i converted to major units."""
    return [v / BASE_UNITS / b for v in q]


def _log_sum_exp(xs: list[float]) -> float:
    """ln(Σ e^x) with the max subtracted first. Never overflows exp()."""
    m = max(xs)
    return m + math.log(math.fsum(math.exp(x - m) for x in xs))


def _to_base_units(value: float) -> int:
    """Major units -> base units, truncated. Refuses anything outside u64."""
    scaled = value * BASE_UNITS
    if not math.isfinite(scaled) or scaled > U64_MAX:
        raise ArithmeticOverflow(f"cost {value} outside the integer domain")
    if scaled < 0:
        raise ArithmeticOverflow(f"negative cost {value}")
    return int(scaled)


# ---------------------------------------------------------------------------
# Cost / price
# ---------------------------------------------------------------------------

def cost(q: list[int], b: float) -> int:
    """
    Cost function: C(q) = b * ln(Σ e^(q_i / b)), in base units.

    Only differences of C mean anything; trading costs are always
    C(after) - C(before).
    """
    _check_quantities(q, b)
    return _to_base_units(b * _log_sum_exp(_scaled(q, b)))


def prices(q: list[int], b: float) -> list[float]:
    """
    Current prices (probabilities) for every outcome.

    p_i = e^(q_i/b) / Σ e^(q_j/b)

    Softmax over q/b. Always in [0, 1], sums to 1.
    """
    _check_quantities(q, b)
    xs = _scaled(q, b)
    m = max(xs)
    exp_vals = [math.exp(x - m) for x in xs]
    total = math.fsum(exp_vals)
    return [v / total for v in exp_vals]


def price(q: list[int], i: int, b: float) -> float:
    _check_quantities(q, b)
    _check_index(q, i)
    return prices(q, b)[i]


def price_bps(q: list[int], i: int, b: float) -> int:
    """Price of outcome i in basis points, [0, 10000]."""
    return round(price(q, i, b) * BPS_DENOMINATOR)


# ---------------------------------------------------------------------------
# Quotes
# ---------------------------------------------------------------------------

def buy_cost(q: list[int], i: int, shares: int, b: float) -> int:
    """Base units required to buy `shares` more of outcome i."""
    _check_quantities(q, b)
    _check_index(q, i)
    _check_amount("shares", shares)
    q_after = list(q)
    q_after[i] = checked_add(q_after[i], shares)
    return checked_sub(cost(q_after, b), cost(q, b))


def sell_cost(q: list[int], i: int, shares: int, b: float) -> int:
    """Base units returned for selling `shares` of outcome i."""
    _check_quantities(q, b)
    _check_index(q, i)
    _check_amount("shares", shares)
    if q[i] < shares:
        raise InsufficientShares(
            f"can't sell {shares} of outcome {i}, only {q[i]} outstanding")
    q_after = list(q)
    q_after[i] = q_after[i] - shares
    return checked_sub(cost(q, b), cost(q_after, b))


def shares_for_cost(q: list[int], i: int, budget: int, b: float) -> int:
    """
    Inverse of buy_cost: the most shares of outcome i that `budget` buys.

    Brackets the answer by doubling from 1 until buy_cost exceeds the
    budget (or q_i would leave the u64 domain), then bisects. buy_cost is
    non-decreasing in shares, so the result is the largest affordable
    count, or 0 if a single share unit is already too expensive.
    """
    _check_quantities(q, b)
    _check_index(q, i)
    _check_amount("budget", budget)
    if budget == 0:
        return 0

    headroom = U64_MAX - q[i]
    if headroom == 0:
        return 0

    lo, hi = 0, 1
    while buy_cost(q, i, hi, b) <= budget:
        lo = hi
        if hi == headroom:
            return hi
        hi = min(hi * 2, headroom)
    logger.debug("solver bracket outcome=%d budget=%d [%d, %d)",
                 i, budget, lo, hi)

    while hi - lo > 1:
        mid = (lo + hi) // 2
        if buy_cost(q, i, mid, b) <= budget:
            lo = mid
        else:
            hi = mid
    return lo


# ---------------------------------------------------------------------------
# Liquidity
# ---------------------------------------------------------------------------

def liquidity_param(liquidity: int) -> float:
    """b = pooled liquidity (major units) * 100."""
    return liquidity / BASE_UNITS * LIQUIDITY_SCALE


def max_loss(b: float, n: int) -> int:
    """Worst-case market maker loss b * ln(n), in base units."""
    if n < 1:
        raise InvalidInput("need at least one outcome")
    return _to_base_units(b * math.log(n))
