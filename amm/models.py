"""
Data models for the LS-LMSR market engine.

Four record kinds, all keyed in the record store:
- Market: outstanding shares per outcome, pooled liquidity, lifecycle
- Position: one holder's shares in one market, cost basis, claim flag
- FeePool: accumulated trading fees (single named record)
- AdminConfig: fee rate, minimum liquidity, admin identity (single record)

All monetary and share amounts are non-negative ints in base units
(1e9 base units = 1 major unit). Rates are ints in basis points.
Timestamps are unix seconds from the engine's clock.
"""

from dataclasses import dataclass, field
from typing import Optional

from amm.errors import ArithmeticOverflow


# ---------------------------------------------------------------------------
# Integer domain
# ---------------------------------------------------------------------------

BASE_UNITS = 1_000_000_000          # base units per major unit
BPS_DENOMINATOR = 10_000
U64_MAX = 2 ** 64 - 1


def checked_add(a: int, b: int) -> int:
    """a + b, or ArithmeticOverflow if it leaves the u64 domain."""
    result = a + b
    if result > U64_MAX or result < 0:
        raise ArithmeticOverflow(f"{a} + {b} overflows")
    return result


def checked_sub(a: int, b: int) -> int:
    """a - b, or ArithmeticOverflow if it would go negative."""
    if b > a:
        raise ArithmeticOverflow(f"{a} - {b} underflows")
    return a - b


def checked_mul(a: int, b: int) -> int:
    result = a * b
    if result > U64_MAX or result < 0:
        raise ArithmeticOverflow(f"{a} * {b} overflows")
    return result


def saturating_sub(a: int, b: int) -> int:
    return a - b if a > b else 0


# ---------------------------------------------------------------------------
# Singletons
# ---------------------------------------------------------------------------

@dataclass
class AdminConfig:
    """
    Deployment-wide admin settings. Stored as one named record.

    total_fees_collected counts fees withdrawn from the pool over the
    deployment's lifetime (not fees currently held).
    """
    admin: str
    fee_rate_bps: int
    min_liquidity: int
    total_fees_collected: int = 0


@dataclass
class FeePool:
    """Accumulated fees. Only grows, except through collect_fees."""
    authority: str
    total_fees: int = 0


# ---------------------------------------------------------------------------
# Market side
# ---------------------------------------------------------------------------

@dataclass
class Market:
    """
    A market instance. Owns the LS-LMSR state.

    total_shares: q_i per outcome, fixed length
    liquidity: pooled value in base units; derives b
    reserve: buy costs net of fees minus sell proceeds (never negative)
    total_claimed: payouts already made after resolution
    status: "open" or "resolved"; resolution is one-way
    """
    id: str
    question: str
    outcomes: list[str]
    close_time: int
    liquidity: int
    creator: str
    created_at: int
    total_shares: list[int] = field(default_factory=list)
    reserve: int = 0
    total_claimed: int = 0
    status: str = "open"
    winning_outcome: Optional[int] = None
    resolved_at: Optional[int] = None

    @staticmethod
    def new(market_id: str, question: str, outcomes: list[str],
            close_time: int, liquidity: int, creator: str,
            now: int) -> "Market":
        return Market(
            id=market_id,
            question=question,
            outcomes=list(outcomes),
            close_time=close_time,
            liquidity=liquidity,
            creator=creator,
            created_at=now,
            total_shares=[0] * len(outcomes),
        )

    @property
    def is_resolved(self) -> bool:
        return self.status == "resolved"

    def is_closed(self, now: int) -> bool:
        return now >= self.close_time


@dataclass
class Position:
    """
    One holder's stake in one market. Created lazily on first buy.

    total_cost is the cost basis: grows by the pre-fee cost of each buy,
    shrinks by sell proceeds (saturating at zero).
    """
    market_id: str
    holder: str
    shares: list[int]
    created_at: int
    updated_at: int
    total_cost: int = 0
    total_fees_paid: int = 0
    claimed: bool = False

    @staticmethod
    def new(market_id: str, holder: str, n_outcomes: int,
            now: int) -> "Position":
        return Position(
            market_id=market_id,
            holder=holder,
            shares=[0] * n_outcomes,
            created_at=now,
            updated_at=now,
        )


# ---------------------------------------------------------------------------
# Operation results
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class TradeReceipt:
    """
    What a buy or sell did.

    side: "buy" or "sell"
    amount: cost paid (buy) or gross proceeds (sell), base units
    net: what moved to/from the trader: cost (buy), proceeds - fee (sell)
    """
    market_id: str
    holder: str
    side: str
    outcome: int
    shares: int
    amount: int
    fee: int
    net: int
    timestamp: int


@dataclass(frozen=True)
class Claim:
    market_id: str
    holder: str
    winning_outcome: int
    winning_shares: int
    payout: int
    timestamp: int
