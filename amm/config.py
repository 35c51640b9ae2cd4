"""
Engine policy limits. Defaults match the deployed program; every field can
be overridden from the environment (AMM_<FIELD_NAME>).
"""

import os
from dataclasses import dataclass, fields


# Absolute floor for AdminConfig.min_liquidity (0.001 major units).
MIN_LIQUIDITY_FLOOR = 1_000_000

PAYOUT_BASES = ("liquidity", "pool")


@dataclass(frozen=True)
class EngineConfig:
    """
    payout_basis picks the settlement pot:
      "liquidity": the market's pooled liquidity at resolution
      "pool": pooled liquidity plus net trading proceeds (reserve)
    """
    slippage_tolerance_bps: int = 100
    min_cost: int = 10_000
    max_cost: int = 1_000_000_000
    min_shares: int = 1
    max_shares: int = 10 ** 18
    max_liquidity: int = 1_000_000_000_000
    min_market_duration: int = 86_400          # 24 hours
    max_market_duration: int = 31_536_000      # 365 days
    max_market_id_length: int = 100
    max_question_length: int = 500
    max_outcome_length: int = 200
    min_outcomes: int = 2
    max_outcomes: int = 10
    payout_basis: str = "liquidity"

    def __post_init__(self):
        if self.payout_basis not in PAYOUT_BASES:
            raise ValueError(
                f"payout_basis must be one of {PAYOUT_BASES}, "
                f"got {self.payout_basis!r}")

    @classmethod
    def from_env(cls, environ=None) -> "EngineConfig":
        environ = os.environ if environ is None else environ
        overrides = {}
        for f in fields(cls):
            raw = environ.get(f"AMM_{f.name.upper()}")
            if raw is None:
                continue
            overrides[f.name] = raw if f.type in (str, "str") else int(raw)
        return cls(**overrides)
