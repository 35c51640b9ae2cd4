"""
Pydantic request/response models for the API.
All amounts are integers in base units (1e9 = 1 major unit).
"""

from pydantic import BaseModel, Field


# --- Markets ---

class MarketSummary(BaseModel):
    market_id: str
    question: str
    status: str
    outcomes: list[str]
    prices_bps: list[int]
    close_time: int
    winning_outcome: int | None

class MarketDetail(MarketSummary):
    total_shares: list[int]
    liquidity: int
    reserve: int
    b: float
    max_loss: int
    creator: str
    created_at: int
    resolved_at: int | None

class PositionResponse(BaseModel):
    market_id: str
    holder: str
    shares: list[int]
    total_cost: int
    total_fees_paid: int
    claimed: bool
    created_at: int
    updated_at: int

class QuoteResponse(BaseModel):
    market_id: str
    outcome: int
    shares: int
    cost: int


# --- Trading ---

class BuyRequest(BaseModel):
    outcome: int
    cost: int = Field(gt=0)
    expected_shares: int = Field(gt=0)

class BuySharesRequest(BaseModel):
    outcome: int
    shares: int = Field(gt=0)
    expected_cost: int = Field(gt=0)

class SellRequest(BaseModel):
    outcome: int
    shares: int = Field(gt=0)
    expected_cost: int = Field(gt=0)

class TradeResult(BaseModel):
    market_id: str
    side: str
    outcome: int
    shares: int
    amount: int
    fee: int
    net: int

class ClaimResult(BaseModel):
    market_id: str
    winning_outcome: int
    winning_shares: int
    payout: int

class LiquidityRequest(BaseModel):
    amount: int = Field(gt=0)

class LiquidityResponse(BaseModel):
    market_id: str
    liquidity: int
    b: float


# --- Admin ---

class CreateMarketRequest(BaseModel):
    market_id: str
    question: str
    outcomes: list[str]
    close_time: int
    liquidity: int

class ResolveRequest(BaseModel):
    winning_outcome: int

class UpdateConfigRequest(BaseModel):
    admin: str
    fee_rate_bps: int

class ConfigResponse(BaseModel):
    admin: str
    fee_rate_bps: int
    min_liquidity: int
    total_fees_collected: int

class CollectFeesRequest(BaseModel):
    amount: int = Field(gt=0)

class FeePoolResponse(BaseModel):
    authority: str
    total_fees: int
    collectable: int

class MintRequest(BaseModel):
    account: str
    amount: int = Field(gt=0)

class BalanceResponse(BaseModel):
    account: str
    balance: int

class HealthResponse(BaseModel):
    status: str
    markets: int
