"""
FastAPI application. HTTP surface over the market engine.

Public endpoints: health, markets, market detail, positions, quotes,
fee pool, config, balances.
Caller endpoints (X-Account): buy, buy-shares, sell, claim, add liquidity.
Admin endpoints (X-Account must be the configured admin): create market,
resolve, remove liquidity, collect fees, update config, mint.

State lives in memory: an InMemoryStore for records and an
InMemoryTokenLedger for balances. Mutations are serialised per app by an
asyncio lock on top of the engine's own per-market locks.
"""

import asyncio
import logging
import os
import time
from contextlib import asynccontextmanager
from typing import Callable

from fastapi import FastAPI

from amm.api_errors import APIError, api_error_handler, engine_error_handler
from amm.api_models import (
    MarketSummary, MarketDetail, PositionResponse, QuoteResponse,
    BuyRequest, BuySharesRequest, SellRequest, TradeResult, ClaimResult,
    LiquidityRequest, LiquidityResponse,
    CreateMarketRequest, ResolveRequest, UpdateConfigRequest,
    ConfigResponse, CollectFeesRequest, FeePoolResponse,
    MintRequest, BalanceResponse, HealthResponse,
)
from amm.config import EngineConfig
from amm.errors import AMMError, Unauthorized
from amm.lmsr import liquidity_param, max_loss
from amm.market_engine import MarketEngine
from amm.middleware import Caller
from amm.models import Market, TradeReceipt
from amm.store import InMemoryStore
from amm.token_ledger import InMemoryTokenLedger


logger = logging.getLogger(__name__)

ADMIN = os.environ.get("AMM_ADMIN", "admin")
FEE_RATE_BPS = int(os.environ.get("AMM_FEE_RATE_BPS", "100"))
MIN_LIQUIDITY = int(os.environ.get("AMM_MIN_LIQUIDITY", "1000000"))
VAULT = os.environ.get("AMM_VAULT", "vault")


def build_engine(clock: Callable[[], float] = time.time) -> MarketEngine:
    """Fresh in-memory engine, initialised from the environment."""
    tokens = InMemoryTokenLedger()
    tokens.open_account(VAULT)
    engine = MarketEngine(InMemoryStore(), tokens, vault=VAULT, clock=clock,
                          config=EngineConfig.from_env())
    engine.initialize(ADMIN, FEE_RATE_BPS, MIN_LIQUIDITY)
    return engine


@asynccontextmanager
async def lifespan(app: FastAPI):
    app.state.engine = build_engine()
    app.state.lock = asyncio.Lock()
    logger.info("engine ready admin=%s vault=%s", ADMIN, VAULT)
    yield


app = FastAPI(title="LS-LMSR Market API", version="0.1.0", lifespan=lifespan)
app.add_exception_handler(APIError, api_error_handler)
app.add_exception_handler(AMMError, engine_error_handler)


def _engine() -> MarketEngine:
    return app.state.engine


def _summary(engine: MarketEngine, m: Market) -> dict:
    return dict(
        market_id=m.id,
        question=m.question,
        status=m.status,
        outcomes=m.outcomes,
        prices_bps=engine.market_prices(m.id),
        close_time=m.close_time,
        winning_outcome=m.winning_outcome,
    )


def _fee_pool_response(engine: MarketEngine) -> FeePoolResponse:
    pool = engine.get_fee_pool()
    return FeePoolResponse(authority=pool.authority,
                           total_fees=pool.total_fees,
                           collectable=engine.collectable_fees())


def _trade_result(receipt: TradeReceipt) -> TradeResult:
    return TradeResult(
        market_id=receipt.market_id,
        side=receipt.side,
        outcome=receipt.outcome,
        shares=receipt.shares,
        amount=receipt.amount,
        fee=receipt.fee,
        net=receipt.net,
    )


# ---------------------------------------------------------------------------
# Public
# ---------------------------------------------------------------------------

@app.get("/v1/health")
async def health() -> HealthResponse:
    return HealthResponse(status="ok",
                          markets=len(_engine().store.list_markets()))


@app.get("/v1/markets")
async def list_markets(status: str | None = None) -> list[MarketSummary]:
    """List markets with current prices. Optional exact status filter."""
    engine = _engine()
    return [
        MarketSummary(**_summary(engine, m))
        for m in engine.store.list_markets()
        if status is None or m.status == status
    ]


@app.get("/v1/markets/{market_id}")
async def get_market(market_id: str) -> MarketDetail:
    """Full market detail including LS-LMSR state."""
    engine = _engine()
    m = engine.get_market(market_id)
    b = liquidity_param(m.liquidity)
    return MarketDetail(
        **_summary(engine, m),
        total_shares=m.total_shares,
        liquidity=m.liquidity,
        reserve=m.reserve,
        b=b,
        max_loss=max_loss(b, len(m.outcomes)),
        creator=m.creator,
        created_at=m.created_at,
        resolved_at=m.resolved_at,
    )


@app.get("/v1/markets/{market_id}/positions/{holder}")
async def get_position(market_id: str, holder: str) -> PositionResponse:
    p = _engine().get_position(market_id, holder)
    return PositionResponse(
        market_id=p.market_id,
        holder=p.holder,
        shares=p.shares,
        total_cost=p.total_cost,
        total_fees_paid=p.total_fees_paid,
        claimed=p.claimed,
        created_at=p.created_at,
        updated_at=p.updated_at,
    )


@app.get("/v1/markets/{market_id}/quote/buy")
async def quote_buy(market_id: str, outcome: int, cost: int) -> QuoteResponse:
    """Shares a cost budget buys right now."""
    shares = _engine().quote_buy(market_id, outcome, cost)
    return QuoteResponse(market_id=market_id, outcome=outcome,
                         shares=shares, cost=cost)


@app.get("/v1/markets/{market_id}/quote/buy-shares")
async def quote_buy_shares(market_id: str, outcome: int,
                           shares: int) -> QuoteResponse:
    cost = _engine().quote_buy_shares(market_id, outcome, shares)
    return QuoteResponse(market_id=market_id, outcome=outcome,
                         shares=shares, cost=cost)


@app.get("/v1/markets/{market_id}/quote/sell")
async def quote_sell(market_id: str, outcome: int,
                     shares: int) -> QuoteResponse:
    cost = _engine().quote_sell(market_id, outcome, shares)
    return QuoteResponse(market_id=market_id, outcome=outcome,
                         shares=shares, cost=cost)


@app.get("/v1/fees")
async def get_fee_pool() -> FeePoolResponse:
    return _fee_pool_response(_engine())


@app.get("/v1/config")
async def get_config() -> ConfigResponse:
    c = _engine().get_config()
    return ConfigResponse(admin=c.admin, fee_rate_bps=c.fee_rate_bps,
                          min_liquidity=c.min_liquidity,
                          total_fees_collected=c.total_fees_collected)


@app.get("/v1/accounts/{account}")
async def get_balance(account: str) -> BalanceResponse:
    return BalanceResponse(account=account,
                           balance=_engine().tokens.balance(account))


# ---------------------------------------------------------------------------
# Trading (caller)
# ---------------------------------------------------------------------------

@app.post("/v1/markets/{market_id}/buy")
async def buy(market_id: str, req: BuyRequest, caller: Caller) -> TradeResult:
    """Spend a cost budget on outcome shares."""
    async with app.state.lock:
        receipt = _engine().buy(market_id, caller, req.outcome, req.cost,
                                req.expected_shares)
    return _trade_result(receipt)


@app.post("/v1/markets/{market_id}/buy-shares")
async def buy_shares(market_id: str, req: BuySharesRequest,
                     caller: Caller) -> TradeResult:
    """Buy an exact number of shares."""
    async with app.state.lock:
        receipt = _engine().buy_shares(market_id, caller, req.outcome,
                                       req.shares, req.expected_cost)
    return _trade_result(receipt)


@app.post("/v1/markets/{market_id}/sell")
async def sell(market_id: str, req: SellRequest,
               caller: Caller) -> TradeResult:
    async with app.state.lock:
        receipt = _engine().sell(market_id, caller, req.outcome, req.shares,
                                 req.expected_cost)
    return _trade_result(receipt)


@app.post("/v1/markets/{market_id}/claim")
async def claim(market_id: str, caller: Caller) -> ClaimResult:
    async with app.state.lock:
        c = _engine().claim_winnings(market_id, caller)
    return ClaimResult(market_id=c.market_id,
                       winning_outcome=c.winning_outcome,
                       winning_shares=c.winning_shares, payout=c.payout)


@app.post("/v1/markets/{market_id}/liquidity")
async def add_liquidity(market_id: str, req: LiquidityRequest,
                        caller: Caller) -> LiquidityResponse:
    async with app.state.lock:
        m = _engine().add_liquidity(market_id, caller, req.amount)
    return LiquidityResponse(market_id=m.id, liquidity=m.liquidity,
                             b=liquidity_param(m.liquidity))


# ---------------------------------------------------------------------------
# Admin
# ---------------------------------------------------------------------------

@app.post("/v1/admin/markets")
async def admin_create_market(req: CreateMarketRequest,
                              caller: Caller) -> MarketDetail:
    async with app.state.lock:
        _engine().create_market(caller, req.market_id, req.question,
                                req.outcomes, req.close_time, req.liquidity)
    return await get_market(req.market_id)


@app.post("/v1/admin/markets/{market_id}/resolve")
async def admin_resolve(market_id: str, req: ResolveRequest,
                        caller: Caller) -> MarketSummary:
    async with app.state.lock:
        m = _engine().resolve(caller, market_id, req.winning_outcome)
    return MarketSummary(**_summary(_engine(), m))


@app.post("/v1/admin/markets/{market_id}/remove-liquidity")
async def admin_remove_liquidity(market_id: str, req: LiquidityRequest,
                                 caller: Caller) -> LiquidityResponse:
    async with app.state.lock:
        m = _engine().remove_liquidity(caller, market_id, req.amount)
    return LiquidityResponse(market_id=m.id, liquidity=m.liquidity,
                             b=liquidity_param(m.liquidity))


@app.post("/v1/admin/fees/collect")
async def admin_collect_fees(req: CollectFeesRequest,
                             caller: Caller) -> FeePoolResponse:
    async with app.state.lock:
        _engine().collect_fees(caller, req.amount)
    return _fee_pool_response(_engine())


@app.put("/v1/admin/config")
async def admin_update_config(req: UpdateConfigRequest,
                              caller: Caller) -> ConfigResponse:
    async with app.state.lock:
        c = _engine().update_admin(caller, req.admin, req.fee_rate_bps)
    return ConfigResponse(admin=c.admin, fee_rate_bps=c.fee_rate_bps,
                          min_liquidity=c.min_liquidity,
                          total_fees_collected=c.total_fees_collected)


@app.post("/v1/admin/mint")
async def admin_mint(req: MintRequest, caller: Caller) -> BalanceResponse:
    """Credit test funds to an account. In-memory ledger only."""
    engine = _engine()
    if caller != engine.get_config().admin:
        raise Unauthorized(f"{caller} is not the admin")
    async with app.state.lock:
        engine.tokens.mint(req.account, req.amount)
    return BalanceResponse(account=req.account,
                           balance=engine.tokens.balance(req.account))
