"""
Market engine tests: lifecycle, ledger invariants, atomicity, settlement.

Every rejected operation must leave the store and the token balances
exactly as they were.
"""

import threading
from concurrent.futures import ThreadPoolExecutor

import pytest

from amm.config import EngineConfig
from amm.errors import (
    AlreadyClaimed, AlreadyInitialized, InsufficientLiquidity,
    InsufficientShares, InvalidAmount, InvalidFeeRate, InvalidInput,
    InvalidWinningOption, LiquidityTooHigh, LiquidityTooLow,
    MarketAlreadyExists, MarketClosed, MarketDurationTooLong,
    MarketDurationTooShort, MarketEndTimeInPast, MarketNotFound,
    MarketNotResolved, MarketResolved, NoWinningsToClaim, NotInitialized,
    PositionNotFound, SlippageExceeded, TransferFailed, Unauthorized,
)
from amm.lmsr import liquidity_param, price
from amm.market_engine import MarketEngine
from amm.store import InMemoryStore
from amm.token_ledger import InMemoryTokenLedger


ADMIN = "admin"
FEE_RATE = 250
LIQUIDITY = 100_000_000
DAY = 86_400
START = 1_700_000_000


class FakeClock:

    def __init__(self, now=START):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def fresh_system(n_traders=3, trader_balance=10 ** 11, config=None,
                 fee_rate=FEE_RATE):
    """
    Initialised engine, funded admin and traders, one open 3-outcome
    market "m1" closing in two days.
    """
    clock = FakeClock()
    store = InMemoryStore()
    tokens = InMemoryTokenLedger()
    tokens.open_account("vault")
    engine = MarketEngine(store, tokens, vault="vault", clock=clock,
                          config=config)
    engine.initialize(ADMIN, fee_rate, 1_000_000)

    tokens.mint(ADMIN, 10 ** 12)
    traders = []
    for n in range(n_traders):
        name = f"trader{n}"
        tokens.mint(name, trader_balance)
        traders.append(name)

    engine.create_market(ADMIN, "m1", "Which color wins?",
                         ["red", "green", "blue"], START + 2 * DAY, LIQUIDITY)
    return engine, tokens, clock, traders


def quoted_buy(engine, market_id, trader, outcome, cost):
    """Buy at exactly the quoted share count."""
    expected = engine.quote_buy(market_id, outcome, cost)
    return engine.buy(market_id, trader, outcome, cost, expected)


def snapshot(engine, tokens, market_id="m1", holders=()):
    return (
        engine.get_market(market_id),
        {h: engine.store.get_position(market_id, h) for h in holders},
        engine.get_fee_pool(),
        engine.get_config(),
        dict(tokens.balances),
        len(tokens.journal),
    )


def close_and_resolve(engine, clock, winner, market_id="m1"):
    clock.advance(3 * DAY)
    return engine.resolve(ADMIN, market_id, winner)


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

class TestEngineConfig:

    def test_env_overrides(self):
        cfg = EngineConfig.from_env({
            "AMM_SLIPPAGE_TOLERANCE_BPS": "50",
            "AMM_PAYOUT_BASIS": "pool",
        })
        assert cfg.slippage_tolerance_bps == 50
        assert cfg.payout_basis == "pool"
        assert cfg.min_cost == 10_000

    def test_unknown_payout_basis(self):
        with pytest.raises(ValueError):
            EngineConfig(payout_basis="treasury")


# ---------------------------------------------------------------------------
# Initialisation and admin
# ---------------------------------------------------------------------------

class TestAdmin:

    def test_initialize_once(self):
        engine, _, _, _ = fresh_system()
        with pytest.raises(AlreadyInitialized):
            engine.initialize(ADMIN, 100, 1_000_000)

    def test_initialize_validates(self):
        engine = MarketEngine(InMemoryStore(), InMemoryTokenLedger())
        with pytest.raises(InvalidFeeRate):
            engine.initialize(ADMIN, 1001, 1_000_000)
        with pytest.raises(LiquidityTooLow):
            engine.initialize(ADMIN, 100, 999_999)
        with pytest.raises(NotInitialized):
            engine.get_config()

    def test_uninitialized_engine_refuses_markets(self):
        engine = MarketEngine(InMemoryStore(), InMemoryTokenLedger())
        with pytest.raises(NotInitialized):
            engine.create_market(ADMIN, "m", "q?", ["a", "b"],
                                 START + 2 * DAY, LIQUIDITY)

    def test_update_admin(self):
        engine, _, _, traders = fresh_system()
        with pytest.raises(Unauthorized):
            engine.update_admin(traders[0], traders[0], 0)
        with pytest.raises(InvalidFeeRate):
            engine.update_admin(ADMIN, ADMIN, 1001)

        engine.update_admin(ADMIN, "new-admin", 500)
        config = engine.get_config()
        assert config.admin == "new-admin"
        assert config.fee_rate_bps == 500
        with pytest.raises(Unauthorized):
            engine.update_admin(ADMIN, ADMIN, 100)

    def test_new_fee_rate_applies_to_next_trade(self):
        engine, _, _, traders = fresh_system()
        engine.update_admin(ADMIN, ADMIN, 1000)
        receipt = quoted_buy(engine, "m1", traders[0], 0, 1_000_000)
        assert receipt.fee == 100_000


# ---------------------------------------------------------------------------
# Market creation
# ---------------------------------------------------------------------------

class TestCreateMarket:

    def test_created_state(self):
        engine, tokens, _, _ = fresh_system()
        m = engine.get_market("m1")
        assert m.total_shares == [0, 0, 0]
        assert m.status == "open"
        assert m.winning_outcome is None
        assert m.liquidity == LIQUIDITY
        assert m.created_at == START
        assert tokens.balance("vault") == LIQUIDITY
        assert engine.market_prices("m1") == [3333, 3333, 3333]

    @pytest.mark.parametrize("outcomes", [["only"], [str(i) for i in range(11)]])
    def test_outcome_count(self, outcomes):
        engine, _, _, _ = fresh_system()
        with pytest.raises(InvalidInput):
            engine.create_market(ADMIN, "m2", "q?", outcomes,
                                 START + 2 * DAY, LIQUIDITY)

    def test_string_limits(self):
        engine, _, _, _ = fresh_system()
        with pytest.raises(InvalidInput):
            engine.create_market(ADMIN, "x" * 101, "q?", ["a", "b"],
                                 START + 2 * DAY, LIQUIDITY)
        with pytest.raises(InvalidInput):
            engine.create_market(ADMIN, "m2", "q" * 501, ["a", "b"],
                                 START + 2 * DAY, LIQUIDITY)
        with pytest.raises(InvalidInput):
            engine.create_market(ADMIN, "m2", "q?", ["a", "b" * 201],
                                 START + 2 * DAY, LIQUIDITY)

    def test_time_window(self):
        engine, _, _, _ = fresh_system()
        with pytest.raises(MarketEndTimeInPast):
            engine.create_market(ADMIN, "m2", "q?", ["a", "b"], START,
                                 LIQUIDITY)
        with pytest.raises(MarketDurationTooShort):
            engine.create_market(ADMIN, "m2", "q?", ["a", "b"],
                                 START + DAY - 1, LIQUIDITY)
        with pytest.raises(MarketDurationTooLong):
            engine.create_market(ADMIN, "m2", "q?", ["a", "b"],
                                 START + 366 * DAY, LIQUIDITY)

    def test_liquidity_window(self):
        engine, _, _, _ = fresh_system()
        with pytest.raises(LiquidityTooLow):
            engine.create_market(ADMIN, "m2", "q?", ["a", "b"],
                                 START + 2 * DAY, 999_999)
        with pytest.raises(LiquidityTooHigh):
            engine.create_market(ADMIN, "m2", "q?", ["a", "b"],
                                 START + 2 * DAY, 10 ** 12 + 1)

    def test_duplicate_id(self):
        engine, tokens, _, _ = fresh_system()
        before = tokens.balance(ADMIN)
        with pytest.raises(MarketAlreadyExists):
            engine.create_market(ADMIN, "m1", "again?", ["a", "b"],
                                 START + 2 * DAY, LIQUIDITY)
        assert tokens.balance(ADMIN) == before

    def test_admin_only(self):
        engine, _, _, traders = fresh_system()
        with pytest.raises(Unauthorized):
            engine.create_market(traders[0], "m2", "q?", ["a", "b"],
                                 START + 2 * DAY, LIQUIDITY)

    def test_unknown_market(self):
        engine, _, _, _ = fresh_system()
        with pytest.raises(MarketNotFound):
            engine.get_market("nope")

    def test_unknown_market_gets_no_lock(self):
        engine, _, _, traders = fresh_system()
        for n in range(5):
            with pytest.raises(MarketNotFound):
                engine.buy(f"nope{n}", traders[0], 0, 1_000_000, 1)
        with pytest.raises(MarketNotFound):
            engine.claim_winnings("nope", traders[0])
        assert set(engine._market_locks) == {"m1"}


# ---------------------------------------------------------------------------
# Trading
# ---------------------------------------------------------------------------

class TestBuy:

    def test_end_to_end_buy(self):
        engine, tokens, _, traders = fresh_system()
        t = traders[0]
        before = tokens.balance(t)

        receipt = quoted_buy(engine, "m1", t, 0, 1_000_000)

        assert receipt.shares > 0
        assert receipt.fee == FEE_RATE * 1_000_000 // 10_000
        assert engine.get_market("m1").total_shares == [receipt.shares, 0, 0]
        pos = engine.get_position("m1", t)
        assert pos.shares == [receipt.shares, 0, 0]
        assert pos.total_cost == 1_000_000
        assert pos.total_fees_paid == receipt.fee
        assert not pos.claimed
        assert engine.get_fee_pool().total_fees == 25_000
        assert tokens.balance(t) == before - 1_000_000
        assert tokens.balance("vault") == LIQUIDITY + 1_000_000

    def test_buy_moves_price(self):
        engine, _, _, traders = fresh_system()
        quoted_buy(engine, "m1", traders[0], 0, 500_000_000)
        p = engine.market_prices("m1")
        assert p[0] > 3333 > p[1]

    def test_sequential_buyers_get_fewer_shares(self):
        engine, _, _, traders = fresh_system()
        first = quoted_buy(engine, "m1", traders[0], 1, 100_000_000)
        second = quoted_buy(engine, "m1", traders[1], 1, 100_000_000)
        assert second.shares < first.shares

    def test_position_accumulates(self):
        engine, _, _, traders = fresh_system()
        t = traders[0]
        a = quoted_buy(engine, "m1", t, 2, 1_000_000)
        b = quoted_buy(engine, "m1", t, 2, 2_000_000)
        pos = engine.get_position("m1", t)
        assert pos.shares[2] == a.shares + b.shares
        assert pos.total_cost == 3_000_000
        assert pos.created_at == START

    def test_buy_shares_shape(self):
        engine, _, _, traders = fresh_system()
        shares = 3_000_000
        cost = engine.quote_buy_shares("m1", 1, shares)
        receipt = engine.buy_shares("m1", traders[0], 1, shares, cost)
        assert receipt.shares == shares
        assert receipt.amount == cost
        assert engine.get_market("m1").total_shares == [0, shares, 0]

    def test_buy_shares_below_min_cost(self):
        engine, _, _, traders = fresh_system()
        with pytest.raises(InvalidInput):
            engine.buy_shares("m1", traders[0], 0, 3, 1)

    def test_slippage_rejected_without_trace(self):
        engine, tokens, _, traders = fresh_system()
        t = traders[0]
        expected = engine.quote_buy("m1", 0, 1_000_000) * 2
        before = snapshot(engine, tokens, holders=[t])
        with pytest.raises(SlippageExceeded):
            engine.buy("m1", t, 0, 1_000_000, expected)
        assert snapshot(engine, tokens, holders=[t]) == before

    def test_cost_bounds(self):
        engine, _, _, traders = fresh_system()
        with pytest.raises(InvalidInput):
            engine.buy("m1", traders[0], 0, 9_999, 1)
        with pytest.raises(InvalidInput):
            engine.buy("m1", traders[0], 0, 1_000_000_001, 1)

    def test_out_of_range_outcome(self):
        engine, _, _, traders = fresh_system()
        with pytest.raises(InvalidInput):
            engine.buy("m1", traders[0], 3, 1_000_000, 1)
        with pytest.raises(InvalidInput):
            engine.buy("m1", traders[0], -1, 1_000_000, 1)

    def test_transfer_failure_leaves_no_trace(self):
        """Buyer can't pay. The computed ledger update is never written."""
        engine, tokens, _, _ = fresh_system()
        poor = "poor"
        tokens.mint(poor, 10)
        before = snapshot(engine, tokens, holders=[poor])
        with pytest.raises(TransferFailed):
            quoted_buy(engine, "m1", poor, 0, 1_000_000)
        assert snapshot(engine, tokens, holders=[poor]) == before
        assert engine.store.get_position("m1", poor) is None

    def test_closed_market(self):
        engine, _, clock, traders = fresh_system()
        clock.advance(2 * DAY)
        with pytest.raises(MarketClosed):
            engine.buy("m1", traders[0], 0, 1_000_000, 1)

    def test_resolved_market(self):
        engine, _, clock, traders = fresh_system()
        close_and_resolve(engine, clock, 0)
        with pytest.raises(MarketResolved):
            engine.buy("m1", traders[0], 0, 1_000_000, 1)


class TestSell:

    def test_round_trip(self):
        """Buy then sell the same shares: proceeds equal cost, fees both ways."""
        engine, tokens, _, traders = fresh_system()
        t = traders[0]
        start = tokens.balance(t)

        shares = 3_000_000
        cost = engine.quote_buy_shares("m1", 0, shares)
        bought = engine.buy_shares("m1", t, 0, shares, cost)
        proceeds = engine.quote_sell("m1", 0, shares)
        sold = engine.sell("m1", t, 0, shares, proceeds)

        assert sold.amount == bought.amount
        assert sold.net == proceeds - sold.fee
        assert engine.get_market("m1").total_shares == [0, 0, 0]
        pos = engine.get_position("m1", t)
        assert pos.shares == [0, 0, 0]
        assert pos.total_cost == 0
        assert pos.total_fees_paid == bought.fee + sold.fee
        assert engine.get_fee_pool().total_fees == bought.fee + sold.fee
        assert tokens.balance(t) == start - cost + sold.net

    def test_cost_basis_saturates(self):
        """Selling into a higher price returns more than was paid."""
        engine, _, _, traders = fresh_system()
        a, b = traders[0], traders[1]
        bought = quoted_buy(engine, "m1", a, 0, 1_000_000)
        quoted_buy(engine, "m1", b, 0, 1_000_000_000)

        proceeds = engine.quote_sell("m1", 0, bought.shares)
        assert proceeds > 1_000_000
        engine.sell("m1", a, 0, bought.shares, proceeds)
        assert engine.get_position("m1", a).total_cost == 0

    def test_cannot_sell_more_than_held(self):
        engine, tokens, _, traders = fresh_system()
        a, b = traders[0], traders[1]
        mine = quoted_buy(engine, "m1", a, 0, 1_000_000)
        quoted_buy(engine, "m1", b, 0, 1_000_000)

        before = snapshot(engine, tokens, holders=[a, b])
        with pytest.raises(InsufficientShares):
            engine.sell("m1", a, 0, mine.shares + 1, 1_000_000)
        assert snapshot(engine, tokens, holders=[a, b]) == before

    def test_sell_without_position(self):
        engine, _, _, traders = fresh_system()
        with pytest.raises(PositionNotFound):
            engine.sell("m1", traders[0], 0, 1, 1)

    def test_sell_other_outcome(self):
        engine, _, _, traders = fresh_system()
        quoted_buy(engine, "m1", traders[0], 0, 1_000_000)
        with pytest.raises(InsufficientShares):
            engine.sell("m1", traders[0], 1, 1, 1)

    def test_out_of_range_outcome(self):
        engine, _, _, traders = fresh_system()
        quoted_buy(engine, "m1", traders[0], 0, 1_000_000)
        with pytest.raises(InvalidInput):
            engine.sell("m1", traders[0], 7, 1, 1)

    def test_sell_slippage(self):
        engine, _, _, traders = fresh_system()
        bought = quoted_buy(engine, "m1", traders[0], 0, 1_000_000)
        proceeds = engine.quote_sell("m1", 0, bought.shares)
        with pytest.raises(SlippageExceeded):
            engine.sell("m1", traders[0], 0, bought.shares, proceeds * 2)

    def test_sell_after_close(self):
        engine, _, clock, traders = fresh_system()
        bought = quoted_buy(engine, "m1", traders[0], 0, 1_000_000)
        clock.advance(2 * DAY)
        with pytest.raises(MarketClosed):
            engine.sell("m1", traders[0], 0, bought.shares, 1_000_000)


# ---------------------------------------------------------------------------
# Liquidity and fees
# ---------------------------------------------------------------------------

class TestLiquidity:

    def test_add_liquidity_deepens_book(self):
        engine, tokens, _, traders = fresh_system()
        quoted_buy(engine, "m1", traders[0], 0, 500_000_000)
        m = engine.get_market("m1")
        p_before = price(m.total_shares, 0, liquidity_param(m.liquidity))

        provider_before = tokens.balance(traders[1])
        engine.add_liquidity("m1", traders[1], 900_000_000)

        m = engine.get_market("m1")
        assert m.liquidity == LIQUIDITY + 900_000_000
        p_after = price(m.total_shares, 0, liquidity_param(m.liquidity))
        assert 1 / 3 < p_after < p_before
        assert tokens.balance(traders[1]) == provider_before - 900_000_000

    def test_add_liquidity_bounds(self):
        engine, _, _, traders = fresh_system()
        with pytest.raises(InvalidAmount):
            engine.add_liquidity("m1", traders[0], 1)

    def test_remove_liquidity(self):
        engine, tokens, _, traders = fresh_system()
        before = tokens.balance(ADMIN)
        engine.remove_liquidity(ADMIN, "m1", LIQUIDITY - 1_000_000)
        assert engine.get_market("m1").liquidity == 1_000_000
        assert tokens.balance(ADMIN) == before + LIQUIDITY - 1_000_000

        with pytest.raises(InsufficientLiquidity):
            engine.remove_liquidity(ADMIN, "m1", 1)
        with pytest.raises(Unauthorized):
            engine.remove_liquidity(traders[0], "m1", 1)

    def test_fee_pool_shared_across_markets(self):
        engine, _, _, traders = fresh_system()
        engine.create_market(ADMIN, "m2", "Heads?", ["yes", "no"],
                             START + 2 * DAY, LIQUIDITY)
        a = quoted_buy(engine, "m1", traders[0], 0, 1_000_000)
        b = quoted_buy(engine, "m2", traders[1], 1, 4_000_000)
        assert engine.get_fee_pool().total_fees == a.fee + b.fee

    def test_collect_fees(self):
        engine, tokens, _, traders = fresh_system()
        quoted_buy(engine, "m1", traders[0], 0, 1_000_000)
        admin_before = tokens.balance(ADMIN)

        with pytest.raises(Unauthorized):
            engine.collect_fees(traders[0], 1)
        with pytest.raises(InvalidAmount):
            engine.collect_fees(ADMIN, 25_001)
        with pytest.raises(InvalidAmount):
            engine.collect_fees(ADMIN, 0)

        pool = engine.collect_fees(ADMIN, 20_000)
        assert pool.total_fees == 5_000
        assert engine.get_config().total_fees_collected == 20_000
        assert tokens.balance(ADMIN) == admin_before + 20_000

    def test_vault_covers_liquidity_reserve_and_fees(self):
        engine, tokens, _, traders = fresh_system()
        for n, t in enumerate(traders):
            quoted_buy(engine, "m1", t, n % 3, 10_000_000 * (n + 1))
        m = engine.get_market("m1")
        fees = engine.get_fee_pool().total_fees
        assert tokens.balance("vault") == m.liquidity + m.reserve + fees


# ---------------------------------------------------------------------------
# Resolution and settlement
# ---------------------------------------------------------------------------

class TestResolve:

    def test_resolve_once(self):
        engine, _, clock, _ = fresh_system()
        close_and_resolve(engine, clock, 0)
        for winner in (0, 1, 2):
            with pytest.raises(MarketResolved):
                engine.resolve(ADMIN, "m1", winner)
        m = engine.get_market("m1")
        assert m.status == "resolved"
        assert m.winning_outcome == 0
        assert m.resolved_at == START + 3 * DAY

    def test_resolve_before_close(self):
        engine, _, _, _ = fresh_system()
        with pytest.raises(MarketNotResolved):
            engine.resolve(ADMIN, "m1", 0)
        assert engine.get_market("m1").status == "open"

    def test_invalid_winner(self):
        engine, _, clock, _ = fresh_system()
        clock.advance(3 * DAY)
        with pytest.raises(InvalidWinningOption):
            engine.resolve(ADMIN, "m1", 3)
        assert engine.get_market("m1").winning_outcome is None

    def test_admin_only(self):
        engine, _, clock, traders = fresh_system()
        clock.advance(3 * DAY)
        with pytest.raises(Unauthorized):
            engine.resolve(traders[0], "m1", 0)

    def test_resolved_market_is_frozen(self):
        engine, _, clock, traders = fresh_system()
        bought = quoted_buy(engine, "m1", traders[0], 0, 1_000_000)
        close_and_resolve(engine, clock, 0)
        with pytest.raises(MarketResolved):
            engine.sell("m1", traders[0], 0, bought.shares, 1_000_000)
        with pytest.raises(MarketResolved):
            engine.add_liquidity("m1", traders[1], 1_000_000)


class TestClaim:

    def test_claim_exactly_once(self):
        engine, tokens, clock, traders = fresh_system()
        t = traders[0]
        quoted_buy(engine, "m1", t, 0, 1_000_000)
        close_and_resolve(engine, clock, 0)

        before = tokens.balance(t)
        claim = engine.claim_winnings("m1", t)
        assert claim.payout == LIQUIDITY
        assert tokens.balance(t) == before + LIQUIDITY
        assert engine.get_position("m1", t).claimed

        with pytest.raises(AlreadyClaimed):
            engine.claim_winnings("m1", t)
        assert tokens.balance(t) == before + LIQUIDITY

    def test_proportional_payout(self):
        engine, tokens, clock, traders = fresh_system()
        a, b, loser = traders
        sa = quoted_buy(engine, "m1", a, 1, 1_000_000).shares
        sb = quoted_buy(engine, "m1", b, 1, 2_000_000).shares
        quoted_buy(engine, "m1", loser, 2, 5_000_000)
        close_and_resolve(engine, clock, 1)

        total = sa + sb
        assert engine.claim_winnings("m1", a).payout == LIQUIDITY * sa // total
        assert engine.claim_winnings("m1", b).payout == LIQUIDITY * sb // total
        with pytest.raises(NoWinningsToClaim):
            engine.claim_winnings("m1", loser)
        assert not engine.get_position("m1", loser).claimed

    def test_claim_before_resolution(self):
        engine, _, _, traders = fresh_system()
        quoted_buy(engine, "m1", traders[0], 0, 1_000_000)
        with pytest.raises(MarketNotResolved):
            engine.claim_winnings("m1", traders[0])

    def test_claim_without_position(self):
        engine, _, clock, traders = fresh_system()
        close_and_resolve(engine, clock, 0)
        with pytest.raises(PositionNotFound):
            engine.claim_winnings("m1", traders[0])

    def test_pool_payout_basis(self):
        """payout_basis="pool" pays out liquidity plus trading reserve."""
        engine, _, clock, traders = fresh_system(
            config=EngineConfig(payout_basis="pool"))
        t = traders[0]
        quoted_buy(engine, "m1", t, 0, 1_000_000)
        reserve = engine.get_market("m1").reserve
        assert reserve == 1_000_000 - 25_000

        close_and_resolve(engine, clock, 0)
        assert engine.claim_winnings("m1", t).payout == LIQUIDITY + reserve

    @pytest.mark.parametrize("basis,reserve_in_pot", [
        ("liquidity", 0),
        ("pool", 1_000_000 - 25_000),
    ])
    def test_fee_collection_leaves_pot_funded(self, basis, reserve_in_pot):
        """
        A round trip pays the buy fee back out through the curve, so the
        fee pool holds more than the vault can spare. Collection stops at
        the surplus and the winner still gets paid.
        """
        engine, tokens, clock, traders = fresh_system(
            config=EngineConfig(payout_basis=basis))
        a, b = traders[0], traders[1]
        bought = quoted_buy(engine, "m1", a, 1, 1_000_000_000)
        sold = engine.sell("m1", a, 1, bought.shares,
                           engine.quote_sell("m1", 1, bought.shares))
        won = quoted_buy(engine, "m1", b, 0, 1_000_000)
        assert engine.get_market("m1").reserve == won.amount - won.fee

        fees = engine.get_fee_pool().total_fees
        assert fees == bought.fee + sold.fee + won.fee
        surplus = tokens.balance("vault") - LIQUIDITY - reserve_in_pot
        assert 0 < surplus < fees
        assert engine.collectable_fees() == surplus

        with pytest.raises(InsufficientLiquidity):
            engine.collect_fees(ADMIN, fees)
        assert engine.get_fee_pool().total_fees == fees

        engine.collect_fees(ADMIN, surplus)
        close_and_resolve(engine, clock, 0)
        assert engine.claim_winnings("m1", b).payout == LIQUIDITY + reserve_in_pot
        assert tokens.balance("vault") == 0
        assert engine.collectable_fees() == 0

    def test_claims_release_their_share_of_the_pot(self):
        engine, _, clock, traders = fresh_system()
        a, b = traders[0], traders[1]
        quoted_buy(engine, "m1", a, 0, 1_000_000)
        quoted_buy(engine, "m1", b, 0, 1_000_000)
        close_and_resolve(engine, clock, 0)

        paid = engine.claim_winnings("m1", a).payout
        m = engine.get_market("m1")
        assert m.total_claimed == paid
        assert engine.outstanding(m) == LIQUIDITY - paid

    def test_failed_payout_transfer_keeps_claim_open(self):
        engine, tokens, clock, traders = fresh_system()
        t = traders[0]
        quoted_buy(engine, "m1", t, 0, 1_000_000)
        close_and_resolve(engine, clock, 0)
        engine.vault_authority = "someone-else"

        with pytest.raises(TransferFailed):
            engine.claim_winnings("m1", t)
        assert not engine.get_position("m1", t).claimed
        assert engine.get_market("m1").total_claimed == 0


# ---------------------------------------------------------------------------
# Concurrency and store isolation
# ---------------------------------------------------------------------------

class TestConcurrency:

    def test_parallel_markets_share_fee_pool(self):
        engine, _, _, traders = fresh_system(n_traders=4)
        ids = ["m1"]
        for n in range(2, 5):
            engine.create_market(ADMIN, f"m{n}", "q?", ["a", "b"],
                                 START + 2 * DAY, LIQUIDITY)
            ids.append(f"m{n}")

        fees = []
        fees_lock = threading.Lock()

        def trade(market_id, trader):
            for k in range(10):
                r = quoted_buy(engine, market_id, trader, k % 2, 1_000_000)
                with fees_lock:
                    fees.append(r.fee)

        with ThreadPoolExecutor(max_workers=4) as pool:
            list(pool.map(trade, ids, traders))

        assert engine.get_fee_pool().total_fees == sum(fees)
        for market_id, trader in zip(ids, traders):
            m = engine.get_market(market_id)
            assert m.total_shares == engine.get_position(market_id, trader).shares

    def test_money_is_conserved(self):
        engine, tokens, clock, traders = fresh_system()
        bought = quoted_buy(engine, "m1", traders[0], 0, 50_000_000)
        engine.sell("m1", traders[0], 0, bought.shares // 2,
                    engine.quote_sell("m1", 0, bought.shares // 2))
        close_and_resolve(engine, clock, 0)
        engine.claim_winnings("m1", traders[0])
        assert sum(tokens.balances.values()) == tokens.total_minted()

    def test_store_hands_out_copies(self):
        engine, _, _, _ = fresh_system()
        m = engine.get_market("m1")
        m.total_shares[0] = 123
        m.status = "resolved"
        fresh = engine.get_market("m1")
        assert fresh.total_shares == [0, 0, 0]
        assert fresh.status == "open"
