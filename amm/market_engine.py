"""
Market engine. Manages markets, LS-LMSR trading, positions, fees, settlement.

The engine owns no records and no funds. It reads and writes records
through a RecordStore and moves value through a TokenTransfer service.
All traded value sits in one vault account controlled by the engine's
vault authority.

Every operation is validate-then-commit:
  1. read the records it needs (the store hands out copies)
  2. run every check and compute the new records, using checked u64
     arithmetic
  3. ask the token service to move funds
  4. write the new records back
A failure in 1-3 leaves every record exactly as it was. Nothing is rolled
back because nothing was written.

Concurrency: one lock per market id serialises trades on that market.
Locks exist only for markets that exist. The vault lock is always taken
after a market lock and held through every commit that moves vault funds
or changes the fee pool, so a vault balance read under it always matches
the stored records. Admin config writes take the admin lock (after the
vault lock when both are needed).

Trade flow:
  buy        cost -> shares (solver), slippage on shares, fee on cost
  buy_shares shares -> cost (quote), slippage on cost, fee on cost
  sell       shares -> proceeds (quote), slippage on proceeds, fee on proceeds

Settlement (claim_winnings): payout = pot * holder_winning // total_winning.
The pot is the market's pooled liquidity, or liquidity + reserve when the
engine runs with payout_basis="pool".

Vault solvency: the vault must always cover every outstanding pot (open
markets in full, resolved markets less what was already claimed). Fees
are only collectable out of the surplus above that. Sells pay curve
proceeds that can include an earlier buyer's fee, so the fee pool alone
can overstate what the vault can spare.
"""

import logging
import threading
import time
from typing import Callable, Optional

from amm.config import EngineConfig, MIN_LIQUIDITY_FLOOR
from amm.errors import (
    AlreadyClaimed, AlreadyInitialized, InsufficientLiquidity,
    InsufficientShares, InvalidAmount, InvalidInput, InvalidWinningOption,
    LiquidityTooLow, MarketAlreadyExists, MarketClosed,
    MarketDurationTooLong, MarketDurationTooShort, MarketEndTimeInPast,
    MarketNotFound, MarketNotResolved, MarketResolved, NoWinningsToClaim,
    NotInitialized, PositionNotFound, Unauthorized,
)
from amm.lmsr import (
    buy_cost, liquidity_param, price_bps, sell_cost, shares_for_cost,
)
from amm.models import (
    AdminConfig, Claim, FeePool, Market, Position, TradeReceipt,
    checked_add, checked_sub, saturating_sub,
)
from amm.store import RecordStore
from amm.token_ledger import TokenTransfer
from amm.validation import (
    calculate_fee, validate_fee_rate, validate_liquidity, validate_range,
    validate_slippage,
)


logger = logging.getLogger(__name__)


class MarketEngine:

    def __init__(self, store: RecordStore, tokens: TokenTransfer,
                 vault: str = "vault",
                 vault_authority: Optional[str] = None,
                 clock: Callable[[], float] = time.time,
                 config: Optional[EngineConfig] = None):
        self.store = store
        self.tokens = tokens
        self.vault = vault
        self.vault_authority = vault_authority or vault
        self.clock = clock
        self.config = config or EngineConfig()
        self._market_locks: dict[str, threading.Lock] = {}
        self._registry_lock = threading.Lock()
        self._vault_lock = threading.Lock()
        self._admin_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Admin
    # ------------------------------------------------------------------

    def initialize(self, admin: str, fee_rate_bps: int,
                   min_liquidity: int) -> AdminConfig:
        """Create the AdminConfig and FeePool records. Once per deployment."""
        validate_fee_rate(fee_rate_bps)
        if min_liquidity < MIN_LIQUIDITY_FLOOR:
            raise LiquidityTooLow(
                f"min_liquidity must be at least {MIN_LIQUIDITY_FLOOR}")

        with self._admin_lock:
            if self.store.get_config() is not None:
                raise AlreadyInitialized("engine already initialized")
            config = AdminConfig(admin=admin, fee_rate_bps=fee_rate_bps,
                                 min_liquidity=min_liquidity)
            self.store.put_config(config)
            self.store.put_fee_pool(FeePool(authority=admin))

        logger.info("initialized admin=%s fee_rate=%d bps min_liquidity=%d",
                    admin, fee_rate_bps, min_liquidity)
        return config

    def update_admin(self, caller: str, new_admin: str,
                     new_fee_rate_bps: int) -> AdminConfig:
        validate_fee_rate(new_fee_rate_bps)
        with self._admin_lock:
            config = self._require_admin(caller)
            config.admin = new_admin
            config.fee_rate_bps = new_fee_rate_bps
            self.store.put_config(config)

        logger.info("admin updated admin=%s fee_rate=%d bps",
                    new_admin, new_fee_rate_bps)
        return config

    def collect_fees(self, caller: str, amount: int) -> FeePool:
        """
        Withdraw accumulated fees from the vault to the admin.

        Never takes the vault below the outstanding settlement pots.
        """
        with self._vault_lock, self._admin_lock:
            config = self._require_admin(caller)
            pool = self._require_fee_pool()
            if not 0 < amount <= pool.total_fees:
                raise InvalidAmount(
                    f"can't collect {amount}, pool holds {pool.total_fees}")
            surplus = self._vault_surplus()
            if amount > surplus:
                raise InsufficientLiquidity(
                    f"can't collect {amount}, vault surplus is {surplus}",
                    amount=amount, surplus=surplus)

            pool.total_fees = checked_sub(pool.total_fees, amount)
            config.total_fees_collected = checked_add(
                config.total_fees_collected, amount)

            self.tokens.transfer(self.vault, caller, self.vault_authority,
                                 amount)
            self.store.put_fee_pool(pool)
            self.store.put_config(config)

        logger.info("fees collected amount=%d remaining=%d",
                    amount, pool.total_fees)
        return pool

    # ------------------------------------------------------------------
    # Market lifecycle
    # ------------------------------------------------------------------

    def create_market(self, caller: str, market_id: str, question: str,
                      outcomes: list[str], close_time: int,
                      liquidity: int) -> Market:
        """
        Open a market funded with `liquidity` from the caller.

        Outcome count and labels are fixed from here on.
        """
        cfg = self.config
        config = self._require_admin(caller)

        if not 0 < len(market_id) <= cfg.max_market_id_length:
            raise InvalidInput(
                f"market id must be 1-{cfg.max_market_id_length} characters")
        if len(question) > cfg.max_question_length:
            raise InvalidInput(
                f"question longer than {cfg.max_question_length} characters")
        if not cfg.min_outcomes <= len(outcomes) <= cfg.max_outcomes:
            raise InvalidInput(
                f"need {cfg.min_outcomes}-{cfg.max_outcomes} outcomes, "
                f"got {len(outcomes)}")
        for label in outcomes:
            if len(label) > cfg.max_outcome_length:
                raise InvalidInput(
                    f"outcome label longer than {cfg.max_outcome_length} "
                    f"characters")

        now = self._now()
        if close_time <= now:
            raise MarketEndTimeInPast(f"close time {close_time} not after {now}")
        duration = close_time - now
        if duration < cfg.min_market_duration:
            raise MarketDurationTooShort(
                f"duration {duration}s below {cfg.min_market_duration}s")
        if duration > cfg.max_market_duration:
            raise MarketDurationTooLong(
                f"duration {duration}s above {cfg.max_market_duration}s")
        validate_liquidity(liquidity, config.min_liquidity, cfg.max_liquidity)

        with self._market_lock(market_id, create=True):
            if self.store.get_market(market_id) is not None:
                raise MarketAlreadyExists(f"market {market_id} already exists")
            market = Market.new(market_id, question, outcomes, close_time,
                                liquidity, caller, now)
            with self._vault_lock:
                self.tokens.transfer(caller, self.vault, caller, liquidity)
                self.store.put_market(market)

        logger.info("market created id=%s outcomes=%d close_time=%d "
                    "liquidity=%d", market_id, len(outcomes), close_time,
                    liquidity)
        return market

    def resolve(self, caller: str, market_id: str,
                winning_outcome: int) -> Market:
        """Seal a closed market on its winning outcome. One-way."""
        self._require_admin(caller)
        with self._market_lock(market_id):
            market = self.get_market(market_id)
            if market.is_resolved:
                raise MarketResolved(f"market {market_id} is resolved")
            now = self._now()
            if not market.is_closed(now):
                raise MarketNotResolved(
                    f"market {market_id} trades until {market.close_time}")
            if not 0 <= winning_outcome < len(market.outcomes):
                raise InvalidWinningOption(
                    f"outcome {winning_outcome} out of range")

            market.status = "resolved"
            market.winning_outcome = winning_outcome
            market.resolved_at = now
            self.store.put_market(market)

        logger.info("market resolved id=%s winner=%d (%s)", market_id,
                    winning_outcome, market.outcomes[winning_outcome])
        return market

    # ------------------------------------------------------------------
    # Trading
    # ------------------------------------------------------------------

    def buy(self, market_id: str, buyer: str, outcome: int, cost: int,
            expected_shares: int) -> TradeReceipt:
        """
        Spend `cost` base units on outcome shares.

        The solver picks the share count; it must land within the slippage
        tolerance of expected_shares.
        """
        cfg = self.config
        with self._market_lock(market_id):
            market = self._get_tradable_market(market_id, outcome)
            validate_range("cost", cost, cfg.min_cost, cfg.max_cost)
            validate_range("expected shares", expected_shares,
                           cfg.min_shares, cfg.max_shares)

            b = liquidity_param(market.liquidity)
            shares = shares_for_cost(market.total_shares, outcome, cost, b)
            if shares == 0:
                raise InvalidInput(f"cost {cost} too small for any shares")
            validate_slippage(expected_shares, shares,
                              cfg.slippage_tolerance_bps)

            return self._commit_buy(market, buyer, outcome, shares, cost)

    def buy_shares(self, market_id: str, buyer: str, outcome: int,
                   shares: int, expected_cost: int) -> TradeReceipt:
        """Buy an exact share count; the quoted cost must match expected_cost."""
        cfg = self.config
        with self._market_lock(market_id):
            market = self._get_tradable_market(market_id, outcome)
            validate_range("shares", shares, cfg.min_shares, cfg.max_shares)

            b = liquidity_param(market.liquidity)
            cost = buy_cost(market.total_shares, outcome, shares, b)
            validate_range("cost", cost, cfg.min_cost, cfg.max_cost)
            validate_slippage(expected_cost, cost, cfg.slippage_tolerance_bps)

            return self._commit_buy(market, buyer, outcome, shares, cost)

    def sell(self, market_id: str, seller: str, outcome: int, shares: int,
             expected_cost: int) -> TradeReceipt:
        """
        Sell shares back to the market maker.

        The seller receives proceeds - fee. Cost basis drops by the gross
        proceeds, floored at zero.
        """
        cfg = self.config
        with self._market_lock(market_id):
            market = self._get_tradable_market(market_id, outcome)
            validate_range("shares", shares, cfg.min_shares, cfg.max_shares)

            position = self.store.get_position(market_id, seller)
            if position is None:
                raise PositionNotFound(
                    f"{seller} has no position in market {market_id}")
            held = position.shares[outcome]
            if held < shares:
                raise InsufficientShares(
                    f"{seller}: can't sell {shares} of outcome {outcome}, "
                    f"only holds {held}")

            b = liquidity_param(market.liquidity)
            proceeds = sell_cost(market.total_shares, outcome, shares, b)
            validate_slippage(expected_cost, proceeds,
                              cfg.slippage_tolerance_bps)

            config = self._require_config()
            fee = calculate_fee(proceeds, config.fee_rate_bps)
            net = proceeds - fee
            now = self._now()

            market.total_shares[outcome] = checked_sub(
                market.total_shares[outcome], shares)
            market.reserve = saturating_sub(market.reserve, proceeds)

            position.shares[outcome] = checked_sub(held, shares)
            position.total_cost = saturating_sub(position.total_cost, proceeds)
            position.total_fees_paid = checked_add(
                position.total_fees_paid, fee)
            position.updated_at = now

            with self._vault_lock:
                pool = self._require_fee_pool()
                pool.total_fees = checked_add(pool.total_fees, fee)

                self.tokens.transfer(self.vault, seller,
                                     self.vault_authority, net)
                self.store.put_market(market)
                self.store.put_position(position)
                self.store.put_fee_pool(pool)

        logger.info("sell market=%s holder=%s outcome=%d shares=%d "
                    "proceeds=%d fee=%d", market_id, seller, outcome, shares,
                    proceeds, fee)
        return TradeReceipt(market_id, seller, "sell", outcome, shares,
                            proceeds, fee, net, now)

    # ------------------------------------------------------------------
    # Liquidity
    # ------------------------------------------------------------------

    def add_liquidity(self, market_id: str, provider: str,
                      amount: int) -> Market:
        """Deepen an open market. A larger pool means a larger b."""
        cfg = self.config
        if not cfg.min_cost <= amount <= cfg.max_cost:
            raise InvalidAmount(
                f"amount must be {cfg.min_cost}-{cfg.max_cost}, got {amount}")

        with self._market_lock(market_id):
            market = self._get_tradable_market(market_id)
            new_liquidity = checked_add(market.liquidity, amount)
            validate_liquidity(new_liquidity, 0, cfg.max_liquidity)
            market.liquidity = new_liquidity

            with self._vault_lock:
                self.tokens.transfer(provider, self.vault, provider, amount)
                self.store.put_market(market)

        logger.info("liquidity added market=%s amount=%d total=%d",
                    market_id, amount, market.liquidity)
        return market

    def remove_liquidity(self, caller: str, market_id: str,
                         amount: int) -> Market:
        """Return pooled liquidity to the admin. Never below min_liquidity."""
        config = self._require_admin(caller)
        if amount <= 0:
            raise InvalidAmount(f"amount must be positive, got {amount}")

        with self._market_lock(market_id):
            market = self._get_tradable_market(market_id)
            if amount > market.liquidity or \
                    market.liquidity - amount < config.min_liquidity:
                raise InsufficientLiquidity(
                    f"market {market_id} holds {market.liquidity}, "
                    f"minimum {config.min_liquidity}")
            market.liquidity -= amount

            with self._vault_lock:
                self.tokens.transfer(self.vault, caller,
                                     self.vault_authority, amount)
                self.store.put_market(market)

        logger.info("liquidity removed market=%s amount=%d total=%d",
                    market_id, amount, market.liquidity)
        return market

    # ------------------------------------------------------------------
    # Settlement
    # ------------------------------------------------------------------

    def claim_winnings(self, market_id: str, holder: str) -> Claim:
        """Pay a holder's share of the pot. Exactly once per position."""
        with self._market_lock(market_id):
            market = self.get_market(market_id)
            if not market.is_resolved:
                raise MarketNotResolved(f"market {market_id} is not resolved")
            position = self.store.get_position(market_id, holder)
            if position is None:
                raise PositionNotFound(
                    f"{holder} has no position in market {market_id}")
            if position.claimed:
                raise AlreadyClaimed(
                    f"{holder} already claimed in market {market_id}")

            winner = market.winning_outcome
            winning_shares = position.shares[winner]
            if winning_shares == 0:
                raise NoWinningsToClaim(
                    f"{holder} holds no shares of outcome {winner}")
            payout = self.payout_for(market, winning_shares)
            if payout == 0:
                raise NoWinningsToClaim(f"payout for {holder} rounds to zero")

            now = self._now()
            position.claimed = True
            position.updated_at = now
            market.total_claimed = checked_add(market.total_claimed, payout)

            with self._vault_lock:
                self.tokens.transfer(self.vault, holder,
                                     self.vault_authority, payout)
                self.store.put_position(position)
                self.store.put_market(market)

        logger.info("winnings claimed market=%s holder=%s shares=%d payout=%d",
                    market_id, holder, winning_shares, payout)
        return Claim(market_id, holder, winner, winning_shares, payout, now)

    def payout_for(self, market: Market, winning_shares: int) -> int:
        """floor(pot * winning_shares / total winning shares), 0 if none."""
        total_winning = market.total_shares[market.winning_outcome]
        if total_winning == 0:
            return 0
        return self.pot(market) * winning_shares // total_winning

    def pot(self, market: Market) -> int:
        """Settlement pot under the configured payout basis."""
        if self.config.payout_basis == "pool":
            return market.liquidity + market.reserve
        return market.liquidity

    def outstanding(self, market: Market) -> int:
        """
        What the vault still owes this market's holders.

        Open markets owe their whole pot. Resolved markets owe the pot less
        what was claimed, or nothing when no one holds the winning outcome.
        """
        if not market.is_resolved:
            return self.pot(market)
        if market.total_shares[market.winning_outcome] == 0:
            return 0
        return saturating_sub(self.pot(market), market.total_claimed)

    def collectable_fees(self) -> int:
        """Fees the admin can withdraw right now."""
        with self._vault_lock:
            return min(self._require_fee_pool().total_fees,
                       self._vault_surplus())

    # ------------------------------------------------------------------
    # Queries and quotes
    # ------------------------------------------------------------------

    def get_market(self, market_id: str) -> Market:
        market = self.store.get_market(market_id)
        if market is None:
            raise MarketNotFound(f"market {market_id} not found")
        return market

    def get_position(self, market_id: str, holder: str) -> Position:
        position = self.store.get_position(market_id, holder)
        if position is None:
            raise PositionNotFound(
                f"{holder} has no position in market {market_id}")
        return position

    def get_config(self) -> AdminConfig:
        return self._require_config()

    def get_fee_pool(self) -> FeePool:
        return self._require_fee_pool()

    def market_prices(self, market_id: str) -> list[int]:
        """Price of every outcome in basis points."""
        market = self.get_market(market_id)
        b = liquidity_param(market.liquidity)
        return [price_bps(market.total_shares, i, b)
                for i in range(len(market.outcomes))]

    def quote_buy(self, market_id: str, outcome: int, cost: int) -> int:
        """Shares that `cost` would buy right now."""
        market = self.get_market(market_id)
        b = liquidity_param(market.liquidity)
        return shares_for_cost(market.total_shares, outcome, cost, b)

    def quote_buy_shares(self, market_id: str, outcome: int,
                         shares: int) -> int:
        market = self.get_market(market_id)
        b = liquidity_param(market.liquidity)
        return buy_cost(market.total_shares, outcome, shares, b)

    def quote_sell(self, market_id: str, outcome: int, shares: int) -> int:
        market = self.get_market(market_id)
        b = liquidity_param(market.liquidity)
        return sell_cost(market.total_shares, outcome, shares, b)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _commit_buy(self, market: Market, buyer: str, outcome: int,
                    shares: int, cost: int) -> TradeReceipt:
        """Shared tail of buy and buy_shares. Caller holds the market lock."""
        config = self._require_config()
        fee = calculate_fee(cost, config.fee_rate_bps)
        now = self._now()

        market.total_shares[outcome] = checked_add(
            market.total_shares[outcome], shares)
        market.reserve = checked_add(market.reserve, cost - fee)

        position = self.store.get_position(market.id, buyer)
        if position is None:
            position = Position.new(market.id, buyer, len(market.outcomes),
                                    now)
        position.shares[outcome] = checked_add(position.shares[outcome],
                                                shares)
        position.total_cost = checked_add(position.total_cost, cost)
        position.total_fees_paid = checked_add(position.total_fees_paid, fee)
        position.updated_at = now

        with self._vault_lock:
            pool = self._require_fee_pool()
            pool.total_fees = checked_add(pool.total_fees, fee)

            self.tokens.transfer(buyer, self.vault, buyer, cost)
            self.store.put_market(market)
            self.store.put_position(position)
            self.store.put_fee_pool(pool)

        logger.info("buy market=%s holder=%s outcome=%d shares=%d cost=%d "
                    "fee=%d", market.id, buyer, outcome, shares, cost, fee)
        return TradeReceipt(market.id, buyer, "buy", outcome, shares, cost,
                            fee, cost, now)

    def _get_tradable_market(self, market_id: str,
                             outcome: Optional[int] = None) -> Market:
        market = self.get_market(market_id)
        if market.is_resolved:
            raise MarketResolved(f"market {market_id} is resolved")
        if market.is_closed(self._now()):
            raise MarketClosed(
                f"market {market_id} closed at {market.close_time}")
        if outcome is not None and not 0 <= outcome < len(market.outcomes):
            raise InvalidInput(
                f"outcome index {outcome} out of range for "
                f"{len(market.outcomes)} outcomes")
        return market

    def _vault_surplus(self) -> int:
        """Vault balance above all outstanding pots. Needs the vault lock."""
        owed = sum(self.outstanding(m) for m in self.store.list_markets())
        return max(self.tokens.balance(self.vault) - owed, 0)

    def _market_lock(self, market_id: str,
                     create: bool = False) -> threading.Lock:
        """Lock for an existing market. create=True only from create_market."""
        with self._registry_lock:
            lock = self._market_locks.get(market_id)
            if lock is None:
                if not create and self.store.get_market(market_id) is None:
                    raise MarketNotFound(f"market {market_id} not found")
                lock = self._market_locks[market_id] = threading.Lock()
            return lock

    def _require_config(self) -> AdminConfig:
        config = self.store.get_config()
        if config is None:
            raise NotInitialized("engine not initialized")
        return config

    def _require_fee_pool(self) -> FeePool:
        pool = self.store.get_fee_pool()
        if pool is None:
            raise NotInitialized("engine not initialized")
        return pool

    def _require_admin(self, caller: str) -> AdminConfig:
        config = self._require_config()
        if caller != config.admin:
            raise Unauthorized(f"{caller} is not the admin")
        return config

    def _now(self) -> int:
        return int(self.clock())
