"""
Record store. Keyed get/put for markets, positions, and the two singletons.

The engine never decides where records live; it only talks to this
interface. InMemoryStore is the reference implementation used by the
HTTP app and the tests. It hands out and keeps deep copies, so a record
changes only when someone puts it back.
"""

import copy
import threading
from abc import ABC, abstractmethod
from typing import Optional

from amm.models import AdminConfig, FeePool, Market, Position


class RecordStore(ABC):

    @abstractmethod
    def get_market(self, market_id: str) -> Optional[Market]: ...

    @abstractmethod
    def put_market(self, market: Market) -> None: ...

    @abstractmethod
    def list_markets(self) -> list[Market]: ...

    @abstractmethod
    def get_position(self, market_id: str, holder: str) -> Optional[Position]: ...

    @abstractmethod
    def put_position(self, position: Position) -> None: ...

    @abstractmethod
    def get_config(self) -> Optional[AdminConfig]: ...

    @abstractmethod
    def put_config(self, config: AdminConfig) -> None: ...

    @abstractmethod
    def get_fee_pool(self) -> Optional[FeePool]: ...

    @abstractmethod
    def put_fee_pool(self, pool: FeePool) -> None: ...


class InMemoryStore(RecordStore):

    def __init__(self):
        self.markets: dict[str, Market] = {}
        self.positions: dict[tuple[str, str], Position] = {}
        self.config: Optional[AdminConfig] = None
        self.fee_pool: Optional[FeePool] = None
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Markets
    # ------------------------------------------------------------------

    def get_market(self, market_id: str) -> Optional[Market]:
        with self._lock:
            return copy.deepcopy(self.markets.get(market_id))

    def put_market(self, market: Market) -> None:
        with self._lock:
            self.markets[market.id] = copy.deepcopy(market)

    def list_markets(self) -> list[Market]:
        with self._lock:
            return [copy.deepcopy(m) for m in self.markets.values()]

    # ------------------------------------------------------------------
    # Positions
    # ------------------------------------------------------------------

    def get_position(self, market_id: str, holder: str) -> Optional[Position]:
        with self._lock:
            return copy.deepcopy(self.positions.get((market_id, holder)))

    def put_position(self, position: Position) -> None:
        with self._lock:
            key = (position.market_id, position.holder)
            self.positions[key] = copy.deepcopy(position)

    # ------------------------------------------------------------------
    # Singletons
    # ------------------------------------------------------------------

    def get_config(self) -> Optional[AdminConfig]:
        with self._lock:
            return copy.deepcopy(self.config)

    def put_config(self, config: AdminConfig) -> None:
        with self._lock:
            self.config = copy.deepcopy(config)

    def get_fee_pool(self) -> Optional[FeePool]:
        with self._lock:
            return copy.deepcopy(self.fee_pool)

    def put_fee_pool(self, pool: FeePool) -> None:
        with self._lock:
            self.fee_pool = copy.deepcopy(pool)
