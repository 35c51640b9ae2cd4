"""
Token transfers. The engine's only way to move value.

The engine does NOT hold funds. It asks a TokenTransfer service to move
base units between accounts after it has computed (but not yet stored)
the ledger update. A TransferFailed aborts the whole operation.

InMemoryTokenLedger is the reference service: balances keyed by account
id, an owner per account (the only authority allowed to debit it), and an
append-only journal of every movement.

Invariant: sum(balances) == sum of all mint amounts.
"""

import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass

from amm.errors import InvalidAmount, TransferFailed


class TokenTransfer(ABC):

    @abstractmethod
    def transfer(self, source: str, destination: str, authority: str,
                 amount: int) -> None:
        """Move amount from source to destination, or raise TransferFailed."""

    @abstractmethod
    def balance(self, account: str) -> int:
        """Current balance of account, 0 if unknown."""


@dataclass(frozen=True)
class Transfer:
    """Journal entry. reason is "mint" or "transfer"."""
    id: int
    source: str | None
    destination: str
    authority: str | None
    amount: int
    reason: str


class InMemoryTokenLedger(TokenTransfer):

    def __init__(self):
        self.balances: dict[str, int] = {}
        self.owners: dict[str, str] = {}
        self.journal: list[Transfer] = []
        self._lock = threading.Lock()

    def open_account(self, account: str, owner: str | None = None) -> None:
        """Register an account. Owner defaults to the account id itself."""
        with self._lock:
            self.balances.setdefault(account, 0)
            self.owners.setdefault(account, owner or account)

    def balance(self, account: str) -> int:
        return self.balances.get(account, 0)

    # ------------------------------------------------------------------
    # Minting
    # ------------------------------------------------------------------

    def mint(self, account: str, amount: int) -> Transfer:
        """Create value from nothing. The only way money enters."""
        if amount <= 0:
            raise InvalidAmount(f"mint amount must be positive, got {amount}")
        self.open_account(account)
        with self._lock:
            self.balances[account] += amount
            entry = Transfer(len(self.journal) + 1, None, account, None,
                             amount, "mint")
            self.journal.append(entry)
        return entry

    # ------------------------------------------------------------------
    # Transfers
    # ------------------------------------------------------------------

    def transfer(self, source: str, destination: str, authority: str,
                 amount: int) -> None:
        with self._lock:
            if amount < 0:
                raise TransferFailed(f"negative transfer {amount}")
            if self.owners.get(source, source) != authority:
                raise TransferFailed(
                    f"{authority} may not debit account {source}",
                    source=source, authority=authority)
            available = self.balances.get(source, 0)
            if available < amount:
                raise TransferFailed(
                    f"account {source}: need {amount}, have {available}",
                    source=source, amount=amount, available=available)
            self.balances[source] = available - amount
            self.balances[destination] = self.balances.get(destination, 0) + amount
            self.owners.setdefault(destination, destination)
            self.journal.append(Transfer(
                len(self.journal) + 1, source, destination, authority,
                amount, "transfer"))

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def total_minted(self) -> int:
        return sum(t.amount for t in self.journal if t.reason == "mint")
