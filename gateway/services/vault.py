# gateway/services/vault.py
"""
Pooled vault bookkeeping: aggregate deposits and per-owner positions with
simple-interest yield accrual.

Mirrors the on-chain vault program's accounts:
- VaultState: admin, APY in basis points, total deposited (lamports)
- Position: owner, deposited amount, accrual start time, accrued yield

Positions change only through record_deposit / record_withdraw, which the
Settlement Executor calls after the matching transfer is confirmed.
"""
import logging
import threading
import time
from dataclasses import dataclass, replace
from typing import Callable, Dict, Optional, Set

from gateway.core.errors import InsufficientFunds, ValidationError

logger = logging.getLogger(__name__)

SECONDS_PER_YEAR = 31_536_000
BPS_DENOMINATOR = 10_000
LAMPORTS_PER_SOL = 1_000_000_000


def calculate_yield(amount: int, apy_bps: int, start_time: int, end_time: int) -> int:
    """
    Yield earned by ``amount`` between two unix timestamps.

    amount * apy_bps * elapsed / (10_000 * seconds_per_year), rounded down.
    """
    elapsed = end_time - start_time
    if elapsed <= 0:
        return 0
    return (amount * apy_bps * elapsed) // (BPS_DENOMINATOR * SECONDS_PER_YEAR)


@dataclass
class VaultState:
    admin: str
    apyBps: int
    totalDeposited: int = 0


@dataclass
class Position:
    owner: str
    amount: int = 0
    startTime: int = 0
    accruedYield: int = 0


class VaultLedger:
    def __init__(self, admin: str, apy_bps: int, clock: Callable[[], float] = time.time):
        self.state = VaultState(admin=admin, apyBps=apy_bps)
        self._positions: Dict[str, Position] = {}
        self._deposit_signatures: Set[str] = set()
        self._lock = threading.Lock()
        self._clock = clock

    def _now(self, now: Optional[int]) -> int:
        return int(now if now is not None else self._clock())

    def get_position(self, owner: str) -> Optional[Position]:
        with self._lock:
            position = self._positions.get(owner)
            return replace(position) if position else None

    def pending_yield(self, owner: str, now: Optional[int] = None) -> int:
        """Accrued plus not-yet-accrued yield for an owner."""
        now = self._now(now)
        with self._lock:
            position = self._positions.get(owner)
            if position is None:
                return 0
            return position.accruedYield + calculate_yield(
                position.amount, self.state.apyBps, position.startTime, now
            )

    def record_deposit(
        self,
        owner: str,
        amount: int,
        tx_signature: Optional[str] = None,
        now: Optional[int] = None
    ) -> Position:
        """
        Add a confirmed deposit to the owner's position.

        Raises:
            ValidationError: If the deposit transaction was already credited
        """
        if amount <= 0:
            raise ValueError("Deposit amount must be positive")
        now = self._now(now)
        with self._lock:
            if tx_signature is not None:
                if tx_signature in self._deposit_signatures:
                    raise ValidationError("Deposit transaction already credited")
                self._deposit_signatures.add(tx_signature)
            position = self._positions.setdefault(owner, Position(owner=owner))
            if position.amount > 0:
                position.accruedYield += calculate_yield(
                    position.amount, self.state.apyBps, position.startTime, now
                )
            position.startTime = now
            position.amount += amount
            self.state.totalDeposited += amount
            logger.info(f"Vault deposit: {owner} +{amount} lamports (position {position.amount})")
            return replace(position)

    def preview_withdraw(self, owner: str, amount: int, now: Optional[int] = None) -> int:
        """
        Lamports paid out for withdrawing ``amount``: principal plus all yield.

        Raises:
            InsufficientFunds: If the position holds less than ``amount``
        """
        if amount <= 0:
            raise ValueError("Withdraw amount must be positive")
        position = self.get_position(owner)
        if position is None or position.amount < amount:
            raise InsufficientFunds("Insufficient funds in vault position")
        return amount + self.pending_yield(owner, now)

    def record_withdraw(self, owner: str, amount: int, now: Optional[int] = None) -> Position:
        """Apply a confirmed withdrawal. Accrued yield is paid out and reset."""
        now = self._now(now)
        with self._lock:
            position = self._positions.get(owner)
            if position is None or position.amount < amount:
                raise InsufficientFunds("Insufficient funds in vault position")
            position.amount -= amount
            position.accruedYield = 0
            position.startTime = now
            self.state.totalDeposited -= amount
            logger.info(f"Vault withdraw: {owner} -{amount} lamports (position {position.amount})")
            return replace(position)
