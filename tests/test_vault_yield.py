# tests/test_vault_yield.py
"""
Unit tests for vault bookkeeping and yield accrual.
"""
import pytest

from gateway.core.errors import InsufficientFunds, ValidationError
from gateway.services.vault import SECONDS_PER_YEAR, VaultLedger, calculate_yield

OWNER = "owner-1"
SOL = 1_000_000_000


class TestCalculateYield:
    """Test the simple-interest yield formula."""

    def test_one_year_at_five_percent(self):
        """500 bps over a year is 5% of principal."""
        assert calculate_yield(SOL, 500, 0, SECONDS_PER_YEAR) == 50_000_000

    def test_thirty_days(self):
        """0.1 SOL for 30 days at 5% rounds down to whole lamports."""
        assert calculate_yield(100_000_000, 500, 0, 30 * 86_400) == 410_958

    def test_no_elapsed_time(self):
        """No time, no yield."""
        assert calculate_yield(SOL, 500, 100, 100) == 0

    def test_clock_going_backwards(self):
        """An end before the start yields nothing."""
        assert calculate_yield(SOL, 500, 100, 50) == 0


class TestVaultLedger:
    """Test positions and aggregate state."""

    def make_ledger(self):
        return VaultLedger(admin="admin", apy_bps=500, clock=lambda: 0)

    def test_first_deposit(self):
        """A first deposit opens a position starting now."""
        ledger = self.make_ledger()
        position = ledger.record_deposit(OWNER, SOL, now=10)
        assert position.amount == SOL
        assert position.startTime == 10
        assert position.accruedYield == 0
        assert ledger.state.totalDeposited == SOL

    def test_second_deposit_accrues(self):
        """Adding to a position banks the yield so far and restarts the clock."""
        ledger = self.make_ledger()
        ledger.record_deposit(OWNER, SOL, now=0)
        position = ledger.record_deposit(OWNER, SOL, now=SECONDS_PER_YEAR)
        assert position.amount == 2 * SOL
        assert position.accruedYield == 50_000_000
        assert position.startTime == SECONDS_PER_YEAR

    def test_pending_yield(self):
        """Pending yield includes banked and running accrual."""
        ledger = self.make_ledger()
        ledger.record_deposit(OWNER, SOL, now=0)
        ledger.record_deposit(OWNER, SOL, now=SECONDS_PER_YEAR)
        assert ledger.pending_yield(OWNER, now=2 * SECONDS_PER_YEAR) == 150_000_000

    def test_pending_yield_unknown_owner(self):
        """Owners without a position have no yield."""
        assert self.make_ledger().pending_yield("nobody", now=100) == 0

    def test_preview_withdraw(self):
        """Payout is principal plus all yield."""
        ledger = self.make_ledger()
        ledger.record_deposit(OWNER, SOL, now=0)
        assert ledger.preview_withdraw(OWNER, SOL // 2, now=SECONDS_PER_YEAR) == SOL // 2 + 50_000_000

    def test_preview_withdraw_too_much(self):
        """Withdrawing more than the position raises InsufficientFunds."""
        ledger = self.make_ledger()
        ledger.record_deposit(OWNER, SOL, now=0)
        with pytest.raises(InsufficientFunds):
            ledger.preview_withdraw(OWNER, 2 * SOL, now=0)

    def test_preview_withdraw_no_position(self):
        """Owners without a position cannot withdraw."""
        with pytest.raises(InsufficientFunds):
            self.make_ledger().preview_withdraw(OWNER, 1, now=0)

    def test_record_withdraw(self):
        """Withdraw reduces principal, pays out yield and restarts the clock."""
        ledger = self.make_ledger()
        ledger.record_deposit(OWNER, SOL, now=0)
        position = ledger.record_withdraw(OWNER, SOL // 4, now=SECONDS_PER_YEAR)
        assert position.amount == 3 * SOL // 4
        assert position.accruedYield == 0
        assert position.startTime == SECONDS_PER_YEAR
        assert ledger.state.totalDeposited == 3 * SOL // 4

    def test_duplicate_deposit_signature(self):
        """A deposit transaction cannot be credited twice."""
        ledger = self.make_ledger()
        ledger.record_deposit(OWNER, SOL, tx_signature="sig", now=0)
        with pytest.raises(ValidationError):
            ledger.record_deposit(OWNER, SOL, tx_signature="sig", now=0)
        assert ledger.get_position(OWNER).amount == SOL

    def test_get_position_is_a_copy(self):
        """Mutating a returned position does not change the ledger."""
        ledger = self.make_ledger()
        ledger.record_deposit(OWNER, SOL, now=0)
        ledger.get_position(OWNER).amount = 0
        assert ledger.get_position(OWNER).amount == SOL

    def test_non_positive_amounts(self):
        """Zero or negative deposits and withdrawals are programming errors."""
        ledger = self.make_ledger()
        with pytest.raises(ValueError):
            ledger.record_deposit(OWNER, 0)
        with pytest.raises(ValueError):
            ledger.preview_withdraw(OWNER, 0)
