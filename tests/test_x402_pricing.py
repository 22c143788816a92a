# tests/test_x402_pricing.py
"""
Unit tests for the tool price table.
"""
import pytest

from gateway.core.config import DEFAULT_TOOL_PRICING
from gateway.x402.pricing import PricingTable, to_base_units


class TestPricingTable:
    """Test price lookups."""

    def test_default_prices(self):
        """The three premium tools cost 0.001 each."""
        table = PricingTable(DEFAULT_TOOL_PRICING)
        for tool in ("yield_agent.run", "swap_agent.optimized", "tx_explain.deep"):
            assert table.price_for(tool) == "0.001"
            assert table.is_priced(tool) is True

    def test_free_tool(self):
        """Tools absent from the table are free."""
        table = PricingTable(DEFAULT_TOOL_PRICING)
        assert table.price_for("price.sol") is None
        assert table.is_priced("price.sol") is False

    def test_as_dict_is_a_copy(self):
        """Mutating the exported dict does not change prices."""
        table = PricingTable({"a": "1"})
        table.as_dict()["a"] = "2"
        assert table.price_for("a") == "1"

    @pytest.mark.parametrize("price", ["0", "-0.5", "free", "Infinity"])
    def test_invalid_prices(self, price):
        """Prices must be positive finite decimals."""
        with pytest.raises(ValueError):
            PricingTable({"tool": price})


class TestToBaseUnits:
    """Test decimal to base-unit conversion."""

    def test_usdc(self):
        """0.001 USDC is 1000 base units."""
        assert to_base_units("0.001", 6) == 1000

    def test_truncates(self):
        """Precision past the token decimals is dropped."""
        assert to_base_units("0.0000019", 6) == 1

    def test_sol(self):
        """1.5 SOL is 1.5e9 lamports."""
        assert to_base_units("1.5", 9) == 1_500_000_000
