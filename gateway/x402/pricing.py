# gateway/x402/pricing.py
"""
Tool pricing for x402 payment responses.

Each premium tool has a fixed price, expressed as a decimal string in units
of the payment token (USDC). Tools absent from the table are free and pass
through the payment gate untouched.

The table comes from X402_TOOL_PRICING (JSON object in the environment) and
is handed to the gate at construction time.
"""
import logging
from decimal import Decimal
from typing import Dict, Mapping, Optional

from gateway.x402.models import validate_decimal_string

logger = logging.getLogger(__name__)


class PricingTable:
    """Immutable mapping of tool name to price."""

    def __init__(self, prices: Mapping[str, str]):
        checked: Dict[str, str] = {}
        for tool, price in prices.items():
            checked[tool] = validate_decimal_string(str(price))
        self._prices = checked

    def price_for(self, tool: str) -> Optional[str]:
        """Return the price for a tool, or None if the tool is free."""
        return self._prices.get(tool)

    def is_priced(self, tool: str) -> bool:
        return tool in self._prices

    def as_dict(self) -> Dict[str, str]:
        return dict(self._prices)


def to_base_units(amount: str, decimals: int) -> int:
    """
    Convert a decimal token amount to the token's smallest unit.

    USDC has 6 decimals, so "0.001" = 1,000 base units. Any precision beyond
    the token's decimals is truncated.
    """
    return int(Decimal(amount).scaleb(decimals))
