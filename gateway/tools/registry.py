# gateway/tools/registry.py
"""
Tool Dispatcher: maps tool names to handlers.

The payment gate runs before dispatch, so handlers never see an unpaid
request for a priced tool.
"""
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict

from gateway.core.config import Settings
from gateway.core.errors import ToolNotFound
from gateway.services.price_feed import PriceFeed
from gateway.services.settlement import SettlementExecutor
from gateway.tools import handlers

logger = logging.getLogger(__name__)


@dataclass
class ToolContext:
    settings: Settings
    executor: SettlementExecutor
    price_feed: PriceFeed


ToolHandler = Callable[[Dict[str, Any], ToolContext], Awaitable[Dict[str, Any]]]

TOOL_HANDLERS: Dict[str, ToolHandler] = {
    "yield_agent.run": handlers.yield_agent_run,
    "swap_agent.optimized": handlers.swap_agent_optimized,
    "tx_explain.deep": handlers.tx_explain_deep,
    "price.sol": handlers.price_sol,
}


async def dispatch(name: str, body: Dict[str, Any], ctx: ToolContext) -> Dict[str, Any]:
    """
    Run the named tool.

    Raises:
        ToolNotFound: If no handler is registered under ``name``
    """
    handler = TOOL_HANDLERS.get(name)
    if handler is None:
        raise ToolNotFound(f"Unknown tool: {name}")
    logger.info(f"Dispatching tool {name}")
    return await handler(body, ctx)
