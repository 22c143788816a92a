# gateway/api/endpoints/tools.py
from typing import Any, Dict, Optional
from fastapi import APIRouter, Body, Request
import logging

from gateway.core.errors import GatewayError
from gateway.tools.registry import TOOL_HANDLERS, ToolContext, dispatch
from gateway.api.models.tools import ToolInfo, ToolListResponse, ToolResponse

logger = logging.getLogger(__name__)

router = APIRouter()


def get_tool_context(request: Request) -> ToolContext:
    state = request.app.state
    return ToolContext(settings=state.settings, executor=state.executor, price_feed=state.price_feed)


@router.get("", response_model=ToolListResponse)
async def list_tools(request: Request) -> ToolListResponse:
    """
    List the available tools with their per-call price.

    Tools absent from the price table are free and have no price.
    """
    pricing = request.app.state.gate.pricing
    token_mint = request.app.state.settings.X402_TOKEN_MINT
    tools = []
    for name in sorted(TOOL_HANDLERS):
        price = pricing.price_for(name)
        tools.append(ToolInfo(name=name, price=price, tokenMint=token_mint if price else None))
    return ToolListResponse(tools=tools)


@router.post("/{tool_name}", response_model=ToolResponse)
async def invoke_tool(
    tool_name: str,
    request: Request,
    body: Optional[Dict[str, Any]] = Body(None),
) -> ToolResponse:
    """
    Invoke a tool.

    Priced tools only reach this handler after the payment middleware has
    redeemed a valid X-Payment proof.

    Raises:
        ToolNotFound: 404 for unknown tools
        ValidationError: 400 for bad tool input
    """
    try:
        result = await dispatch(tool_name, body or {}, get_tool_context(request))
        return ToolResponse(tool=tool_name, result=result)

    except GatewayError:
        raise
    except Exception as e:
        logger.error(f"Unexpected error in tool {tool_name}: {e}", exc_info=True)
        raise GatewayError("An unexpected error occurred")
