# gateway/x402/middleware.py
"""
FastAPI middleware for x402 payment verification.

This module provides HTTP middleware that:
1. Intercepts POST /tools/{toolName}
2. Lets free tools (absent from the price table) straight through
3. Returns 402 Payment Required with a fresh requirement when no
   X-Payment header is present or the presented proof is refused
4. Redeems valid proofs through the PaymentGate and forwards the request
5. Adds the X-Payment-Response header to the forwarded response
"""
import json
import logging
from typing import Callable, Optional

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse

from gateway.core.errors import GatewayError, PaymentRequired, UpstreamUnavailable
from gateway.x402.gate import PaymentGate, PaymentRejected
from gateway.x402.models import (
    X_PAYMENT_HEADER,
    X_PAYMENT_REQUIRED_HEADER,
    X_PAYMENT_RESPONSE_HEADER,
    PaymentRequirements,
)

logger = logging.getLogger(__name__)

TOOLS_PREFIX = "/tools/"


def get_tool_name(method: str, path: str) -> Optional[str]:
    """Return the tool name if the request is a tool invocation."""
    if method != "POST" or not path.startswith(TOOLS_PREFIX):
        return None
    tool_name = path[len(TOOLS_PREFIX):].strip("/")
    if not tool_name or "/" in tool_name:
        return None
    return tool_name


def create_402_response(requirements: PaymentRequirements, error: GatewayError) -> JSONResponse:
    """
    Create an HTTP 402 Payment Required response.

    The requirements travel both in the X-Payment-Required header and in
    the body. Refused proofs also carry the refusal reason.
    """
    content = {
        "error": error.error,
        "requirements": requirements.model_dump(),
    }
    reason = getattr(error, "reason", None)
    if reason:
        content["reason"] = reason

    return JSONResponse(
        status_code=402,
        content=content,
        headers={X_PAYMENT_REQUIRED_HEADER: requirements.to_header()}
    )


class X402Middleware(BaseHTTPMiddleware):
    """
    x402 payment gate for tool calls.

    When ``enabled`` is false, all requests pass through unchanged.
    """

    def __init__(self, app, gate: PaymentGate, enabled: bool = True):
        super().__init__(app)
        self.gate = gate
        self.enabled = enabled

    async def dispatch(
        self,
        request: Request,
        call_next: Callable[[Request], Response]
    ) -> Response:
        if not self.enabled:
            return await call_next(request)

        tool_name = get_tool_name(request.method, request.url.path)
        if tool_name is None or not self.gate.is_priced(tool_name):
            return await call_next(request)

        payment_header = request.headers.get(X_PAYMENT_HEADER)

        if not payment_header:
            logger.info(f"x402: No X-Payment header for {tool_name}, returning 402")
            return create_402_response(self.gate.issue(tool_name), PaymentRequired())

        try:
            payment_response = await self.gate.redeem(tool_name, payment_header)
        except PaymentRejected as e:
            # The old id is never reused; the client restarts with this one.
            return create_402_response(self.gate.issue(tool_name), e)
        except UpstreamUnavailable as e:
            logger.error(f"x402: Payment verification unavailable: {e}")
            return JSONResponse(status_code=e.status_code, content={"error": e.error})

        response = await call_next(request)

        # Rebuild the response so the settlement header can be attached.
        body = b""
        async for chunk in response.body_iterator:
            body += chunk

        new_response = Response(
            content=body,
            status_code=response.status_code,
            headers=dict(response.headers),
            media_type=response.media_type
        )
        new_response.headers[X_PAYMENT_RESPONSE_HEADER] = json.dumps(
            payment_response, separators=(",", ":")
        )
        return new_response
