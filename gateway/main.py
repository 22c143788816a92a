# gateway/main.py
from datetime import datetime, timezone
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from gateway.core.config import Settings, settings as default_settings
from gateway.core.errors import GatewayError
from gateway.api.endpoints import sessions, tools, vault
from gateway.services.price_feed import PriceFeed
from gateway.services.sessions import SessionStore
from gateway.services.settlement import SettlementExecutor
from gateway.x402 import audit
from gateway.x402.gate import VERIFICATION_SETTLEMENT, PaymentGate
from gateway.x402.middleware import X402Middleware
from gateway.x402.models import X_PAYMENT_HEADER, X_PAYMENT_REQUIRED_HEADER, X_PAYMENT_RESPONSE_HEADER
from gateway.x402.pricing import PricingTable
from gateway.x402.receipts import ReceiptLedger
from gateway.x402.store import create_payment_store
from gateway.x402.verifier import LedgerVerifier
import logging

# Configure basic logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def build_gate(settings: Settings, executor: SettlementExecutor) -> PaymentGate:
    """Wire the payment gate from settings."""
    ledger_verifier = None
    if settings.X402_VERIFICATION_MODE == VERIFICATION_SETTLEMENT:
        # The executor's RPC client is created lazily, so build the verifier
        # around a client only when settlement checks are actually on.
        ledger_verifier = LedgerVerifier(executor.rpc_client, settings.USDC_DECIMALS)

    return PaymentGate(
        pricing=PricingTable(settings.X402_TOOL_PRICING),
        store=create_payment_store(settings.X402_PAYMENT_STORE, settings.X402_PAYMENT_DB_PATH),
        receipts=ReceiptLedger(settings.X402_RECEIPT_LOG_PATH),
        network=settings.X402_NETWORK,
        token_mint=settings.X402_TOKEN_MINT,
        recipient=settings.recipient,
        ttl_seconds=settings.X402_REQUIREMENT_TTL_SECONDS,
        verification_mode=settings.X402_VERIFICATION_MODE,
        ledger_verifier=ledger_verifier,
    )


def create_app(
    settings: Optional[Settings] = None,
    executor: Optional[SettlementExecutor] = None,
    gate: Optional[PaymentGate] = None,
) -> FastAPI:
    """
    Build the FastAPI application.

    ``executor`` and ``gate`` may be injected (tests pass mocked RPC clients
    and clocks); otherwise both are built from ``settings``.
    """
    settings = settings or default_settings
    audit.configure_audit_log(settings.X402_AUDIT_LOG_PATH)

    price_feed = executor.price_feed if executor else PriceFeed(
        url=settings.PRICE_FEED_URL,
        fallback_usd=settings.PRICE_FALLBACK_USD,
        cache_ttl_seconds=settings.PRICE_CACHE_TTL_SECONDS,
    )
    executor = executor or SettlementExecutor(settings, price_feed=price_feed)
    gate = gate or build_gate(settings, executor)

    app = FastAPI(title=settings.PROJECT_NAME)
    app.state.settings = settings
    app.state.price_feed = price_feed
    app.state.executor = executor
    app.state.gate = gate
    app.state.sessions = SessionStore()

    app.include_router(tools.router, prefix="/tools", tags=["tools"])
    app.include_router(vault.router, tags=["vault"])
    app.include_router(sessions.router, prefix="/sessions", tags=["sessions"])

    # Added first so CORS wraps the payment gate and 402s carry CORS headers.
    app.add_middleware(X402Middleware, gate=gate, enabled=settings.X402_ENABLED)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", X_PAYMENT_HEADER],
        expose_headers=[X_PAYMENT_REQUIRED_HEADER, X_PAYMENT_RESPONSE_HEADER],
    )

    @app.exception_handler(GatewayError)
    async def gateway_error_handler(request: Request, exc: GatewayError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc.error}")
        content = {"error": exc.error}
        signature = getattr(exc, "signature", None)
        if signature:
            content["txSignature"] = signature
        return JSONResponse(status_code=exc.status_code, content=content)

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        errors = exc.errors()
        first = errors[0] if errors else {}
        field = ".".join(str(part) for part in first.get("loc", ())[1:])
        message = first.get("msg", "Invalid request")
        return JSONResponse(
            status_code=400,
            content={"error": f"{field}: {message}" if field else message},
        )

    @app.get("/", summary="Health Check", tags=["default"])
    @app.get("/health", summary="Health Check", tags=["default"])
    def read_root():
        """ Basic health check endpoint. """
        return {
            "status": "ok",
            "service": settings.PROJECT_NAME,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "x402": {
                "enabled": settings.X402_ENABLED,
                "network": settings.X402_NETWORK,
                "verificationMode": settings.X402_VERIFICATION_MODE,
            },
        }

    logger.info(
        f"x402: Payment gate {'enabled' if settings.X402_ENABLED else 'disabled'} "
        f"on {settings.X402_NETWORK}, verification mode: {settings.X402_VERIFICATION_MODE}"
    )
    return app


app = create_app()
