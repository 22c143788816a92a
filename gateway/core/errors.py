# gateway/core/errors.py
"""
Error taxonomy for the gateway.

Every error carries the HTTP status it maps to and a user-facing message.
The FastAPI app renders them as ``{"error": <message>}`` (see gateway/main.py).

- ValidationError: malformed body or fields, not retried
- PaymentRequired: no proof presented, client must pay and retry
- PaymentInvalid: bad signature / expired / consumed, restart the handshake
- ToolNotFound: unknown tool name
- InsufficientFunds: fatal for the current attempt
- UpstreamUnavailable: price feed or RPC down
- ConfigurationMissing: absent secret or key, operator-facing
- TransactionUnconfirmed: submitted but not confirmed in time
"""
from typing import Optional


class GatewayError(Exception):
    status_code: int = 500
    default_message: str = "Internal server error"

    def __init__(self, message: Optional[str] = None):
        self.error = message or self.default_message
        super().__init__(self.error)


class ValidationError(GatewayError):
    status_code = 400
    default_message = "Invalid request"


class PaymentRequired(GatewayError):
    status_code = 402
    default_message = "Payment required"


class PaymentInvalid(GatewayError):
    status_code = 402
    default_message = "Invalid payment proof"


class ToolNotFound(GatewayError):
    status_code = 404
    default_message = "Unknown tool"


class InsufficientFunds(GatewayError):
    status_code = 400
    default_message = "Insufficient vault balance"


class UpstreamUnavailable(GatewayError):
    status_code = 502
    default_message = "Upstream service unavailable"


class ConfigurationMissing(GatewayError):
    status_code = 503
    default_message = "Service not configured"


class TransactionUnconfirmed(GatewayError):
    status_code = 504
    default_message = "Transaction not confirmed"

    def __init__(self, message: Optional[str] = None, signature: Optional[str] = None):
        super().__init__(message)
        self.signature = signature
