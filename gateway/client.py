# gateway/client.py
"""
Client side of the pay-per-call handshake.

    client = PaymentClient("http://localhost:8000", wallet)
    result = client.call_tool("yield_agent.run", {"amount": "0.5"})

call_tool POSTs the tool request; on 402 it reads the requirement (the
X-Payment-Required header first, the response body second), signs it with
the Allowance Wallet and retries exactly once with an X-Payment header.
"""
import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

import requests
from pydantic import ValidationError as PydanticValidationError

from gateway.core.errors import PaymentInvalid
from gateway.wallet.allowance import AllowanceWallet
from gateway.x402.models import (
    X_PAYMENT_HEADER,
    X_PAYMENT_REQUIRED_HEADER,
    X_PAYMENT_RESPONSE_HEADER,
    PaymentRequirements,
)

logger = logging.getLogger(__name__)


@dataclass
class ToolCallResult:
    status_code: int
    body: Any
    payment_response: Optional[Dict[str, Any]] = None


def _json_body(response) -> Any:
    try:
        return response.json()
    except ValueError:
        return None


def parse_requirements(response) -> PaymentRequirements:
    """
    Extract the payment requirement from a 402 response.

    Raises:
        PaymentInvalid: If neither the header nor the body carries one
    """
    header = response.headers.get(X_PAYMENT_REQUIRED_HEADER)
    if header:
        try:
            return PaymentRequirements.model_validate_json(header)
        except PydanticValidationError as e:
            logger.warning(f"Unreadable {X_PAYMENT_REQUIRED_HEADER} header: {e.error_count()} error(s)")

    body = _json_body(response)
    if isinstance(body, dict) and isinstance(body.get("requirements"), dict):
        try:
            return PaymentRequirements.model_validate(body["requirements"])
        except PydanticValidationError as e:
            logger.warning(f"Unreadable requirements in 402 body: {e.error_count()} error(s)")

    raise PaymentInvalid("402 response carried no usable payment requirement")


class PaymentClient:
    """
    Calls gateway tools, paying with an Allowance Wallet when asked.

    ``session`` can be any object with a requests-style ``post`` (a
    requests.Session, or a FastAPI TestClient in tests).
    """

    def __init__(self, base_url: str, wallet: AllowanceWallet, session=None, timeout: float = 30):
        self.base_url = base_url.rstrip("/")
        self.wallet = wallet
        self.session = session or requests.Session()
        self.timeout = timeout

    def _post(self, url: str, body: Dict[str, Any], headers: Optional[Dict[str, str]] = None):
        kwargs = {"json": body, "headers": headers or {}}
        if isinstance(self.session, requests.Session):
            kwargs["timeout"] = self.timeout
        return self.session.post(url, **kwargs)

    def call_tool(self, name: str, body: Optional[Dict[str, Any]] = None) -> ToolCallResult:
        """
        Invoke a tool, paying for it if the gateway answers 402.

        Raises:
            PaymentInvalid: If the paid retry is refused with another 402
            WalletNotLoadedError: If payment is needed but the wallet is locked
        """
        url = f"{self.base_url}/tools/{name}"
        body = body or {}

        response = self._post(url, body)
        if response.status_code != 402:
            return ToolCallResult(status_code=response.status_code, body=_json_body(response))

        requirements = parse_requirements(response)
        proof = self.wallet.sign_payment(requirements)
        logger.info(f"Paying {requirements.amount} for {name} (payment {requirements.paymentId})")

        response = self._post(url, body, headers={X_PAYMENT_HEADER: proof.to_header()})
        if response.status_code == 402:
            refused = _json_body(response) or {}
            reason = refused.get("reason") if isinstance(refused, dict) else None
            logger.warning(f"Payment {requirements.paymentId} refused: {reason}")
            raise PaymentInvalid(
                refused.get("error", "Payment refused") if isinstance(refused, dict) else "Payment refused"
            )

        payment_response = None
        header = response.headers.get(X_PAYMENT_RESPONSE_HEADER)
        if header:
            try:
                payment_response = json.loads(header)
            except json.JSONDecodeError:
                logger.warning(f"Unreadable {X_PAYMENT_RESPONSE_HEADER} header")

        return ToolCallResult(
            status_code=response.status_code,
            body=_json_body(response),
            payment_response=payment_response,
        )
