# gateway/x402/gate.py
"""
Payment requirement issuance and proof redemption.

PaymentGate holds everything the pay-per-call handshake needs: the price
table, the single-use store, the receipt ledger and the verification policy.
It is built once at startup from Settings and shared by every request.

Flow for a priced tool:
1. No proof: issue() stores a fresh ISSUED requirement and the caller
   answers 402 with it.
2. Proof: redeem() validates structure, checks the signature against the
   stored requirement, checks the requirement is still ISSUED and
   unexpired, optionally confirms the transfer on the ledger, then
   atomically consumes it and writes a receipt.
"""
import logging
import time
import uuid
from typing import Callable, Dict, Optional

from gateway.core.errors import PaymentInvalid, PaymentRequired
from gateway.x402 import audit
from gateway.x402.models import PaymentReceipt, PaymentRequirements
from gateway.x402.pricing import PricingTable
from gateway.x402.receipts import ReceiptLedger
from gateway.x402.store import ConsumeOutcome, PaymentStore
from gateway.x402.verifier import LedgerVerifier, decode_payment_header, verify_signature

logger = logging.getLogger(__name__)

VERIFICATION_SIGNATURE = "signature"
VERIFICATION_SETTLEMENT = "settlement"

INVALID_PROOF = "Invalid payment proof"
PAYMENT_REQUIRED = PaymentRequired.default_message
PAYMENT_NOT_SETTLED = "Payment not settled"


def now_ms() -> int:
    return int(time.time() * 1000)


class PaymentRejected(PaymentInvalid):
    """A proof was presented and refused. ``reason`` is for logs and clients."""

    def __init__(self, message: str, reason: str):
        super().__init__(message)
        self.reason = reason


class PaymentGate:
    def __init__(
        self,
        pricing: PricingTable,
        store: PaymentStore,
        receipts: ReceiptLedger,
        network: str,
        token_mint: str,
        recipient: str,
        ttl_seconds: int = 60,
        verification_mode: str = VERIFICATION_SIGNATURE,
        ledger_verifier: Optional[LedgerVerifier] = None,
        clock: Callable[[], int] = now_ms,
    ):
        if verification_mode == VERIFICATION_SETTLEMENT and ledger_verifier is None:
            raise ValueError("Settlement verification requires a ledger verifier")
        self.pricing = pricing
        self.store = store
        self.receipts = receipts
        self.network = network
        self.token_mint = token_mint
        self.recipient = recipient
        self.ttl_seconds = ttl_seconds
        self.verification_mode = verification_mode
        self.ledger_verifier = ledger_verifier
        self.clock = clock

    def is_priced(self, tool: str) -> bool:
        return self.pricing.is_priced(tool)

    def issue(self, tool: str) -> PaymentRequirements:
        """Create and store a single-use requirement for a priced tool."""
        price = self.pricing.price_for(tool)
        if price is None:
            raise ValueError(f"Tool is not priced: {tool}")

        now = self.clock()
        ttl_ms = self.ttl_seconds * 1000
        # Records stay one extra TTL after expiry so late proofs get a precise reason.
        self.store.purge_expired(now - ttl_ms)

        requirements = PaymentRequirements(
            paymentId=str(uuid.uuid4()),
            amount=price,
            tokenMint=self.token_mint,
            recipient=self.recipient,
            network=self.network,
            expiresAt=now + ttl_ms,
            tool=tool,
        )
        self.store.issue(requirements)
        audit.log_requirement_issued(
            requirements.paymentId, tool, requirements.amount, requirements.expiresAt
        )
        logger.info(f"x402: Issued payment {requirements.paymentId} for {tool} ({price})")
        return requirements

    async def redeem(self, tool: str, header_value: str) -> Dict[str, object]:
        """
        Verify and consume the proof in an X-Payment header.

        Returns:
            The settlement confirmation for the X-Payment-Response header

        Raises:
            PaymentRejected: If the proof is malformed, fails verification, or
                references a requirement that is unknown, expired or consumed
            UpstreamUnavailable: If settlement verification cannot reach the ledger
        """
        proof = decode_payment_header(header_value)
        if proof is None:
            audit.log_payment_rejected("malformed proof")
            raise PaymentRejected(INVALID_PROOF, "malformed proof")

        audit.log_payment_received(proof.paymentId, proof.payer)

        record = self.store.get(proof.paymentId)
        if record is None:
            self._reject(PAYMENT_REQUIRED, "unknown payment id", proof.paymentId, proof.payer)

        requirements = record.requirements
        if requirements.tool != tool:
            self._reject(INVALID_PROOF, "payment issued for another tool", proof.paymentId, proof.payer)

        if not verify_signature(proof, requirements):
            self._reject(INVALID_PROOF, "signature does not verify", proof.paymentId, proof.payer)

        now = self.clock()
        if not record.is_redeemable(now):
            reason = "expired" if now >= requirements.expiresAt else "already consumed"
            self._reject(PAYMENT_REQUIRED, reason, proof.paymentId, proof.payer)

        if self.verification_mode == VERIFICATION_SETTLEMENT:
            failure = await self.ledger_verifier.confirm_transfer(proof, requirements)
            if failure is not None:
                self._reject(PAYMENT_NOT_SETTLED, failure, proof.paymentId, proof.payer)

        # Single winner per paymentId; anything between get() and here may
        # have raced with another request.
        outcome = self.store.consume(proof.paymentId, self.clock())
        if outcome is not ConsumeOutcome.CONSUMED:
            self._reject(PAYMENT_REQUIRED, outcome.value, proof.paymentId, proof.payer)

        settled_at = self.clock()
        receipt = PaymentReceipt(
            paymentId=requirements.paymentId,
            amount=requirements.amount,
            tokenMint=requirements.tokenMint,
            timestamp=settled_at,
            tool=tool,
            signature=proof.signature,
            payer=proof.payer,
            txSignature=proof.txSignature,
        )
        try:
            self.receipts.append(receipt)
        except OSError as e:
            logger.error(f"x402: Failed to record receipt for {receipt.paymentId}: {e}")
            audit.log_error("receipt_write_failed", str(e), {"payment_id": receipt.paymentId})

        audit.log_payment_consumed(requirements.paymentId, proof.payer, requirements.amount, tool)
        logger.info(f"x402: Payment {requirements.paymentId} settled by {proof.payer}")

        return {
            "paymentId": requirements.paymentId,
            "status": "settled",
            "timestamp": settled_at,
        }

    def _reject(self, message: str, reason: str, payment_id: str, payer: str) -> None:
        logger.warning(f"x402: Rejected payment {payment_id}: {reason}")
        audit.log_payment_rejected(reason, payment_id=payment_id, payer=payer)
        raise PaymentRejected(message, reason)
