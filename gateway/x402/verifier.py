# gateway/x402/verifier.py
"""
Payment proof verification.

Two checks are available:
1. Signature: the proof's ed25519 signature verifies for the claimed payer
   over the canonical payload rebuilt from the *stored* requirement.
2. Ledger: the referenced on-chain transaction is confirmed, credited the
   recipient at least ``amount`` of ``tokenMint``, and carries the paymentId
   as its memo.

Signature mode treats the proof as a capability token. Settlement mode runs
both checks and only lets the call through once value actually moved.
"""
import json
import logging
from typing import Any, Dict, List, Optional

from pydantic import ValidationError
from solders.pubkey import Pubkey
from solders.signature import Signature

from gateway.services.solana_rpc import fetch_parsed_transaction
from gateway.x402.models import PaymentProof, PaymentRequirements, canonical_payload
from gateway.x402.pricing import to_base_units

logger = logging.getLogger(__name__)

MEMO_PROGRAM_NAMES = ("spl-memo",)


def decode_payment_header(header_value: str) -> Optional[PaymentProof]:
    """
    Decode the X-Payment header into a PaymentProof.

    Args:
        header_value: Proof as a JSON object

    Returns:
        PaymentProof if structurally valid, None otherwise
    """
    try:
        payload = json.loads(header_value)
    except json.JSONDecodeError as e:
        logger.warning(f"Failed to parse X-Payment header JSON: {e}")
        return None

    if not isinstance(payload, dict):
        logger.warning("X-Payment header is not a JSON object")
        return None

    try:
        return PaymentProof.model_validate(payload)
    except ValidationError as e:
        logger.warning(f"Invalid X-Payment proof: {e.error_count()} validation error(s)")
        return None


def verify_signature(proof: PaymentProof, requirements: PaymentRequirements) -> bool:
    """Check the proof's signature against the stored requirement."""
    message = canonical_payload(
        requirements.paymentId,
        requirements.amount,
        requirements.tokenMint,
        proof.timestamp,
    )
    try:
        signature = Signature.from_string(proof.signature)
        payer = Pubkey.from_string(proof.payer)
    except ValueError:
        return False
    return signature.verify(payer, message)


def _token_amounts(balances: List[Dict[str, Any]], owner: str, mint: str) -> Dict[int, int]:
    amounts = {}
    for entry in balances or []:
        if entry.get("owner") == owner and entry.get("mint") == mint:
            amounts[entry["accountIndex"]] = int(entry["uiTokenAmount"]["amount"])
    return amounts


def recipient_credit(transaction: Dict[str, Any], recipient: str, token_mint: str) -> int:
    """Base units of ``token_mint`` credited to ``recipient`` by a parsed transaction."""
    meta = transaction.get("meta") or {}
    pre = _token_amounts(meta.get("preTokenBalances"), recipient, token_mint)
    post = _token_amounts(meta.get("postTokenBalances"), recipient, token_mint)
    return sum(post.values()) - sum(pre.values())


def transaction_memos(transaction: Dict[str, Any]) -> List[str]:
    message = (transaction.get("transaction") or {}).get("message") or {}
    memos = []
    for instruction in message.get("instructions", []):
        if instruction.get("program") in MEMO_PROGRAM_NAMES and isinstance(instruction.get("parsed"), str):
            memos.append(instruction["parsed"])
    return memos


class LedgerVerifier:
    """Confirms on the ledger that a payment was actually made."""

    def __init__(self, rpc_client, token_decimals: int):
        self.rpc_client = rpc_client
        self.token_decimals = token_decimals

    async def confirm_transfer(self, proof: PaymentProof, requirements: PaymentRequirements) -> Optional[str]:
        """
        Check the transfer backing a proof.

        Returns:
            None when the payment is settled, otherwise the reason it is not

        Raises:
            UpstreamUnavailable: If the RPC node cannot be reached
        """
        if not proof.txSignature:
            return "missing transaction signature"

        transaction = await fetch_parsed_transaction(self.rpc_client, proof.txSignature)
        if transaction is None:
            return "transaction not found"
        if (transaction.get("meta") or {}).get("err") is not None:
            return "transaction failed"

        if requirements.paymentId not in transaction_memos(transaction):
            return "transaction memo does not reference payment"

        required = to_base_units(requirements.amount, self.token_decimals)
        credited = recipient_credit(transaction, requirements.recipient, requirements.tokenMint)
        if credited < required:
            return f"recipient credited {credited} base units, {required} required"

        return None
