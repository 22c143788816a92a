# gateway/x402/models.py
"""
Wire models for the x402-style pay-per-call handshake.

Field names are camelCase because they travel verbatim in the
X-Payment-Required / X-Payment / X-Payment-Response headers.
"""
import json
from decimal import Decimal, InvalidOperation
from typing import Literal, Optional

import base58
from pydantic import BaseModel, ConfigDict, Field, field_validator
from solders.pubkey import Pubkey

X_PAYMENT_REQUIRED_HEADER = "X-Payment-Required"
X_PAYMENT_HEADER = "X-Payment"
X_PAYMENT_RESPONSE_HEADER = "X-Payment-Response"

ED25519_SIGNATURE_LENGTH = 64


def validate_decimal_string(value: str) -> str:
    """Ensure a decimal amount string is a positive finite number."""
    try:
        amount = Decimal(value)
    except (InvalidOperation, TypeError):
        raise ValueError(f"Invalid decimal amount: {value!r}")
    if not amount.is_finite() or amount <= 0:
        raise ValueError(f"Amount must be a positive number: {value!r}")
    return value


def validate_pubkey_string(value: str) -> str:
    """Ensure a string is a valid base58 ed25519 public key."""
    try:
        Pubkey.from_string(value)
    except ValueError:
        raise ValueError(f"Invalid public key: {value!r}")
    return value


class PaymentRequirements(BaseModel):
    """Single-use challenge issued for a priced tool call."""
    paymentId: str = Field(..., description="UUID identifying this requirement.")
    amount: str = Field(..., description="Price as a decimal string, in token units.")
    tokenMint: str = Field(..., description="Mint of the token to pay with.")
    recipient: str = Field(..., description="Merchant wallet receiving the payment.")
    network: Literal["devnet", "mainnet"]
    expiresAt: int = Field(..., description="Expiry as epoch milliseconds.")
    tool: str = Field(..., description="Tool this requirement unlocks.")

    @field_validator("amount")
    @classmethod
    def amount_must_be_positive(cls, value: str) -> str:
        return validate_decimal_string(value)

    def to_header(self) -> str:
        return json.dumps(self.model_dump(), separators=(",", ":"))


class PaymentProof(BaseModel):
    """Signed attestation redeeming a PaymentRequirements record."""
    model_config = ConfigDict(extra="ignore")

    paymentId: str = Field(..., min_length=1)
    signature: str = Field(..., description="Detached ed25519 signature, base58.")
    payer: str = Field(..., description="Public key of the signer, base58.")
    timestamp: int = Field(..., description="Epoch ms embedded in the signed payload.")
    txSignature: Optional[str] = Field(
        None, description="On-chain transfer signature (settlement verification only)."
    )

    @field_validator("payer")
    @classmethod
    def payer_must_be_pubkey(cls, value: str) -> str:
        return validate_pubkey_string(value)

    @field_validator("signature")
    @classmethod
    def signature_must_decode(cls, value: str) -> str:
        try:
            raw = base58.b58decode(value)
        except ValueError:
            raise ValueError("Signature is not valid base58")
        if len(raw) != ED25519_SIGNATURE_LENGTH:
            raise ValueError(f"Signature must be {ED25519_SIGNATURE_LENGTH} bytes, got {len(raw)}")
        return value

    def to_header(self) -> str:
        return json.dumps(self.model_dump(exclude_none=True), separators=(",", ":"))


class PaymentReceipt(BaseModel):
    """Settled record of an accepted payment. Never mutated once written."""
    model_config = ConfigDict(frozen=True)

    paymentId: str
    amount: str
    tokenMint: str
    timestamp: int
    tool: str
    signature: str
    payer: Optional[str] = None
    txSignature: Optional[str] = None


def canonical_payload(payment_id: str, amount: str, token_mint: str, timestamp: int) -> bytes:
    """
    Bytes the allowance wallet signs and the gate verifies.

    Compact JSON with a fixed key order, so both sides serialize identically.
    """
    payload = {
        "paymentId": payment_id,
        "amount": amount,
        "tokenMint": token_mint,
        "timestamp": timestamp,
    }
    return json.dumps(payload, separators=(",", ":"), ensure_ascii=False).encode("utf-8")
