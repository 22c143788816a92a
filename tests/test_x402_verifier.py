# tests/test_x402_verifier.py
"""
Unit tests for payment proof verification.
"""
import asyncio
import json
from unittest.mock import AsyncMock, MagicMock

import pytest
from solders.keypair import Keypair
from solders.signature import Signature

from gateway.core.errors import UpstreamUnavailable
from gateway.x402.models import PaymentProof, PaymentRequirements, canonical_payload
from gateway.x402.verifier import (
    LedgerVerifier,
    decode_payment_header,
    recipient_credit,
    transaction_memos,
    verify_signature,
)

from conftest import parsed_tx_response, rpc_transport_error

MINT = "Gh9ZwEmdLJ8DscKNTkTqPbNwLNNBjuSzaG9Vp2KGtKJr"
RECIPIENT = str(Keypair().pubkey())
TX_SIG = str(Signature(bytes([9] * 64)))


def make_requirements(**overrides):
    data = {
        "paymentId": "c0ffee00-0000-4000-8000-000000000000",
        "amount": "0.001",
        "tokenMint": MINT,
        "recipient": RECIPIENT,
        "network": "devnet",
        "expiresAt": 1_700_000_060_000,
        "tool": "tx_explain.deep",
    }
    data.update(overrides)
    return PaymentRequirements(**data)


def sign(keypair, requirements, timestamp=1_700_000_000_000, **extra):
    payload = canonical_payload(requirements.paymentId, requirements.amount, requirements.tokenMint, timestamp)
    return PaymentProof(
        paymentId=requirements.paymentId,
        signature=str(keypair.sign_message(payload)),
        payer=str(keypair.pubkey()),
        timestamp=timestamp,
        **extra,
    )


def token_balance(index, owner, amount, mint=MINT):
    return {
        "accountIndex": index,
        "mint": mint,
        "owner": owner,
        "uiTokenAmount": {"amount": str(amount), "decimals": 6},
    }


def settled_transaction(payment_id, credited=1000, err=None, memo=True):
    instructions = [{"program": "spl-token", "parsed": {"type": "transferChecked"}}]
    if memo:
        instructions.append({"program": "spl-memo", "parsed": payment_id})
    return {
        "slot": 1,
        "meta": {
            "err": err,
            "preTokenBalances": [token_balance(1, RECIPIENT, 5000)],
            "postTokenBalances": [token_balance(1, RECIPIENT, 5000 + credited)],
        },
        "transaction": {"message": {"instructions": instructions}},
    }


class TestDecodePaymentHeader:
    """Test X-Payment header parsing."""

    def test_valid_proof(self):
        """A well-formed JSON proof decodes."""
        proof = sign(Keypair(), make_requirements())
        decoded = decode_payment_header(proof.to_header())
        assert decoded == proof

    def test_invalid_json(self):
        """Non-JSON header decodes to None."""
        assert decode_payment_header("not json") is None

    def test_not_an_object(self):
        """A JSON array is not a proof."""
        assert decode_payment_header("[1, 2]") is None

    def test_missing_fields(self):
        """Missing required fields decode to None."""
        assert decode_payment_header(json.dumps({"paymentId": "x"})) is None

    def test_bad_signature_encoding(self):
        """A signature that is not 64 bytes of base58 is rejected."""
        proof = json.loads(sign(Keypair(), make_requirements()).to_header())
        proof["signature"] = "abc"
        assert decode_payment_header(json.dumps(proof)) is None

    def test_bad_payer(self):
        """A payer that is not a public key is rejected."""
        proof = json.loads(sign(Keypair(), make_requirements()).to_header())
        proof["payer"] = "not-a-key"
        assert decode_payment_header(json.dumps(proof)) is None

    def test_extra_fields_ignored(self):
        """Unknown fields do not invalidate a proof."""
        proof = json.loads(sign(Keypair(), make_requirements()).to_header())
        proof["clientVersion"] = "1.2"
        assert decode_payment_header(json.dumps(proof)) is not None


class TestVerifySignature:
    """Test signature verification against the stored requirement."""

    def test_valid_signature(self):
        """A proof signed over the stored requirement verifies."""
        requirements = make_requirements()
        assert verify_signature(sign(Keypair(), requirements), requirements) is True

    def test_signed_by_other_key(self):
        """Claiming another payer's key fails verification."""
        requirements = make_requirements()
        proof = sign(Keypair(), requirements)
        forged = proof.model_copy(update={"payer": str(Keypair().pubkey())})
        assert verify_signature(forged, requirements) is False

    def test_amount_tampered(self):
        """A proof signed for a different amount does not verify."""
        signed_for = make_requirements(amount="0.0001")
        proof = sign(Keypair(), signed_for)
        assert verify_signature(proof, make_requirements()) is False

    def test_timestamp_tampered(self):
        """Changing the timestamp breaks the signature."""
        requirements = make_requirements()
        proof = sign(Keypair(), requirements)
        tampered = proof.model_copy(update={"timestamp": proof.timestamp + 1})
        assert verify_signature(tampered, requirements) is False


class TestTransactionHelpers:
    """Test parsed-transaction inspection."""

    def test_recipient_credit(self):
        """Credit is the post minus pre balance of the recipient's accounts."""
        tx = settled_transaction("id", credited=2500)
        assert recipient_credit(tx, RECIPIENT, MINT) == 2500

    def test_recipient_credit_other_mint(self):
        """Balances in other mints are ignored."""
        tx = settled_transaction("id", credited=2500)
        assert recipient_credit(tx, RECIPIENT, str(Keypair().pubkey())) == 0

    def test_recipient_credit_new_account(self):
        """A token account created by the transfer counts from zero."""
        tx = settled_transaction("id")
        tx["meta"]["preTokenBalances"] = []
        assert recipient_credit(tx, RECIPIENT, MINT) == 6000

    def test_transaction_memos(self):
        """Memo instructions are collected."""
        assert transaction_memos(settled_transaction("abc")) == ["abc"]
        assert transaction_memos(settled_transaction("abc", memo=False)) == []


class TestLedgerVerifier:
    """Test settlement-mode ledger confirmation."""

    def run(self, client, proof, requirements):
        verifier = LedgerVerifier(client, token_decimals=6)
        return asyncio.run(verifier.confirm_transfer(proof, requirements))

    def client_returning(self, transaction):
        client = MagicMock()
        client.get_transaction = AsyncMock(return_value=parsed_tx_response(transaction))
        return client

    def test_settled(self):
        """A confirmed transfer with memo and enough credit passes."""
        requirements = make_requirements()
        proof = sign(Keypair(), requirements, txSignature=TX_SIG)
        client = self.client_returning(settled_transaction(requirements.paymentId))
        assert self.run(client, proof, requirements) is None

    def test_missing_tx_signature(self):
        """A proof without txSignature is not settled."""
        requirements = make_requirements()
        proof = sign(Keypair(), requirements)
        assert self.run(MagicMock(), proof, requirements) == "missing transaction signature"

    def test_transaction_not_found(self):
        """Unknown transactions are not settled."""
        requirements = make_requirements()
        proof = sign(Keypair(), requirements, txSignature=TX_SIG)
        assert self.run(self.client_returning(None), proof, requirements) == "transaction not found"

    def test_failed_transaction(self):
        """A transaction that errored on chain is not settled."""
        requirements = make_requirements()
        proof = sign(Keypair(), requirements, txSignature=TX_SIG)
        tx = settled_transaction(requirements.paymentId, err={"InstructionError": [0, "Custom"]})
        assert self.run(self.client_returning(tx), proof, requirements) == "transaction failed"

    def test_memo_mismatch(self):
        """The transfer must reference this paymentId in its memo."""
        requirements = make_requirements()
        proof = sign(Keypair(), requirements, txSignature=TX_SIG)
        tx = settled_transaction("some-other-payment")
        assert "memo" in self.run(self.client_returning(tx), proof, requirements)

    def test_underpaid(self):
        """Crediting less than the price is not settled."""
        requirements = make_requirements()
        proof = sign(Keypair(), requirements, txSignature=TX_SIG)
        tx = settled_transaction(requirements.paymentId, credited=999)
        assert "999" in self.run(self.client_returning(tx), proof, requirements)

    def test_rpc_unavailable(self):
        """RPC transport failures surface as UpstreamUnavailable."""
        requirements = make_requirements()
        proof = sign(Keypair(), requirements, txSignature=TX_SIG)
        client = MagicMock()
        client.get_transaction = AsyncMock(side_effect=rpc_transport_error())
        with pytest.raises(UpstreamUnavailable):
            self.run(client, proof, requirements)
