# tests/conftest.py
"""
Shared fixtures: fast wallets, isolated audit logs, mocked Solana RPC.
"""
import json
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient
from solana.exceptions import SolanaRpcException
from solders.hash import Hash
from solders.keypair import Keypair
from solders.signature import Signature

from gateway.core.config import Settings
from gateway.main import create_app
from gateway.services.price_feed import SOURCE_FEED, PriceQuote
from gateway.services.settlement import SettlementExecutor
from gateway.wallet.allowance import AllowanceWallet, KdfParams
from gateway.wallet.storage import LocalStorage
from gateway.x402 import audit
from gateway.x402.gate import PaymentGate
from gateway.x402.pricing import PricingTable
from gateway.x402.receipts import ReceiptLedger
from gateway.x402.store import InMemoryPaymentStore

# Argon2id at its minimum cost so wallet tests stay fast.
FAST_KDF = KdfParams(timeCost=1, memoryCost=8, parallelism=1)

TX_SIGNATURE = Signature(bytes([7] * 64))
TOKEN_ACCOUNT_RENT = 2_039_280


@pytest.fixture(autouse=True)
def isolated_audit_log(tmp_path):
    """Keep audit events out of the working directory."""
    log_path = tmp_path / "audit.jsonl"
    audit.configure_audit_log(str(log_path))
    yield log_path
    audit.configure_audit_log(None)


@pytest.fixture
def storage(tmp_path):
    return LocalStorage(tmp_path / "storage.json")


@pytest.fixture
def wallet(storage):
    wallet = AllowanceWallet(storage=storage, kdf_params=FAST_KDF)
    wallet.create("1234")
    return wallet


@pytest.fixture
def vault_keypair():
    return Keypair()


@pytest.fixture
def test_settings(tmp_path, vault_keypair):
    return Settings(
        X402_RECIPIENT=str(Keypair().pubkey()),
        X402_RECEIPT_LOG_PATH=str(tmp_path / "receipts.jsonl"),
        X402_AUDIT_LOG_PATH=str(tmp_path / "audit.jsonl"),
        X402_PAYMENT_DB_PATH=str(tmp_path / "payments.db"),
        VAULT_PRIVATE_KEY=str(vault_keypair),
        CONFIRMATION_TIMEOUT_SECONDS=0.5,
    )


def fixed_price(price="150"):
    """A price feed mock returning a constant quote."""
    feed = MagicMock()
    feed.get_sol_price.return_value = PriceQuote(price_usd=Decimal(price), source=SOURCE_FEED, fetched_at=0.0)
    return feed


def rpc_transport_error():
    """SolanaRpcException as the HTTP provider raises it: (cause, func, provider, request)."""
    return SolanaRpcException(ConnectionError("connection refused"), AsyncMock(), MagicMock(), MagicMock())


def confirmed_status(err=None):
    status = MagicMock()
    status.err = err
    return status


@pytest.fixture
def rpc_client():
    """
    AsyncClient stand-in: vault holds 10 SOL and 1000 USDC, the user's token
    account exists, and every transaction confirms.
    """
    client = MagicMock()
    client.get_balance = AsyncMock(return_value=MagicMock(value=10_000_000_000))
    client.get_token_account_balance = AsyncMock(
        return_value=MagicMock(value=MagicMock(amount="1000000000"))
    )
    client.get_account_info = AsyncMock(return_value=MagicMock(value=MagicMock()))
    client.get_latest_blockhash = AsyncMock(
        return_value=MagicMock(value=MagicMock(blockhash=Hash.default(), last_valid_block_height=100))
    )
    client.send_transaction = AsyncMock(return_value=MagicMock(value=TX_SIGNATURE))
    client.confirm_transaction = AsyncMock(return_value=MagicMock(value=[confirmed_status()]))
    client.get_signature_statuses = AsyncMock(return_value=MagicMock(value=[None]))
    client.get_block_height = AsyncMock(return_value=MagicMock(value=50))
    client.get_minimum_balance_for_rent_exemption = AsyncMock(return_value=MagicMock(value=TOKEN_ACCOUNT_RENT))
    client.get_transaction = AsyncMock()
    return client


def parsed_tx_response(transaction):
    """get_transaction response whose to_json() carries ``transaction`` as result."""
    response = MagicMock()
    response.to_json.return_value = json.dumps({"jsonrpc": "2.0", "id": 1, "result": transaction})
    return response


class FakeClock:
    """Millisecond clock that only moves when told to."""

    def __init__(self, now=1_700_000_000_000):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += int(seconds * 1000)


def make_gate(settings, clock=None, **overrides):
    kwargs = {
        "pricing": PricingTable(settings.X402_TOOL_PRICING),
        "store": InMemoryPaymentStore(),
        "receipts": ReceiptLedger(settings.X402_RECEIPT_LOG_PATH),
        "network": settings.X402_NETWORK,
        "token_mint": settings.X402_TOKEN_MINT,
        "recipient": settings.recipient,
        "ttl_seconds": settings.X402_REQUIREMENT_TTL_SECONDS,
    }
    if clock is not None:
        kwargs["clock"] = clock
    kwargs.update(overrides)
    return PaymentGate(**kwargs)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def executor(test_settings, rpc_client, vault_keypair):
    return SettlementExecutor(
        test_settings, rpc_client=rpc_client, price_feed=fixed_price(), vault_keypair=vault_keypair
    )


@pytest.fixture
def gate(test_settings, clock):
    return make_gate(test_settings, clock)


@pytest.fixture
def client(test_settings, executor, gate):
    return TestClient(create_app(test_settings, executor=executor, gate=gate))
