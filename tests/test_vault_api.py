# tests/test_vault_api.py
"""
HTTP tests for the swap and vault endpoints.
"""
import asyncio
from unittest.mock import AsyncMock, MagicMock

from fastapi.testclient import TestClient
from solders.keypair import Keypair

from gateway.main import create_app
from gateway.services.settlement import SettlementExecutor

from conftest import TX_SIGNATURE, fixed_price, parsed_tx_response

USER = str(Keypair().pubkey())


class TestVaultSwap:
    """Test POST/GET /vault-swap."""

    def test_swap_success(self, client):
        """A valid swap returns the executed result."""
        response = client.post(
            "/vault-swap", json={"direction": "SOL_TO_USDC", "amount": "0.1", "userWallet": USER}
        )
        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["outputAmount"] == "15 USDC"
        assert body["txSignature"] == str(TX_SIGNATURE)

    def test_swap_not_gated(self, client):
        """Swaps are not behind the payment gate."""
        response = client.post(
            "/vault-swap", json={"direction": "USDC_TO_SOL", "amount": "15", "userWallet": USER}
        )
        assert response.status_code == 200

    def test_swap_insufficient_usdc(self, client, rpc_client):
        """An empty vault answers 400 and sends nothing."""
        rpc_client.get_token_account_balance = AsyncMock(return_value=MagicMock(value=MagicMock(amount="0")))
        response = client.post(
            "/vault-swap", json={"direction": "SOL_TO_USDC", "amount": "0.1", "userWallet": USER}
        )
        assert response.status_code == 400
        assert "Insufficient vault balance" in response.json()["error"]
        rpc_client.send_transaction.assert_not_awaited()

    def test_swap_bad_direction(self, client):
        """An unknown direction is a 400."""
        response = client.post("/vault-swap", json={"direction": "UP", "amount": "1", "userWallet": USER})
        assert response.status_code == 400
        assert "error" in response.json()

    def test_swap_zero_amount(self, client):
        """A zero amount is a 400."""
        response = client.post(
            "/vault-swap", json={"direction": "SOL_TO_USDC", "amount": "0", "userWallet": USER}
        )
        assert response.status_code == 400

    def test_swap_bad_wallet(self, client):
        """A user wallet that is not a public key is a 400."""
        response = client.post(
            "/vault-swap", json={"direction": "SOL_TO_USDC", "amount": "1", "userWallet": "nope"}
        )
        assert response.status_code == 400

    def test_swap_unconfirmed_is_504(self, client, rpc_client):
        """A swap that cannot be confirmed answers 504 with its signature."""
        async def never_confirms(*args, **kwargs):
            await asyncio.sleep(10)

        rpc_client.confirm_transaction = AsyncMock(side_effect=never_confirms)
        response = client.post(
            "/vault-swap", json={"direction": "SOL_TO_USDC", "amount": "0.1", "userWallet": USER}
        )
        assert response.status_code == 504
        assert response.json()["txSignature"] == str(TX_SIGNATURE)

    def test_swap_without_vault_key(self, test_settings, rpc_client, gate):
        """No vault key configured answers 503."""
        settings = test_settings.model_copy(update={"VAULT_PRIVATE_KEY": None})
        executor = SettlementExecutor(settings, rpc_client=rpc_client, price_feed=fixed_price())
        client = TestClient(create_app(settings, executor=executor, gate=gate))
        response = client.post(
            "/vault-swap", json={"direction": "SOL_TO_USDC", "amount": "0.1", "userWallet": USER}
        )
        assert response.status_code == 503
        assert response.json() == {"error": "VAULT_PRIVATE_KEY not configured"}

    def test_status(self, client, vault_keypair):
        """GET /vault-swap reports the vault."""
        response = client.get("/vault-swap")
        assert response.status_code == 200
        body = response.json()
        assert body["vaultAddress"] == str(vault_keypair.pubkey())
        assert body["balances"]["USDC"] == 1000.0
        assert body["network"] == "devnet"


class TestVaultPositions:
    """Test deposit, withdraw and position endpoints."""

    def deposit(self, client, rpc_client, vault_keypair, amount="1", lamports=1_000_000_000):
        tx = {
            "meta": {"err": None},
            "transaction": {"message": {"instructions": [{
                "program": "system",
                "parsed": {"type": "transfer", "info": {
                    "source": USER, "destination": str(vault_keypair.pubkey()), "lamports": lamports,
                }},
            }]}},
        }
        rpc_client.get_transaction = AsyncMock(return_value=parsed_tx_response(tx))
        return client.post(
            "/vault/deposit", json={"owner": USER, "amount": amount, "txSignature": str(TX_SIGNATURE)}
        )

    def test_vault_summary(self, client, vault_keypair):
        """GET /vault shows admin, APY and total deposits."""
        body = client.get("/vault").json()
        assert body == {"admin": str(vault_keypair.pubkey()), "apyBps": 500, "totalDeposited": 0}

    def test_empty_position(self, client):
        """Owners without deposits have an empty position."""
        body = client.get(f"/vault/positions/{USER}").json()
        assert body["amount"] == 0
        assert body["pendingYield"] == 0

    def test_deposit_then_position(self, client, rpc_client, vault_keypair):
        """A deposit shows up in the owner's position and the vault total."""
        response = self.deposit(client, rpc_client, vault_keypair)
        assert response.status_code == 200
        assert response.json()["position"]["amount"] == 1_000_000_000

        assert client.get(f"/vault/positions/{USER}").json()["amount"] == 1_000_000_000
        assert client.get("/vault").json()["totalDeposited"] == 1_000_000_000

    def test_deposit_mismatch(self, client, rpc_client, vault_keypair):
        """A deposit whose transfer does not match is a 400."""
        response = self.deposit(client, rpc_client, vault_keypair, lamports=1)
        assert response.status_code == 400

    def test_withdraw(self, client, rpc_client, vault_keypair):
        """Withdraw pays out and reduces the position."""
        self.deposit(client, rpc_client, vault_keypair)
        response = client.post("/vault/withdraw", json={"owner": USER, "amount": "0.5"})
        assert response.status_code == 200
        body = response.json()
        assert body["amountLamports"] == 500_000_000
        assert body["payoutLamports"] >= 500_000_000
        assert body["position"]["amount"] == 500_000_000

    def test_withdraw_too_much(self, client, rpc_client, vault_keypair):
        """Withdrawing more than deposited is a 400."""
        self.deposit(client, rpc_client, vault_keypair)
        response = client.post("/vault/withdraw", json={"owner": USER, "amount": "2"})
        assert response.status_code == 400
        assert response.json() == {"error": "Insufficient funds in vault position"}


class TestHealth:
    """Test the health endpoints."""

    def test_health(self, client):
        """GET /health reports status and verification mode."""
        body = client.get("/health").json()
        assert body["status"] == "ok"
        assert body["x402"]["verificationMode"] == "signature"

    def test_root(self, client):
        """GET / is an alias of /health."""
        assert client.get("/").json()["status"] == "ok"
