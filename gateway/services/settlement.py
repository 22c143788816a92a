# gateway/services/settlement.py
"""
Settlement Executor: the on-chain value movement behind swaps and vault
actions.

Every operation follows the same shape:
1. Validate inputs and price them (best-effort SOL/USD reference price)
2. Check the vault's balance covers the transfer plus a fee reserve
3. Build one atomic transaction signed by the vault keypair
4. Submit it and block on confirmation

A transaction either lands whole or not at all, so there is no partial
state to reconcile. A confirmation timeout or an RPC outage while waiting
is re-checked once against the node before it is reported as
TransactionUnconfirmed; it is never reported as success or as a plain
failure.

An unconfirmed withdraw payout is remembered per owner. The owner's next
withdraw first resolves it: a payout that landed is applied to the
position, one whose blockhash expired without landing is dropped, and
anything else is refused again as unconfirmed. A retry never sends a
second payout while the first can still land.
"""
import asyncio
import logging
import weakref
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from solana.rpc.commitment import Confirmed
from solana.rpc.core import (
    RPCException,
    TransactionExpiredBlockheightExceededError,
    UnconfirmedTxError,
)
from solana.rpc.types import TxOpts
from solders.instruction import Instruction
from solders.keypair import Keypair
from solders.message import Message
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.system_program import TransferParams, transfer
from solders.transaction import Transaction
from solders.transaction_status import TransactionConfirmationStatus
from spl.token.constants import TOKEN_PROGRAM_ID
from spl.token.instructions import TransferParams as TokenTransferParams
from spl.token.instructions import (
    create_associated_token_account,
    get_associated_token_address,
)
from spl.token.instructions import transfer as token_transfer

from gateway.core.config import Settings
from gateway.core.errors import (
    ConfigurationMissing,
    GatewayError,
    InsufficientFunds,
    TransactionUnconfirmed,
    UpstreamUnavailable,
    ValidationError,
)
from gateway.services.price_feed import PriceFeed, PriceQuote
from gateway.services.solana_rpc import create_rpc_client, fetch_parsed_transaction, rpc_call
from gateway.services.vault import LAMPORTS_PER_SOL, VaultLedger
from gateway.x402 import audit

logger = logging.getLogger(__name__)

SOL_DECIMALS = 9
# SPL token account data length, for rent exemption.
TOKEN_ACCOUNT_SIZE = 165
CONFIRMED_STATUSES = (
    TransactionConfirmationStatus.Confirmed,
    TransactionConfirmationStatus.Finalized,
)


class SwapDirection(str, Enum):
    SOL_TO_USDC = "SOL_TO_USDC"
    USDC_TO_SOL = "USDC_TO_SOL"


@dataclass(frozen=True)
class SwapQuote:
    direction: SwapDirection
    input_amount: Decimal
    output_amount: Decimal
    output_base_units: int
    price: PriceQuote

    @property
    def input_symbol(self) -> str:
        return "SOL" if self.direction is SwapDirection.SOL_TO_USDC else "USDC"

    @property
    def output_symbol(self) -> str:
        return "USDC" if self.direction is SwapDirection.SOL_TO_USDC else "SOL"


@dataclass(frozen=True)
class PendingWithdrawal:
    """A withdraw payout that was sent but never seen confirmed."""
    signature: Signature
    lamports: int
    payout: int
    last_valid_block_height: int


def format_amount(value: Decimal) -> str:
    """Plain decimal notation without trailing zeros: 15.000000 -> "15"."""
    return format(value.normalize(), "f")


def parse_amount(amount: str) -> Decimal:
    try:
        value = Decimal(str(amount))
    except (InvalidOperation, TypeError):
        raise ValidationError(f"Invalid amount: {amount!r}")
    if not value.is_finite() or value <= 0:
        raise ValidationError("Amount must be a positive number")
    return value


def parse_pubkey(value: str, field: str = "userWallet") -> Pubkey:
    try:
        return Pubkey.from_string(value)
    except ValueError:
        raise ValidationError(f"Invalid {field}: not a valid public key")


def parse_direction(direction: str) -> SwapDirection:
    try:
        return SwapDirection(direction)
    except ValueError:
        raise ValidationError("Invalid direction. Use SOL_TO_USDC or USDC_TO_SOL")


def sol_to_lamports(amount: Decimal) -> int:
    return int(amount.scaleb(SOL_DECIMALS))


class SettlementExecutor:
    """
    Executes swaps and vault movements against the custodial vault.

    Configuration (RPC URL, vault key, mints, reserves) comes from the
    Settings object given at construction; the RPC client and vault keypair
    are created on first use.
    """

    def __init__(
        self,
        settings: Settings,
        rpc_client=None,
        price_feed: Optional[PriceFeed] = None,
        ledger: Optional[VaultLedger] = None,
        vault_keypair: Optional[Keypair] = None,
    ):
        self.settings = settings
        self._rpc_client = rpc_client
        self._vault_keypair = vault_keypair
        self.price_feed = price_feed or PriceFeed(
            url=settings.PRICE_FEED_URL,
            fallback_usd=settings.PRICE_FALLBACK_USD,
            cache_ttl_seconds=settings.PRICE_CACHE_TTL_SECONDS,
        )
        self._ledger = ledger
        # Entries go away once no coroutine holds or waits on the lock.
        self._owner_locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()
        self._pending_withdrawals: Dict[str, PendingWithdrawal] = {}

    @property
    def rpc_client(self):
        """Lazy initialization of the Solana RPC client."""
        if self._rpc_client is None:
            self._rpc_client = create_rpc_client(str(self.settings.SOLANA_RPC_URL))
        return self._rpc_client

    @property
    def vault_keypair(self) -> Keypair:
        if self._vault_keypair is None:
            secret = self.settings.VAULT_PRIVATE_KEY
            if secret is None or not secret.get_secret_value():
                raise ConfigurationMissing("VAULT_PRIVATE_KEY not configured")
            try:
                self._vault_keypair = Keypair.from_base58_string(secret.get_secret_value())
            except ValueError:
                raise ConfigurationMissing("VAULT_PRIVATE_KEY is not a valid base58 secret key")
        return self._vault_keypair

    @property
    def ledger(self) -> VaultLedger:
        if self._ledger is None:
            self._ledger = VaultLedger(
                admin=str(self.vault_keypair.pubkey()),
                apy_bps=self.settings.VAULT_APY_BPS,
            )
        return self._ledger

    @property
    def usdc_mint(self) -> Pubkey:
        return Pubkey.from_string(self.settings.USDC_MINT)

    def explorer_url(self, signature: str) -> str:
        return f"https://solscan.io/tx/{signature}{self.settings.explorer_cluster_suffix}"

    # --- Pricing -----------------------------------------------------------

    def quote(self, direction: str, amount: str) -> SwapQuote:
        """Price a swap without touching the ledger."""
        swap_direction = parse_direction(direction)
        input_amount = parse_amount(amount)
        price = self.price_feed.get_sol_price()

        if swap_direction is SwapDirection.SOL_TO_USDC:
            decimals = self.settings.USDC_DECIMALS
            base_units = int((input_amount * price.price_usd).scaleb(decimals))
        else:
            decimals = SOL_DECIMALS
            base_units = int((input_amount / price.price_usd).scaleb(decimals))

        if base_units <= 0:
            raise ValidationError("Amount too small to swap")

        return SwapQuote(
            direction=swap_direction,
            input_amount=input_amount,
            output_amount=Decimal(base_units).scaleb(-decimals),
            output_base_units=base_units,
            price=price,
        )

    # --- Balances ----------------------------------------------------------

    async def sol_balance(self, pubkey: Pubkey) -> int:
        response = await rpc_call("get_balance", self.rpc_client.get_balance(pubkey))
        return response.value

    async def token_balance(self, token_account: Pubkey) -> int:
        """Base units held by a token account; a missing account holds zero."""
        try:
            response = await rpc_call(
                "get_token_account_balance",
                self.rpc_client.get_token_account_balance(token_account),
            )
        except RPCException as e:
            logger.info(f"Token account {token_account} unavailable, treating balance as 0: {e}")
            return 0
        return int(response.value.amount)

    async def account_exists(self, pubkey: Pubkey) -> bool:
        response = await rpc_call("get_account_info", self.rpc_client.get_account_info(pubkey))
        return response.value is not None

    async def token_account_rent(self) -> int:
        """Lamports a new token account must hold to be rent exempt."""
        response = await rpc_call(
            "get_minimum_balance_for_rent_exemption",
            self.rpc_client.get_minimum_balance_for_rent_exemption(TOKEN_ACCOUNT_SIZE),
        )
        return response.value

    async def _require_fee_reserve(self, vault: Pubkey, extra_lamports: int = 0) -> int:
        balance = await self.sol_balance(vault)
        if balance < extra_lamports + self.settings.VAULT_FEE_RESERVE_LAMPORTS:
            raise InsufficientFunds("Insufficient vault balance (SOL)")
        return balance

    # --- Submission --------------------------------------------------------

    async def submit(self, instructions: List[Instruction]) -> str:
        """
        Sign with the vault key, send, and wait for confirmation.

        Returns:
            The transaction signature (base58)

        Raises:
            TransactionUnconfirmed: If confirmation could not be observed in time
            GatewayError: If the node rejected or the ledger failed the transaction
        """
        signature, last_valid_block_height = await self.send(instructions)
        await self.confirm(signature, last_valid_block_height)
        return str(signature)

    async def send(self, instructions: List[Instruction]) -> Tuple[Signature, int]:
        """Sign with the vault key and send. Returns the signature and its last valid block height."""
        keypair = self.vault_keypair
        blockhash_response = await rpc_call(
            "get_latest_blockhash", self.rpc_client.get_latest_blockhash(Confirmed)
        )
        blockhash = blockhash_response.value.blockhash
        last_valid_block_height = blockhash_response.value.last_valid_block_height

        message = Message.new_with_blockhash(instructions, keypair.pubkey(), blockhash)
        transaction = Transaction([keypair], message, blockhash)

        try:
            send_response = await rpc_call(
                "send_transaction",
                self.rpc_client.send_transaction(
                    transaction,
                    opts=TxOpts(skip_confirmation=True, preflight_commitment=Confirmed),
                ),
            )
        except RPCException as e:
            logger.error(f"Transaction rejected by node: {e}")
            raise GatewayError(f"Transaction rejected: {e}") from e

        return send_response.value, last_valid_block_height

    async def signature_status(self, signature: Signature, search_history: bool = False):
        """The node's status for a signature, or None if it has none."""
        statuses = await rpc_call(
            "get_signature_statuses",
            self.rpc_client.get_signature_statuses([signature], search_transaction_history=search_history),
        )
        return statuses.value[0] if statuses.value else None

    async def confirm(self, signature: Signature, last_valid_block_height: Optional[int] = None) -> None:
        timeout = self.settings.CONFIRMATION_TIMEOUT_SECONDS
        try:
            response = await asyncio.wait_for(
                rpc_call(
                    "confirm_transaction",
                    self.rpc_client.confirm_transaction(
                        signature,
                        commitment=Confirmed,
                        last_valid_block_height=last_valid_block_height,
                    ),
                ),
                timeout=timeout,
            )
            status = response.value[0] if response.value else None
        except (
            asyncio.TimeoutError,
            UpstreamUnavailable,
            UnconfirmedTxError,
            TransactionExpiredBlockheightExceededError,
        ) as e:
            logger.warning(f"Confirmation of {signature} not observed ({type(e).__name__}), re-checking status")
            try:
                status = await self.signature_status(signature)
            except UpstreamUnavailable:
                status = None
            if status is None or status.confirmation_status not in CONFIRMED_STATUSES:
                raise TransactionUnconfirmed(
                    f"Transaction {signature} not confirmed within {timeout:g}s",
                    signature=str(signature),
                )

        if status is not None and status.err is not None:
            raise GatewayError(f"Transaction {signature} failed: {status.err}")

    # --- Swaps -------------------------------------------------------------

    async def swap(self, direction: str, amount: str, user_wallet: str) -> Dict[str, Any]:
        """
        Exchange between SOL and USDC with the vault at the reference price.

        Raises:
            ValidationError: Bad direction, amount or wallet
            InsufficientFunds: The vault cannot cover the output plus fees
            ConfigurationMissing: No vault key configured
        """
        user = parse_pubkey(user_wallet)
        quote = self.quote(direction, amount)
        vault = self.vault_keypair.pubkey()

        if quote.direction is SwapDirection.SOL_TO_USDC:
            instructions = await self._usdc_payout_instructions(vault, user, quote.output_base_units)
        else:
            await self._require_fee_reserve(vault, quote.output_base_units)
            instructions = [
                transfer(TransferParams(from_pubkey=vault, to_pubkey=user, lamports=quote.output_base_units))
            ]

        tx_signature = await self.submit(instructions)

        result = {
            "success": True,
            "direction": quote.direction.value,
            "inputAmount": f"{format_amount(quote.input_amount)} {quote.input_symbol}",
            "outputAmount": f"{format_amount(quote.output_amount)} {quote.output_symbol}",
            "price": f"${format_amount(quote.price.price_usd)}",
            "txSignature": tx_signature,
            "explorerUrl": self.explorer_url(tx_signature),
        }
        audit.log_swap_executed(
            user_wallet, result["direction"], result["inputAmount"],
            result["outputAmount"], result["price"], tx_signature
        )
        logger.info(f"Swap {result['direction']} for {user_wallet}: {result['outputAmount']} ({tx_signature})")
        return result

    async def _usdc_payout_instructions(self, vault: Pubkey, user: Pubkey, usdc_units: int) -> List[Instruction]:
        mint = self.usdc_mint
        vault_token_account = get_associated_token_address(vault, mint)
        user_token_account = get_associated_token_address(user, mint)

        if await self.token_balance(vault_token_account) < usdc_units:
            raise InsufficientFunds("Insufficient vault balance (USDC)")

        instructions = []
        rent_lamports = 0
        if not await self.account_exists(user_token_account):
            # Vault pays the rent for the user's token account.
            rent_lamports = await self.token_account_rent()
            instructions.append(create_associated_token_account(vault, user, mint))
        await self._require_fee_reserve(vault, rent_lamports)
        instructions.append(
            token_transfer(
                TokenTransferParams(
                    program_id=TOKEN_PROGRAM_ID,
                    source=vault_token_account,
                    dest=user_token_account,
                    owner=vault,
                    amount=usdc_units,
                )
            )
        )
        return instructions

    async def vault_status(self) -> Dict[str, Any]:
        vault = self.vault_keypair.pubkey()
        sol_lamports = await self.sol_balance(vault)
        usdc_units = await self.token_balance(get_associated_token_address(vault, self.usdc_mint))
        price = self.price_feed.get_sol_price()
        return {
            "vaultAddress": str(vault),
            "balances": {
                "SOL": float(Decimal(sol_lamports).scaleb(-SOL_DECIMALS)),
                "USDC": float(Decimal(usdc_units).scaleb(-self.settings.USDC_DECIMALS)),
            },
            "currentPrice": f"${format_amount(price.price_usd)}",
            "priceSource": price.source,
            "network": self.settings.X402_NETWORK,
        }

    # --- Vault deposit / withdraw -------------------------------------------

    def _owner_lock(self, owner: str) -> asyncio.Lock:
        lock = self._owner_locks.get(owner)
        if lock is None:
            lock = self._owner_locks[owner] = asyncio.Lock()
        return lock

    async def deposit(self, owner: str, amount: str, tx_signature: str) -> Dict[str, Any]:
        """
        Credit a deposit the owner already sent to the vault.

        The transaction must be confirmed and contain a system transfer of
        exactly ``amount`` SOL from the owner to the vault.
        """
        parse_pubkey(owner, "owner")
        lamports = sol_to_lamports(parse_amount(amount))
        if lamports < self.settings.VAULT_MIN_DEPOSIT_LAMPORTS:
            raise ValidationError("Deposit below vault minimum")
        if lamports > self.settings.VAULT_MAX_DEPOSIT_LAMPORTS:
            raise ValidationError("Deposit above vault maximum")

        vault = str(self.vault_keypair.pubkey())
        transaction = await fetch_parsed_transaction(self.rpc_client, tx_signature)
        if transaction is None:
            raise ValidationError("Deposit transaction not found")
        if (transaction.get("meta") or {}).get("err") is not None:
            raise ValidationError("Deposit transaction failed on chain")
        if not has_system_transfer(transaction, owner, vault, lamports):
            raise ValidationError("Deposit transaction does not transfer the stated amount to the vault")

        async with self._owner_lock(owner):
            position = self.ledger.record_deposit(owner, lamports, tx_signature=tx_signature)

        audit.log_vault_movement(audit.AuditEventType.VAULT_DEPOSIT, owner, lamports, tx_signature)
        return {
            "success": True,
            "action": "deposit",
            "owner": owner,
            "amountLamports": lamports,
            "position": position_to_dict(position),
            "txSignature": tx_signature,
            "explorerUrl": self.explorer_url(tx_signature),
        }

    async def withdraw(self, owner: str, amount: str) -> Dict[str, Any]:
        """
        Pay principal plus accrued yield from the vault to the position owner.

        The position is only reduced after the transfer is confirmed. A
        payout that stays unconfirmed is held until a later withdraw can
        tell whether it landed.
        """
        owner_key = parse_pubkey(owner, "owner")
        lamports = sol_to_lamports(parse_amount(amount))
        vault = self.vault_keypair.pubkey()

        async with self._owner_lock(owner):
            await self._resolve_pending_withdrawal(owner)
            payout = self.ledger.preview_withdraw(owner, lamports)
            await self._require_fee_reserve(vault, payout)
            signature, last_valid_block_height = await self.send(
                [transfer(TransferParams(from_pubkey=vault, to_pubkey=owner_key, lamports=payout))]
            )
            self._pending_withdrawals[owner] = PendingWithdrawal(
                signature=signature,
                lamports=lamports,
                payout=payout,
                last_valid_block_height=last_valid_block_height,
            )
            try:
                await self.confirm(signature, last_valid_block_height)
            except TransactionUnconfirmed:
                logger.warning(f"Withdraw {signature} for {owner} unconfirmed, holding it until resolved")
                raise
            except GatewayError:
                # Failed on chain, nothing moved.
                del self._pending_withdrawals[owner]
                raise
            del self._pending_withdrawals[owner]
            position = self.ledger.record_withdraw(owner, lamports)

        tx_signature = str(signature)
        audit.log_vault_movement(audit.AuditEventType.VAULT_WITHDRAW, owner, payout, tx_signature)
        return {
            "success": True,
            "action": "withdraw",
            "owner": owner,
            "amountLamports": lamports,
            "payoutLamports": payout,
            "yieldLamports": payout - lamports,
            "position": position_to_dict(position),
            "txSignature": tx_signature,
            "explorerUrl": self.explorer_url(tx_signature),
        }

    async def _resolve_pending_withdrawal(self, owner: str) -> None:
        """
        Settle the fate of an earlier unconfirmed payout. Caller holds the owner lock.

        Raises:
            TransactionUnconfirmed: If the earlier payout can still land
        """
        pending = self._pending_withdrawals.get(owner)
        if pending is None:
            return

        status = await self.signature_status(pending.signature, search_history=True)
        if status is not None and status.confirmation_status in CONFIRMED_STATUSES:
            del self._pending_withdrawals[owner]
            if status.err is not None:
                logger.warning(f"Earlier withdraw {pending.signature} for {owner} failed on chain: {status.err}")
                return
            self.ledger.record_withdraw(owner, pending.lamports)
            audit.log_vault_movement(
                audit.AuditEventType.VAULT_WITHDRAW, owner, pending.payout, str(pending.signature)
            )
            logger.info(f"Earlier withdraw {pending.signature} for {owner} landed, position updated")
            return

        if status is None:
            block_height = await rpc_call("get_block_height", self.rpc_client.get_block_height(Confirmed))
            if block_height.value > pending.last_valid_block_height:
                del self._pending_withdrawals[owner]
                logger.warning(f"Earlier withdraw {pending.signature} for {owner} expired without landing")
                return

        raise TransactionUnconfirmed(
            f"Earlier withdraw {pending.signature} is still unconfirmed",
            signature=str(pending.signature),
        )


def has_system_transfer(transaction: Dict[str, Any], source: str, destination: str, lamports: int) -> bool:
    """True if a parsed transaction contains the given system transfer."""
    message = (transaction.get("transaction") or {}).get("message") or {}
    for instruction in message.get("instructions", []):
        if instruction.get("program") != "system":
            continue
        parsed = instruction.get("parsed") or {}
        info = parsed.get("info") or {}
        if (
            parsed.get("type") == "transfer"
            and info.get("source") == source
            and info.get("destination") == destination
            and int(info.get("lamports", 0)) == lamports
        ):
            return True
    return False


def position_to_dict(position) -> Dict[str, Any]:
    return {
        "owner": position.owner,
        "amount": position.amount,
        "amountSol": float(Decimal(position.amount) / LAMPORTS_PER_SOL),
        "startTime": position.startTime,
        "accruedYield": position.accruedYield,
    }
