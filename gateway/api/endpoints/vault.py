# gateway/api/endpoints/vault.py
from fastapi import APIRouter, Request
import logging

from gateway.core.errors import GatewayError
from gateway.services.settlement import SettlementExecutor, position_to_dict
from gateway.services.vault import Position
from gateway.api.models.vault import (
    DepositRequest,
    PositionResponse,
    SwapRequest,
    SwapResponse,
    VaultMovementResponse,
    VaultStatusResponse,
    VaultSummaryResponse,
    WithdrawRequest,
)

logger = logging.getLogger(__name__)

router = APIRouter()


def get_executor(request: Request) -> SettlementExecutor:
    return request.app.state.executor


@router.post("/vault-swap", response_model=SwapResponse)
async def vault_swap(swap: SwapRequest, request: Request) -> SwapResponse:
    """
    Swap SOL <-> USDC with the vault at the reference price.

    Raises:
        ValidationError: 400 for bad direction, amount or wallet
        InsufficientFunds: 400 when the vault cannot cover the output
        ConfigurationMissing: 503 when no vault key is configured
        TransactionUnconfirmed: 504 when confirmation timed out
    """
    try:
        result = await get_executor(request).swap(swap.direction, swap.amount, swap.userWallet)
        return SwapResponse(**result)

    except GatewayError:
        raise
    except Exception as e:
        logger.error(f"Unexpected error during swap: {e}", exc_info=True)
        raise GatewayError("Swap failed")


@router.get("/vault-swap", response_model=VaultStatusResponse)
async def vault_swap_status(request: Request) -> VaultStatusResponse:
    """
    Vault address, balances, current price and network.
    """
    try:
        return VaultStatusResponse(**await get_executor(request).vault_status())

    except GatewayError:
        raise
    except Exception as e:
        logger.error(f"Unexpected error reading vault status: {e}", exc_info=True)
        raise GatewayError("Failed to get vault status")


@router.get("/vault", response_model=VaultSummaryResponse)
async def vault_summary(request: Request) -> VaultSummaryResponse:
    state = get_executor(request).ledger.state
    return VaultSummaryResponse(admin=state.admin, apyBps=state.apyBps, totalDeposited=state.totalDeposited)


@router.get("/vault/positions/{owner}", response_model=PositionResponse)
async def vault_position(owner: str, request: Request) -> PositionResponse:
    """
    Position for an owner, including yield accrued since the last change.

    Owners without a position get an empty one.
    """
    ledger = get_executor(request).ledger
    position = ledger.get_position(owner) or Position(owner=owner)
    return PositionResponse(**position_to_dict(position), pendingYield=ledger.pending_yield(owner))


@router.post("/vault/deposit", response_model=VaultMovementResponse)
async def vault_deposit(deposit: DepositRequest, request: Request) -> VaultMovementResponse:
    """
    Credit a SOL deposit already sent to the vault address.
    """
    try:
        result = await get_executor(request).deposit(deposit.owner, deposit.amount, deposit.txSignature)
        return VaultMovementResponse(**result)

    except GatewayError:
        raise
    except Exception as e:
        logger.error(f"Unexpected error during deposit: {e}", exc_info=True)
        raise GatewayError("Deposit failed")


@router.post("/vault/withdraw", response_model=VaultMovementResponse)
async def vault_withdraw(withdraw: WithdrawRequest, request: Request) -> VaultMovementResponse:
    """
    Withdraw principal plus accrued yield to the position owner.
    """
    try:
        result = await get_executor(request).withdraw(withdraw.owner, withdraw.amount)
        return VaultMovementResponse(**result)

    except GatewayError:
        raise
    except Exception as e:
        logger.error(f"Unexpected error during withdraw: {e}", exc_info=True)
        raise GatewayError("Withdraw failed")
