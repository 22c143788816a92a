# gateway/api/models/vault.py
from typing import Dict, Literal, Optional
from pydantic import BaseModel, Field, field_validator

from gateway.x402.models import validate_decimal_string, validate_pubkey_string


class SwapRequest(BaseModel):
    """
    Request model for a vault swap.
    """
    direction: Literal["SOL_TO_USDC", "USDC_TO_SOL"]
    amount: str = Field(..., description="Decimal amount of the input token")
    userWallet: str = Field(..., description="Base58 public key receiving the output")

    @field_validator("amount")
    @classmethod
    def amount_must_be_positive(cls, v: str) -> str:
        return validate_decimal_string(v)

    @field_validator("userWallet")
    @classmethod
    def wallet_must_be_pubkey(cls, v: str) -> str:
        return validate_pubkey_string(v)


class SwapResponse(BaseModel):
    success: bool
    direction: str
    inputAmount: str
    outputAmount: str
    price: str
    txSignature: str
    explorerUrl: str


class VaultStatusResponse(BaseModel):
    vaultAddress: str
    balances: Dict[str, float]
    currentPrice: str
    priceSource: str
    network: str


class PositionResponse(BaseModel):
    owner: str
    amount: int
    amountSol: float
    startTime: int
    accruedYield: int
    pendingYield: int = 0


class VaultSummaryResponse(BaseModel):
    """
    Pooled vault state.
    """
    admin: str
    apyBps: int
    totalDeposited: int


class DepositRequest(BaseModel):
    owner: str
    amount: str = Field(..., description="SOL amount sent to the vault")
    txSignature: str = Field(..., description="Signature of the owner -> vault transfer")

    @field_validator("amount")
    @classmethod
    def amount_must_be_positive(cls, v: str) -> str:
        return validate_decimal_string(v)

    @field_validator("owner")
    @classmethod
    def owner_must_be_pubkey(cls, v: str) -> str:
        return validate_pubkey_string(v)


class WithdrawRequest(BaseModel):
    owner: str
    amount: str = Field(..., description="SOL principal to withdraw")

    @field_validator("amount")
    @classmethod
    def amount_must_be_positive(cls, v: str) -> str:
        return validate_decimal_string(v)

    @field_validator("owner")
    @classmethod
    def owner_must_be_pubkey(cls, v: str) -> str:
        return validate_pubkey_string(v)


class VaultMovementResponse(BaseModel):
    success: bool
    action: str
    owner: str
    amountLamports: int
    payoutLamports: Optional[int] = None
    yieldLamports: Optional[int] = None
    position: PositionResponse
    txSignature: str
    explorerUrl: str
