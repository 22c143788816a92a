# gateway/core/config.py
from typing import Dict, List, Literal, Optional
from pydantic_settings import BaseSettings
from pydantic import AnyHttpUrl, SecretStr # AnyHttpUrl stays in pydantic core
from functools import lru_cache
from dotenv import load_dotenv

# Load .env file if it exists
load_dotenv()

DEFAULT_TOOL_PRICING = {
    "yield_agent.run": "0.001",
    "swap_agent.optimized": "0.001",
    "tx_explain.deep": "0.001",
}

# Devnet USDC mint
DEVNET_USDC_MINT = "Gh9ZwEmdLJ8DscKNTkTqPbNwLNNBjuSzaG9Vp2KGtKJr"


class Settings(BaseSettings):
    PROJECT_NAME: str = "VoxSol Gateway"

    # x402 payment gate
    X402_ENABLED: bool = True
    X402_NETWORK: Literal["devnet", "mainnet"] = "devnet"
    X402_TOKEN_MINT: str = DEVNET_USDC_MINT
    X402_RECIPIENT: Optional[str] = None
    X402_REQUIREMENT_TTL_SECONDS: int = 60
    X402_TOOL_PRICING: Dict[str, str] = DEFAULT_TOOL_PRICING  # JSON in env
    X402_VERIFICATION_MODE: Literal["signature", "settlement"] = "signature"
    X402_PAYMENT_STORE: Literal["memory", "sqlite"] = "memory"
    X402_PAYMENT_DB_PATH: str = "data/payments.db"
    X402_AUDIT_LOG_PATH: str = "logs/x402_audit.jsonl"
    X402_RECEIPT_LOG_PATH: str = "logs/x402_receipts.jsonl"

    # Solana
    SOLANA_RPC_URL: AnyHttpUrl = "https://api.devnet.solana.com"
    VAULT_PRIVATE_KEY: Optional[SecretStr] = None  # base58 secret key
    USDC_MINT: str = DEVNET_USDC_MINT
    USDC_DECIMALS: int = 6
    CONFIRMATION_TIMEOUT_SECONDS: float = 30.0

    # Reference price (best effort, not an oracle)
    PRICE_FEED_URL: str = "https://api.coingecko.com/api/v3/simple/price?ids=solana&vs_currencies=usd"
    PRICE_FALLBACK_USD: float = 150.0
    PRICE_CACHE_TTL_SECONDS: int = 60

    # Vault
    VAULT_FEE_RESERVE_LAMPORTS: int = 5000
    VAULT_APY_BPS: int = 500
    VAULT_MIN_DEPOSIT_LAMPORTS: int = 10_000_000
    VAULT_MAX_DEPOSIT_LAMPORTS: int = 100_000_000_000

    CORS_ORIGINS: List[str] = ["http://localhost:3000", "https://voxsol.vercel.app"]

    class Config:
        env_file = ".env"
        case_sensitive = True
        extra = "ignore"  # Ignore extra fields from .env

    @property
    def recipient(self) -> str:
        return self.X402_RECIPIENT or "MERCHANT_WALLET_NOT_SET"

    @property
    def explorer_cluster_suffix(self) -> str:
        return "?cluster=devnet" if self.X402_NETWORK == "devnet" else ""


@lru_cache() # Cache the settings object for performance
def get_settings() -> Settings:
    return Settings()

settings = get_settings()
