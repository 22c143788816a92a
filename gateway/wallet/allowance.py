# gateway/wallet/allowance.py
"""
Allowance wallet: an ephemeral signing key kept apart from the user's
primary wallet, used to authorize small x402 payments without a full
wallet prompt each time.

The secret key is encrypted at rest under the user's PIN:
- Argon2id (memory-hard) with a per-wallet random salt derives a 256-bit key
- AES-256-GCM with a fresh 96-bit IV per encryption, public key as AAD
- salt, IV and KDF parameters are stored next to the ciphertext

Records written by the first version (a bare SHA-256 of the PIN used as
the AES key, no salt) still load, and are re-encrypted under Argon2id on
the first successful load.

A wrong PIN and "no wallet yet" look the same from here: both make
load() return False. Callers that fall back to create() on False will
replace a wallet whose PIN was mistyped.
"""
import base64
import hashlib
import json
import logging
import secrets
import time
from dataclasses import asdict, dataclass
from typing import Optional

from argon2.exceptions import HashingError
from argon2.low_level import Type, hash_secret_raw
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from solders.keypair import Keypair

from gateway.wallet.storage import LocalStorage
from gateway.x402.models import PaymentProof, PaymentRequirements, canonical_payload

logger = logging.getLogger(__name__)

STORAGE_KEY = "voxsol_allowance_wallet"

# Argon2id parameters (OWASP recommendations)
ARGON2_TIME_COST = 3
ARGON2_MEMORY_COST = 65536  # 64 MB
ARGON2_PARALLELISM = 4
KEY_LENGTH = 32  # AES-256
SALT_LENGTH = 16
IV_LENGTH = 12  # 96 bits, recommended for GCM

KDF_ARGON2ID = "argon2id"


class WalletNotLoadedError(RuntimeError):
    """Raised when signing is attempted before create() or load()."""


class WalletStorageError(RuntimeError):
    """Raised when the wallet record cannot be persisted."""


@dataclass
class KdfParams:
    name: str = KDF_ARGON2ID
    timeCost: int = ARGON2_TIME_COST
    memoryCost: int = ARGON2_MEMORY_COST
    parallelism: int = ARGON2_PARALLELISM


@dataclass
class AllowanceWalletData:
    """Persisted wallet record. Never leaves the device."""
    publicKey: str
    encryptedSecret: str
    iv: str
    salt: Optional[str] = None
    kdf: Optional[dict] = None

    def to_json(self) -> str:
        return json.dumps({k: v for k, v in asdict(self).items() if v is not None})

    @classmethod
    def from_json(cls, raw: str) -> "AllowanceWalletData":
        data = json.loads(raw)
        if not isinstance(data, dict):
            raise ValueError("Wallet record is not an object")
        for field in ("publicKey", "encryptedSecret", "iv"):
            if not isinstance(data.get(field), str):
                raise ValueError(f"Wallet record field {field} missing or not a string")
        if data.get("salt") is not None and not isinstance(data["salt"], str):
            raise ValueError("Wallet record salt is not a string")
        if data.get("kdf") is not None and not isinstance(data["kdf"], dict):
            raise ValueError("Wallet record kdf is not an object")
        return cls(
            publicKey=data["publicKey"],
            encryptedSecret=data["encryptedSecret"],
            iv=data["iv"],
            salt=data.get("salt"),
            kdf=data.get("kdf"),
        )


def _b64encode(raw: bytes) -> str:
    return base64.b64encode(raw).decode("ascii")


def _b64decode(text: str) -> bytes:
    return base64.b64decode(text, validate=True)


def derive_key(pin: str, salt: bytes, params: KdfParams) -> bytes:
    """Derive the AES key from a PIN with Argon2id."""
    return hash_secret_raw(
        secret=pin.encode("utf-8"),
        salt=salt,
        time_cost=params.timeCost,
        memory_cost=params.memoryCost,
        parallelism=params.parallelism,
        hash_len=KEY_LENGTH,
        type=Type.ID,
    )


def derive_legacy_key(pin: str) -> bytes:
    """Key derivation of legacy records: unsalted SHA-256 of the PIN."""
    return hashlib.sha256(pin.encode("utf-8")).digest()


class AllowanceWallet:
    """PIN-protected ephemeral ed25519 keypair."""

    def __init__(
        self,
        storage: Optional[LocalStorage] = None,
        kdf_params: Optional[KdfParams] = None,
        storage_key: str = STORAGE_KEY,
    ):
        self.storage = storage or LocalStorage()
        self.kdf_params = kdf_params or KdfParams()
        self.storage_key = storage_key
        self._keypair: Optional[Keypair] = None

    @property
    def is_loaded(self) -> bool:
        return self._keypair is not None

    def create(self, pin: str) -> str:
        """
        Generate a new keypair, encrypt it under the PIN and persist it.

        Returns:
            The base58 public key of the new wallet

        Raises:
            WalletStorageError: If the record cannot be written
        """
        keypair = Keypair()
        self._save(keypair, pin)
        self._keypair = keypair
        public_key = str(keypair.pubkey())
        logger.info(f"Created allowance wallet {public_key}")
        return public_key

    def load(self, pin: str) -> bool:
        """
        Restore the keypair from storage using the PIN.

        Never raises: a missing record, a wrong PIN or a corrupt record all
        return False and leave the in-memory state as it was.
        """
        try:
            stored = self.storage.get_item(self.storage_key)
        except OSError as e:
            logger.warning(f"Allowance wallet storage unreadable: {e}")
            return False
        if not stored:
            return False

        try:
            data = AllowanceWalletData.from_json(stored)
            secret = self._decrypt(data, pin)
            keypair = Keypair.from_bytes(secret)
            if str(keypair.pubkey()) != data.publicKey:
                raise ValueError("Decrypted key does not match stored public key")
        except (InvalidTag, HashingError, ValueError, KeyError, TypeError) as e:
            logger.warning(f"Failed to load allowance wallet: {type(e).__name__}")
            return False

        self._keypair = keypair

        if data.kdf is None:
            # Legacy record, upgrade it to Argon2id.
            try:
                self._save(keypair, pin)
                logger.info("Migrated allowance wallet to Argon2id key derivation")
            except WalletStorageError as e:
                logger.warning(f"Could not migrate legacy allowance wallet: {e}")

        return True

    def get_public_key(self) -> Optional[str]:
        return str(self._keypair.pubkey()) if self._keypair else None

    def sign_message(self, message: bytes) -> str:
        """Detached ed25519 signature over ``message``, base58-encoded."""
        if self._keypair is None:
            raise WalletNotLoadedError("Wallet not loaded")
        return str(self._keypair.sign_message(message))

    def init(self, pin: str) -> str:
        """Load the stored wallet, creating a new one if that fails."""
        if not self.load(pin):
            self.create(pin)
        return self.get_public_key()

    def sign_payment(
        self,
        requirements: PaymentRequirements,
        timestamp_ms: Optional[int] = None,
    ) -> PaymentProof:
        """Sign a payment requirement, producing the proof for X-Payment."""
        if self._keypair is None:
            raise WalletNotLoadedError("Allowance wallet not initialized")
        timestamp = timestamp_ms if timestamp_ms is not None else int(time.time() * 1000)
        payload = canonical_payload(
            requirements.paymentId,
            requirements.amount,
            requirements.tokenMint,
            timestamp,
        )
        return PaymentProof(
            paymentId=requirements.paymentId,
            signature=self.sign_message(payload),
            payer=self.get_public_key(),
            timestamp=timestamp,
        )

    def _save(self, keypair: Keypair, pin: str) -> None:
        salt = secrets.token_bytes(SALT_LENGTH)
        iv = secrets.token_bytes(IV_LENGTH)
        public_key = str(keypair.pubkey())
        key = derive_key(pin, salt, self.kdf_params)
        encrypted = AESGCM(key).encrypt(iv, bytes(keypair), public_key.encode("utf-8"))

        data = AllowanceWalletData(
            publicKey=public_key,
            encryptedSecret=_b64encode(encrypted),
            iv=_b64encode(iv),
            salt=_b64encode(salt),
            kdf=asdict(self.kdf_params),
        )
        try:
            self.storage.set_item(self.storage_key, data.to_json())
        except OSError as e:
            raise WalletStorageError(f"Allowance wallet storage unavailable: {e}") from e

    def _decrypt(self, data: AllowanceWalletData, pin: str) -> bytes:
        ciphertext = _b64decode(data.encryptedSecret)
        iv = _b64decode(data.iv)

        if data.kdf is None:
            return AESGCM(derive_legacy_key(pin)).decrypt(iv, ciphertext, None)

        if data.kdf.get("name") != KDF_ARGON2ID or not data.salt:
            raise ValueError(f"Unsupported key derivation: {data.kdf.get('name')}")
        params = KdfParams(**data.kdf)
        key = derive_key(pin, _b64decode(data.salt), params)
        return AESGCM(key).decrypt(iv, ciphertext, data.publicKey.encode("utf-8"))
