# gateway/x402/receipts.py
"""
Append-only ledger of settled payments.

One PaymentReceipt per accepted proof, written as a JSON line. Receipts are
never rewritten; the file is the record a merchant reconciles against.
"""
import logging
import threading
from pathlib import Path
from typing import List, Optional

from pydantic import ValidationError

from gateway.x402.models import PaymentReceipt

logger = logging.getLogger(__name__)


class ReceiptLedger:
    def __init__(self, path: str):
        self.path = Path(path)
        self._lock = threading.Lock()

    def append(self, receipt: PaymentReceipt) -> None:
        """Write a receipt. Raises OSError if the ledger is not writable."""
        line = receipt.model_dump_json(exclude_none=True)
        with self._lock:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.path, "a") as f:
                f.write(line + "\n")
        logger.info(f"x402: Receipt recorded for payment {receipt.paymentId}")

    def read(self, payment_id: Optional[str] = None) -> List[PaymentReceipt]:
        """Return receipts in write order, optionally for a single paymentId."""
        if not self.path.exists():
            return []
        receipts = []
        with open(self.path, "r") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                try:
                    receipt = PaymentReceipt.model_validate_json(line)
                except ValidationError:
                    logger.warning(f"Skipping unreadable receipt line in {self.path}")
                    continue
                if payment_id is None or receipt.paymentId == payment_id:
                    receipts.append(receipt)
        return receipts
