# gateway/x402/audit.py
"""
Audit logging for x402 payments and settlements.

This module logs payment gate and settlement events for:
- Dispute resolution
- Financial reconciliation
- Debugging failures

Log format: JSON lines (one event per line)
Log location: Configured via X402_AUDIT_LOG_PATH

Events logged:
- Payment requirement issued (paymentId, tool, amount, expiry)
- Payment proof received (paymentId, payer)
- Payment rejected (paymentId, reason)
- Payment consumed (paymentId, payer, amount)
- Swap executed (direction, amounts, transaction signature)
- Vault deposit / withdraw (owner, amount, transaction signature)
- Error (type, context)

Audit failures are logged and swallowed: a full disk must not turn a paid
call into a failed one.
"""
import json
import logging
import uuid
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional

from gateway.core.config import settings

logger = logging.getLogger(__name__)


class AuditEventType(Enum):
    """Types of audit events that can be logged."""
    REQUIREMENT_ISSUED = "requirement_issued"
    PAYMENT_RECEIVED = "payment_received"
    PAYMENT_REJECTED = "payment_rejected"
    PAYMENT_CONSUMED = "payment_consumed"
    SWAP_EXECUTED = "swap_executed"
    VAULT_DEPOSIT = "vault_deposit"
    VAULT_WITHDRAW = "vault_withdraw"
    ERROR = "error"


def generate_request_id() -> str:
    """Generate a unique request ID for tracking."""
    return str(uuid.uuid4())[:8]


_audit_log_path: Optional[Path] = None


def configure_audit_log(path: Optional[str]) -> None:
    """Send audit events to ``path``; None falls back to X402_AUDIT_LOG_PATH."""
    global _audit_log_path
    _audit_log_path = Path(path) if path else None


def get_audit_log_path() -> Path:
    """Get the path to the audit log file."""
    if _audit_log_path is not None:
        return _audit_log_path
    return Path(settings.X402_AUDIT_LOG_PATH)


def log_audit_event(
    event_type: AuditEventType,
    data: Dict[str, Any],
    wallet_address: Optional[str] = None,
    request_id: Optional[str] = None
) -> Optional[str]:
    """
    Log an audit event to the x402 audit log.

    Args:
        event_type: Type of event to log
        data: Event-specific data
        wallet_address: Payer or owner wallet (if available)
        request_id: Unique request identifier (if available)

    Returns:
        The request_id used for this event, or None on error
    """
    event = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "event_type": event_type.value,
        "request_id": request_id or generate_request_id(),
        "wallet_address": wallet_address,
        "data": data,
    }

    try:
        log_path = get_audit_log_path()
        log_path.parent.mkdir(parents=True, exist_ok=True)
        with open(log_path, "a") as f:
            f.write(json.dumps(event) + "\n")

        logger.debug(f"Audit event logged: {event_type.value} [{event['request_id']}]")
        return event["request_id"]

    except Exception as e:
        logger.error(f"Failed to write audit event: {e}")
        return None


# Convenience functions for specific event types

def log_requirement_issued(payment_id: str, tool: str, amount: str, expires_at: int) -> Optional[str]:
    return log_audit_event(
        event_type=AuditEventType.REQUIREMENT_ISSUED,
        data={"payment_id": payment_id, "tool": tool, "amount": amount, "expires_at": expires_at},
    )


def log_payment_received(payment_id: str, payer: str) -> Optional[str]:
    return log_audit_event(
        event_type=AuditEventType.PAYMENT_RECEIVED,
        data={"payment_id": payment_id},
        wallet_address=payer,
    )


def log_payment_rejected(
    reason: str,
    payment_id: Optional[str] = None,
    payer: Optional[str] = None
) -> Optional[str]:
    return log_audit_event(
        event_type=AuditEventType.PAYMENT_REJECTED,
        data={"payment_id": payment_id, "reason": reason},
        wallet_address=payer,
    )


def log_payment_consumed(payment_id: str, payer: str, amount: str, tool: str) -> Optional[str]:
    return log_audit_event(
        event_type=AuditEventType.PAYMENT_CONSUMED,
        data={"payment_id": payment_id, "amount": amount, "tool": tool},
        wallet_address=payer,
    )


def log_swap_executed(
    user_wallet: str,
    direction: str,
    input_amount: str,
    output_amount: str,
    price: str,
    tx_signature: str
) -> Optional[str]:
    return log_audit_event(
        event_type=AuditEventType.SWAP_EXECUTED,
        data={
            "direction": direction,
            "input_amount": input_amount,
            "output_amount": output_amount,
            "price": price,
            "tx_signature": tx_signature,
        },
        wallet_address=user_wallet,
    )


def log_vault_movement(
    event_type: AuditEventType,
    owner: str,
    amount_lamports: int,
    tx_signature: str
) -> Optional[str]:
    """Log a vault deposit or withdraw."""
    return log_audit_event(
        event_type=event_type,
        data={"amount_lamports": amount_lamports, "tx_signature": tx_signature},
        wallet_address=owner,
    )


def log_error(
    error_type: str,
    error_message: str,
    context: Optional[Dict[str, Any]] = None,
    wallet_address: Optional[str] = None
) -> Optional[str]:
    return log_audit_event(
        event_type=AuditEventType.ERROR,
        data={
            "error_type": error_type,
            "error_message": error_message,
            "context": context or {},
        },
        wallet_address=wallet_address,
    )


def read_audit_log(
    max_entries: int = 100,
    event_type: Optional[AuditEventType] = None
) -> list:
    """
    Read entries from the audit log.

    Returns:
        List of audit events (most recent first)
    """
    log_path = get_audit_log_path()
    if not log_path.exists():
        return []

    events = []
    try:
        with open(log_path, "r") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                try:
                    event = json.loads(line)
                except json.JSONDecodeError:
                    continue
                if event_type and event.get("event_type") != event_type.value:
                    continue
                events.append(event)
    except OSError as e:
        logger.error(f"Failed to read audit log: {e}")
        return []

    return list(reversed(events))[:max_entries]
