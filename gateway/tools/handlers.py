# gateway/tools/handlers.py
"""
Tool handlers.

Each handler takes the JSON request body and a ToolContext and returns the
tool's result object. Handlers raise GatewayError subclasses for bad input;
the app renders those as ``{"error": ...}``.
"""
import logging
from decimal import Decimal
from typing import Any, Dict, List

from gateway.core.errors import ValidationError
from gateway.services.settlement import format_amount, parse_amount, sol_to_lamports
from gateway.services.solana_rpc import fetch_parsed_transaction
from gateway.services.vault import LAMPORTS_PER_SOL, calculate_yield

logger = logging.getLogger(__name__)

DEFAULT_SUGGESTED_AMOUNT = "0.1"
PROJECTION_DAYS = 30
SECONDS_PER_DAY = 86_400


def lamports_to_sol(lamports: int) -> str:
    return format_amount(Decimal(lamports) / LAMPORTS_PER_SOL)


def format_apy(apy_bps: int) -> str:
    return f"{apy_bps / 100:.2f}%"


async def yield_agent_run(body: Dict[str, Any], ctx) -> Dict[str, Any]:
    """Vault deposit recommendation with a 30-day yield projection."""
    suggested = str(body.get("amount") or DEFAULT_SUGGESTED_AMOUNT)
    lamports = sol_to_lamports(parse_amount(suggested))
    apy_bps = ctx.settings.VAULT_APY_BPS
    projected = calculate_yield(lamports, apy_bps, 0, PROJECTION_DAYS * SECONDS_PER_DAY)

    return {
        "recommendation": "deposit",
        "suggestedAmount": suggested,
        "currentApy": format_apy(apy_bps),
        "projectedYield30d": f"{lamports_to_sol(projected)} SOL",
        "riskLevel": "low",
        "notes": "Simple-interest vault; yield accrues per second and is paid out on withdraw.",
    }


async def swap_agent_optimized(body: Dict[str, Any], ctx) -> Dict[str, Any]:
    """Route analysis for a swap against the vault."""
    direction = body.get("direction")
    amount = body.get("amount")

    if direction and amount:
        quote = ctx.executor.quote(direction, str(amount))
        expected_output = f"{format_amount(quote.output_amount)} {quote.output_symbol}"
        price = f"${format_amount(quote.price.price_usd)}"
        price_source = quote.price.source
    else:
        expected_output = str(body.get("expectedOutput") or "0.0")
        price = None
        price_source = None

    return {
        "recommendedRoute": "VoxSol Vault",
        "expectedOutput": expected_output,
        "price": price,
        "priceSource": price_source,
        "priceImpact": "0%",
        "slippage": "0%",
        "alternativeRoutes": [],
        "analysis": "The vault fills swaps at the reference price with no slippage; "
                    "output is limited by vault liquidity.",
    }


def _account_keys(message: Dict[str, Any]) -> List[str]:
    keys = []
    for key in message.get("accountKeys", []):
        keys.append(key["pubkey"] if isinstance(key, dict) else key)
    return keys


def _token_changes(meta: Dict[str, Any]) -> List[Dict[str, Any]]:
    totals: Dict[str, Decimal] = {}
    for sign, field in ((-1, "preTokenBalances"), (1, "postTokenBalances")):
        for entry in meta.get(field) or []:
            ui = entry.get("uiTokenAmount") or {}
            amount = Decimal(ui.get("amount", "0")).scaleb(-int(ui.get("decimals", 0)))
            totals[entry["mint"]] = totals.get(entry["mint"], Decimal(0)) + sign * amount

    changes = []
    for mint, change in totals.items():
        if change == 0:
            continue
        changes.append({
            "token": mint,
            "change": format_amount(change) if change < 0 else f"+{format_amount(change)}",
            "direction": "out" if change < 0 else "in",
        })
    return changes


async def tx_explain_deep(body: Dict[str, Any], ctx) -> Dict[str, Any]:
    """Explain a transaction: status, fee, programs, SOL and token movements."""
    signature = body.get("signature")
    if not signature or not isinstance(signature, str):
        raise ValidationError("signature is required")

    transaction = await fetch_parsed_transaction(ctx.executor.rpc_client, signature)
    if transaction is None:
        return {
            "signature": signature,
            "found": False,
            "summary": "Transaction not found on the configured cluster",
        }

    meta = transaction.get("meta") or {}
    message = (transaction.get("transaction") or {}).get("message") or {}

    programs = []
    for instruction in message.get("instructions", []):
        name = instruction.get("program") or instruction.get("programId")
        if name and name not in programs:
            programs.append(name)

    keys = _account_keys(message)
    sol_changes = []
    for key, pre, post in zip(keys, meta.get("preBalances") or [], meta.get("postBalances") or []):
        if post != pre:
            sol_changes.append({"account": key, "change": lamports_to_sol(post - pre)})

    failed = meta.get("err") is not None
    return {
        "signature": signature,
        "found": True,
        "status": "failed" if failed else "success",
        "slot": transaction.get("slot"),
        "blockTime": transaction.get("blockTime"),
        "fee": f"{lamports_to_sol(meta.get('fee', 0))} SOL",
        "programsInvolved": programs,
        "solChanges": sol_changes,
        "tokenChanges": _token_changes(meta),
        "summary": f"{'Failed' if failed else 'Successful'} transaction touching "
                   f"{len(programs)} program(s)",
    }


async def price_sol(body: Dict[str, Any], ctx) -> Dict[str, Any]:
    """Reference SOL/USD price. Free tool."""
    quote = ctx.price_feed.get_sol_price()
    return {
        "price": f"${format_amount(quote.price_usd)}",
        "priceUsd": float(quote.price_usd),
        "source": quote.source,
        "isFallback": quote.is_fallback,
    }
