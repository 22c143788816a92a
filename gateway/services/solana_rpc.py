# gateway/services/solana_rpc.py
"""
Thin helpers around the Solana JSON-RPC client.

Network failures are turned into UpstreamUnavailable so endpoints can map
them to 502 without knowing about solana-py's exception types.
"""
import json
import logging
from typing import Any, Awaitable, Dict, Optional, TypeVar

from solana.exceptions import SolanaRpcException
from solana.rpc.async_api import AsyncClient
from solana.rpc.commitment import Confirmed
from solders.signature import Signature

from gateway.core.errors import UpstreamUnavailable

logger = logging.getLogger(__name__)

T = TypeVar("T")


def create_rpc_client(rpc_url: str) -> AsyncClient:
    return AsyncClient(rpc_url, commitment=Confirmed)


async def rpc_call(what: str, awaitable: Awaitable[T]) -> T:
    """Await an RPC call, mapping transport failures to UpstreamUnavailable."""
    try:
        return await awaitable
    except SolanaRpcException as e:
        logger.error(f"Solana RPC {what} failed: {e}")
        raise UpstreamUnavailable(f"Solana RPC unavailable ({what})") from e


async def fetch_parsed_transaction(client: AsyncClient, tx_signature: str) -> Optional[Dict[str, Any]]:
    """
    Fetch a confirmed transaction in jsonParsed form.

    Returns:
        The ``result`` object of getTransaction, or None if the signature is
        malformed or the transaction is not (yet) known to the node
    """
    try:
        signature = Signature.from_string(tx_signature)
    except ValueError:
        return None
    response = await rpc_call(
        "get_transaction",
        client.get_transaction(
            signature,
            encoding="jsonParsed",
            commitment=Confirmed,
            max_supported_transaction_version=0,
        ),
    )
    return json.loads(response.to_json()).get("result")
