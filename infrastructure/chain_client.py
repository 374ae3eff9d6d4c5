"""
EVM JSON-RPC client used by the deposit reconciler.

Every call is retried with exponential backoff on transport errors and
JSON-RPC errors; once retries are exhausted ChainRPCError is raised.
"""

import asyncio
import itertools
import logging
from typing import Any, Dict, List, Optional

import httpx

from domain.exceptions import ChainRPCError

logger = logging.getLogger(__name__)

TRANSFER_EVENT_TOPIC = "0xddf252ad1be2c89b69c2b068fc378daa952ba7f163c4a11628f55a4df523b3ef"


def address_to_topic(address: str) -> str:
    return "0x" + address.lower().replace("0x", "").rjust(64, "0")


def topic_to_address(topic: str) -> str:
    return "0x" + topic[-40:].lower()


class ChainRPCClient:
    def __init__(
        self,
        rpc_url: str,
        *,
        client: Optional[httpx.AsyncClient] = None,
        timeout_seconds: float = 15.0,
        max_retries: int = 5,
        min_retry_delay: float = 0.5,
        max_retry_delay: float = 30.0
    ):
        if not rpc_url or not rpc_url.strip():
            raise ValueError("rpc_url must be non-empty")
        if max_retries < 1:
            raise ValueError("max_retries must be at least 1")

        self.rpc_url = rpc_url
        self._client = client or httpx.AsyncClient(timeout=httpx.Timeout(timeout_seconds))
        self._owns_client = client is None
        self.max_retries = max_retries
        self.min_retry_delay = min_retry_delay
        self.max_retry_delay = max_retry_delay
        self._ids = itertools.count(1)

    async def _call(self, method: str, *params: Any) -> Any:
        delay = self.min_retry_delay
        for attempt in range(1, self.max_retries + 1):
            try:
                return await self._call_once(method, list(params))
            except (httpx.HTTPError, ChainRPCError, ValueError) as e:
                if attempt == self.max_retries:
                    logger.error(f"RPC {method} failed after {attempt} attempts: {e}")
                    raise ChainRPCError(f"RPC {method} failed: {e}") from e
                logger.warning(
                    f"RPC {method} error (attempt {attempt}/{self.max_retries}): {e}"
                )
                await asyncio.sleep(delay)
                delay = min(delay * 2, self.max_retry_delay)

    async def _call_once(self, method: str, params: List[Any]) -> Any:
        body = {
            "jsonrpc": "2.0",
            "id": next(self._ids),
            "method": method,
            "params": params,
        }
        response = await self._client.post(self.rpc_url, json=body)
        response.raise_for_status()
        data = response.json()
        if "error" in data:
            err = data["error"]
            raise ChainRPCError(
                f"{err.get('message', err)} (code={err.get('code')})"
            )
        if "result" not in data:
            raise ChainRPCError("RPC response has no result")
        return data["result"]

    async def block_number(self) -> int:
        return int(await self._call("eth_blockNumber"), 16)

    async def get_block(self, number: int, full_transactions: bool = True) -> Optional[Dict[str, Any]]:
        return await self._call("eth_getBlockByNumber", hex(number), full_transactions)

    async def get_logs(
        self,
        from_block: int,
        to_block: int,
        address: str,
        topics: List[Optional[str]]
    ) -> List[Dict[str, Any]]:
        result = await self._call("eth_getLogs", {
            "fromBlock": hex(from_block),
            "toBlock": hex(to_block),
            "address": address,
            "topics": topics,
        })
        return result or []

    async def get_balance(self, address: str, block: str = "latest") -> int:
        return int(await self._call("eth_getBalance", address, block), 16)

    async def get_transaction_receipt(self, tx_hash: str) -> Optional[Dict[str, Any]]:
        return await self._call("eth_getTransactionReceipt", tx_hash)

    async def token_balance_of(self, token_address: str, owner: str, block: str = "latest") -> int:
        # balanceOf(address)
        data = "0x70a08231" + address_to_topic(owner)[2:]
        result = await self._call("eth_call", {"to": token_address, "data": data}, block)
        return int(result, 16) if result and result != "0x" else 0

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

