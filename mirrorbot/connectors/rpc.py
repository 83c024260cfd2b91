"""Minimal JSON-RPC client for the Polygon node.

Only what the pipeline needs: the pending block for mempool watching,
plus chain id and balances for the operator's wallet panel.
"""

from __future__ import annotations

import itertools
from typing import Any

import httpx
from eth_abi import decode as abi_decode
from eth_abi import encode as abi_encode
from eth_utils import function_signature_to_4byte_selector
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from mirrorbot.observability.logger import get_logger

log = get_logger(__name__)

_BALANCE_OF = function_signature_to_4byte_selector("balanceOf(address)")
_DECIMALS = function_signature_to_4byte_selector("decimals()")


class RpcError(Exception):
    """Node unreachable, HTTP failure, or a JSON-RPC error object."""


class RpcClient:
    """Async JSON-RPC over HTTP."""

    def __init__(
        self,
        rpc_url: str,
        *,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.rpc_url = rpc_url
        self._client = httpx.AsyncClient(
            timeout=timeout,
            headers={"Content-Type": "application/json"},
            transport=transport,
        )
        self._ids = itertools.count(1)

    async def close(self) -> None:
        await self._client.aclose()

    async def call(self, method: str, params: list[Any] | None = None) -> Any:
        payload = {
            "jsonrpc": "2.0",
            "method": method,
            "params": params or [],
            "id": next(self._ids),
        }
        try:
            resp = await self._client.post(self.rpc_url, json=payload)
        except httpx.HTTPError as e:
            raise RpcError(f"{method}: {type(e).__name__}") from e
        if not resp.is_success:
            raise RpcError(f"HTTP Error: {resp.status_code}")
        try:
            data = resp.json()
        except ValueError as e:
            raise RpcError(f"{method}: non-JSON response") from e
        if not isinstance(data, dict):
            raise RpcError(f"{method}: unexpected response shape")
        if data.get("error"):
            err = data["error"]
            message = err.get("message") if isinstance(err, dict) else str(err)
            raise RpcError(message or "RPC Error")
        return data.get("result")

    async def get_pending_block(self) -> dict[str, Any] | None:
        """``eth_getBlockByNumber("pending", true)``; None if the node has none."""
        result = await self.call("eth_getBlockByNumber", ["pending", True])
        return result if isinstance(result, dict) else None

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(min=0.5, max=4),
        retry=retry_if_exception_type(RpcError),
        reraise=True,
    )
    async def get_chain_id(self) -> int:
        return int(await self.call("eth_chainId"), 16)

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(min=0.5, max=4),
        retry=retry_if_exception_type(RpcError),
        reraise=True,
    )
    async def get_balance(self, address: str) -> int:
        return int(await self.call("eth_getBalance", [address, "latest"]), 16)

    async def _eth_call(self, to: str, data: bytes) -> bytes:
        result = await self.call("eth_call", [{"to": to, "data": "0x" + data.hex()}, "latest"])
        return bytes.fromhex(str(result or "0x")[2:])

    async def erc20_balance(self, token: str, owner: str) -> int:
        raw = await self._eth_call(token, _BALANCE_OF + abi_encode(["address"], [owner]))
        return abi_decode(["uint256"], raw)[0]

    async def erc20_decimals(self, token: str) -> int:
        raw = await self._eth_call(token, _DECIMALS)
        return abi_decode(["uint8"], raw)[0]
