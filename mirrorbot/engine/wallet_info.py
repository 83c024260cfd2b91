"""Operator wallet snapshot: chain, native balance and stablecoin balances.

The chain id and native balance are required (8 s budget). Token
balances are best-effort with a 4 s budget each; a token that fails
reports ``"..."`` instead of failing the whole snapshot.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any

from eth_abi.exceptions import DecodingError

from mirrorbot.chain.contracts import NATIVE_PRECOMPILE, NATIVE_SYMBOLS, WALLET_TOKENS, ZERO_ADDRESS
from mirrorbot.connectors.rpc import RpcClient, RpcError
from mirrorbot.engine.wallet_resolver import is_address
from mirrorbot.observability.logger import get_logger

log = get_logger(__name__)

CORE_BUDGET_SECS = 8.0
TOKEN_BUDGET_SECS = 4.0
VALIDATE_BUDGET_SECS = 10.0
PENDING_BALANCE = "..."


@dataclass
class TokenBalance:
    symbol: str
    balance: str


@dataclass
class WalletInfo:
    address: str
    chain_id: int
    native_balance: str
    native_symbol: str
    tokens: list[TokenBalance] = field(default_factory=list)


def native_symbol(chain_id: int) -> str:
    return NATIVE_SYMBOLS.get(chain_id, "ETH")


async def _token_balance(rpc: RpcClient, token: str, owner: str) -> str:
    raw = await rpc.erc20_balance(token, owner)
    try:
        decimals = await rpc.erc20_decimals(token)
    except (RpcError, DecodingError):
        decimals = 18
    return f"{raw / 10 ** decimals:.2f}"


async def fetch_wallet_info(rpc: RpcClient, address: str) -> WalletInfo | None:
    """Balances for ``address``; None when the node cannot be reached."""
    if not is_address(address):
        return None
    try:
        chain_id, balance_wei = await asyncio.wait_for(
            asyncio.gather(rpc.get_chain_id(), rpc.get_balance(address)),
            CORE_BUDGET_SECS,
        )
    except (RpcError, asyncio.TimeoutError) as e:
        log.warning("wallet_info.unavailable", error=str(e) or type(e).__name__)
        return None

    tokens: list[TokenBalance] = []
    for symbol, token in WALLET_TOKENS.get(chain_id, {}).items():
        if token in (NATIVE_PRECOMPILE, ZERO_ADDRESS):
            continue
        try:
            balance = await asyncio.wait_for(_token_balance(rpc, token, address), TOKEN_BUDGET_SECS)
        except (RpcError, DecodingError, asyncio.TimeoutError, ValueError) as e:
            log.debug("wallet_info.token_failed", symbol=symbol, error=str(e) or type(e).__name__)
            balance = PENDING_BALANCE
        tokens.append(TokenBalance(symbol, balance))

    return WalletInfo(
        address=address,
        chain_id=chain_id,
        native_balance=f"{balance_wei / 10 ** 18:.4f}",
        native_symbol=native_symbol(chain_id),
        tokens=tokens,
    )


async def validate_rpc_connection(rpc: RpcClient) -> dict[str, Any]:
    if not rpc.rpc_url:
        return {"success": False, "error": "URL is empty"}
    try:
        chain_id = await asyncio.wait_for(rpc.get_chain_id(), VALIDATE_BUDGET_SECS)
    except (RpcError, asyncio.TimeoutError, ValueError) as e:
        return {"success": False, "error": str(e) or "Connection failed"}
    return {"success": True, "chain_id": chain_id}
