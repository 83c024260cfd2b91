"""Polygon chain constants for the Polymarket CTF exchange."""

from __future__ import annotations

POLYGON_CHAIN_ID = 137

CTF_EXCHANGE_ADDR = "0x4bFb41d5B3570DeFd03C39a9A4D8dE6Bd8B8982E"

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"
NATIVE_PRECOMPILE = "0x0000000000000000000000000000000000001010"

USDC_DECIMALS = 6

# ERC-20 balances shown for the operator's wallet, per chain id
WALLET_TOKENS: dict[int, dict[str, str]] = {
    137: {
        "POL": "0x455e53CBB86018Ac2B8092FdCd39d8444aFFC3F6",
        "USDC": "0x3c499c542cEF5E3811e1192ce70d8cC03d5c3359",
        "USDC.e": "0x2791Bca1f2de4661ED88A30C99A7a9449Aa84174",
    },
    80001: {
        "MATIC": NATIVE_PRECOMPILE,
        "USDC": "0x9999f7Fea5938fD3b1E26A12c3f2fb024e194f97",
    },
    80002: {
        "POL": NATIVE_PRECOMPILE,
        "USDC": "0x41E94Eb019C0762f9Bfcf9Fb1E58725BfB0e7582",
    },
}

NATIVE_SYMBOLS: dict[int, str] = {
    137: "POL",
    80001: "POL",
    80002: "POL",
    56: "BNB",
    43114: "AVAX",
}
