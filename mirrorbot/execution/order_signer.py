"""EIP-712 order signing and authenticated CLOB order entry.

Orders are signed locally with the operator's key (eth-account) against
the CTF exchange domain. Order-entry requests carry HMAC-SHA256 headers
derived from the L2 API credentials:

    signature = b64(HMAC_SHA256(b64decode(secret), ts + METHOD + path + body))
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import re
import secrets
import time
from dataclasses import dataclass, replace
from typing import Any, Callable

import httpx
from eth_account import Account

from mirrorbot.chain.contracts import CTF_EXCHANGE_ADDR, POLYGON_CHAIN_ID, USDC_DECIMALS, ZERO_ADDRESS
from mirrorbot.connectors.clob import CLOB_BASE
from mirrorbot.models import Side
from mirrorbot.observability.logger import get_logger
from mirrorbot.observability.metrics import metrics

log = get_logger(__name__)

PRIVATE_KEY_RE = re.compile(r"^(0x)?[0-9a-fA-F]{64}$")
ORDER_TTL_SECS = 300

EIP712_DOMAIN = {
    "name": "Polymarket CTF Exchange",
    "version": "1",
    "chainId": POLYGON_CHAIN_ID,
    "verifyingContract": CTF_EXCHANGE_ADDR,
}

ORDER_TYPES = {
    "Order": [
        {"name": "salt", "type": "uint256"},
        {"name": "maker", "type": "address"},
        {"name": "signer", "type": "address"},
        {"name": "taker", "type": "address"},
        {"name": "tokenId", "type": "uint256"},
        {"name": "makerAmount", "type": "uint256"},
        {"name": "takerAmount", "type": "uint256"},
        {"name": "expiration", "type": "uint256"},
        {"name": "nonce", "type": "uint256"},
        {"name": "feeRate", "type": "uint256"},
        {"name": "side", "type": "uint8"},
        {"name": "signatureType", "type": "uint8"},
    ],
}


class InvalidPrivateKey(ValueError):
    """Key is missing or not 64 hex characters (optional 0x prefix)."""


class CredentialsMissing(Exception):
    """Order entry attempted without CLOB API credentials."""


class OrderRejected(Exception):
    """The exchange answered the order request with a non-2xx status."""


def is_valid_private_key(key: str | None) -> bool:
    return bool(key) and bool(PRIVATE_KEY_RE.match(key.strip()))


def normalize_private_key(key: str | None) -> str:
    if not is_valid_private_key(key):
        raise InvalidPrivateKey("Private key must be 64 hex characters")
    key = key.strip()
    return key if key.startswith("0x") else "0x" + key


# ── Signed order ─────────────────────────────────────────────────────

@dataclass(frozen=True)
class SignedOrder:
    salt: int
    maker: str
    signer: str
    taker: str
    token_id: str
    maker_amount: int
    taker_amount: int
    expiration: int
    nonce: int
    fee_rate: int
    side: int
    signature_type: int
    signature: str = ""

    def typed_message(self) -> dict[str, Any]:
        """The EIP-712 ``Order`` struct values."""
        return {
            "salt": self.salt,
            "maker": self.maker,
            "signer": self.signer,
            "taker": self.taker,
            "tokenId": int(self.token_id),
            "makerAmount": self.maker_amount,
            "takerAmount": self.taker_amount,
            "expiration": self.expiration,
            "nonce": self.nonce,
            "feeRate": self.fee_rate,
            "side": self.side,
            "signatureType": self.signature_type,
        }

    def to_dict(self) -> dict[str, Any]:
        """Exchange JSON body (camelCase, amounts as strings)."""
        return {
            "salt": self.salt,
            "maker": self.maker,
            "signer": self.signer,
            "taker": self.taker,
            "tokenId": self.token_id,
            "makerAmount": str(self.maker_amount),
            "takerAmount": str(self.taker_amount),
            "expiration": self.expiration,
            "nonce": self.nonce,
            "feeRate": self.fee_rate,
            "side": self.side,
            "signatureType": self.signature_type,
            "signature": self.signature,
        }


class OrderSigner:
    """Build and sign exchange orders with a local key."""

    def __init__(self, private_key: str, clock: Callable[[], float] = time.time):
        self._account = Account.from_key(normalize_private_key(private_key))
        self._clock = clock

    @property
    def address(self) -> str:
        return self._account.address

    def sign_order(self, token_id: str, side: Side, amount_usd: float, price: float) -> SignedOrder:
        """Sign a collateral-denominated order for ``amount_usd``.

        ``token_id`` must be a decimal integer string; anything else
        raises ValueError.
        """
        unsigned = SignedOrder(
            salt=secrets.randbits(64),
            maker=self.address,
            signer=self.address,
            taker=ZERO_ADDRESS,
            token_id=str(int(token_id)),
            maker_amount=int(round(amount_usd * 10 ** USDC_DECIMALS)),
            taker_amount=0,
            expiration=int(self._clock()) + ORDER_TTL_SECS,
            nonce=0,
            fee_rate=0,
            side=0 if side is Side.BUY else 1,
            signature_type=0,
        )
        signed = self._account.sign_typed_data(
            domain_data=EIP712_DOMAIN,
            message_types=ORDER_TYPES,
            message_data=unsigned.typed_message(),
        )
        log.info(
            "order_signer.signed",
            token_id=unsigned.token_id[:16],
            side=side.value,
            amount=amount_usd,
            price=price,
        )
        return replace(unsigned, signature="0x" + bytes(signed.signature).hex())


# ── HMAC request signing ─────────────────────────────────────────────

def _secret_bytes(secret: str) -> bytes:
    """Decode a base64 (standard or URL-safe) secret; fall back to raw bytes."""
    try:
        return base64.b64decode(secret.replace("-", "+").replace("_", "/"), validate=True)
    except (binascii.Error, ValueError):
        return secret.encode("utf-8")


def hmac_signature(secret: str, timestamp: str, method: str, path: str, body: str = "") -> str:
    message = f"{timestamp}{method}{path}{body}"
    digest = hmac.new(_secret_bytes(secret), message.encode("utf-8"), hashlib.sha256).digest()
    return base64.urlsafe_b64encode(digest).decode("utf-8")


@dataclass(frozen=True)
class ApiCredentials:
    key: str
    secret: str
    passphrase: str


def auth_headers(
    creds: ApiCredentials, address: str, method: str, path: str, body: str = "",
    timestamp: int | None = None,
) -> dict[str, str]:
    ts = str(timestamp if timestamp is not None else int(time.time()))
    return {
        "Content-Type": "application/json",
        "POLY_ADDRESS": address,
        "POLY_API_KEY": creds.key,
        "POLY_SIGNATURE": hmac_signature(creds.secret, ts, method, path, body),
        "POLY_TIMESTAMP": ts,
        "POLY_PASSPHRASE": creds.passphrase,
    }


# ── Order entry ──────────────────────────────────────────────────────

class ClobOrderClient:
    """Authenticated order placement and cancellation."""

    def __init__(
        self,
        address: str,
        creds: ApiCredentials | None,
        base_url: str = CLOB_BASE,
        *,
        timeout: float = 15.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._address = address
        self._creds = creds
        self._base = base_url.rstrip("/")
        self._client = httpx.AsyncClient(timeout=timeout, transport=transport)

    async def close(self) -> None:
        await self._client.aclose()

    def _headers(self, method: str, path: str, body: str = "") -> dict[str, str]:
        if self._creds is None:
            raise CredentialsMissing("API Credentials missing. Cannot sign request.")
        return auth_headers(self._creds, self._address, method, path, body)

    async def post_order(self, order: SignedOrder) -> dict[str, Any]:
        path = "/order"
        body = json.dumps(order.to_dict(), separators=(",", ":"))
        headers = self._headers("POST", path, body)
        resp = await self._client.post(f"{self._base}{path}", content=body, headers=headers)
        if not resp.is_success:
            metrics.incr("orders.rejected")
            raise OrderRejected(resp.text)
        metrics.incr("orders.posted")
        try:
            data = resp.json()
        except ValueError:
            return {}
        return data if isinstance(data, dict) else {}

    async def cancel_all(self) -> list[str]:
        """Cancel every resting order of this key. Returns the cancelled ids."""
        path = "/orders"
        resp = await self._client.delete(f"{self._base}{path}", headers=self._headers("DELETE", path))
        if not resp.is_success:
            raise OrderRejected(resp.text)
        try:
            data = resp.json()
        except ValueError:
            data = {}
        cancelled = data.get("canceled", []) if isinstance(data, dict) else []
        metrics.incr("orders.cancelled", len(cancelled))
        log.info("order_client.cancel_all", cancelled=len(cancelled))
        return [str(c) for c in cancelled]
