"""Resolve a user-entered identifier to the address positions live under.

Polymarket records trades and positions under a per-user proxy wallet,
not the EOA the user signs with. The profile directory is the source of
truth: when it reports a non-zero proxy wallet, that address wins over
whatever the operator typed, even a valid address.
"""

from __future__ import annotations

import re

from mirrorbot.chain.contracts import ZERO_ADDRESS
from mirrorbot.connectors.gamma import GAMMA_BASE
from mirrorbot.connectors.proxy_fetch import ProxyFetch, encode_component
from mirrorbot.observability.logger import get_logger

log = get_logger(__name__)

ADDRESS_RE = re.compile(r"^0x[a-fA-F0-9]{40}$")

_PREFIXES = (
    "https://polymarket.com/profile/",
    "http://polymarket.com/profile/",
    "https://polymarket.com/@",
    "http://polymarket.com/@",
    "polymarket.com/profile/",
    "polymarket.com/@",
)


def is_address(value: str | None) -> bool:
    return bool(value) and bool(ADDRESS_RE.match(value))


def clean_identifier(raw: str) -> str:
    """Strip profile URLs, query strings and ``@`` sigils from user input."""
    text = raw.strip().split("?", 1)[0].split("#", 1)[0].rstrip("/")
    for prefix in _PREFIXES:
        if text.lower().startswith(prefix):
            text = text[len(prefix):]
            break
    return text.lstrip("@").strip()


def _is_live_proxy(value: object) -> bool:
    return isinstance(value, str) and bool(value) and value.lower() != ZERO_ADDRESS


class WalletResolver:
    """Identifier -> address, with a per-input cache."""

    def __init__(self, fetcher: ProxyFetch, gamma_url: str = GAMMA_BASE):
        self._fetcher = fetcher
        self._gamma = gamma_url.rstrip("/")
        self._cache: dict[str, str] = {}
        self._target: str | None = None

    def set_target(self, identifier: str) -> None:
        """Point at a new target. A different input drops cached results."""
        if identifier != self._target:
            self._cache.clear()
            self._target = identifier

    async def _directory_lookup(self, cleaned: str) -> dict | None:
        key = "address" if is_address(cleaned) else "slug"
        url = f"{self._gamma}/users?{key}={encode_component(cleaned)}"
        resp = await self._fetcher.fetch(url)
        if not resp.ok:
            return None
        try:
            data = resp.json()
        except ValueError:
            return None
        if isinstance(data, list):
            data = data[0] if data else None
        return data if isinstance(data, dict) else None

    async def resolve(self, identifier: str) -> str | None:
        """Return the address to query for ``identifier``, or None."""
        if not identifier or not identifier.strip():
            return None
        if identifier in self._cache:
            return self._cache[identifier]

        cleaned = clean_identifier(identifier)
        user = await self._directory_lookup(cleaned) if cleaned else None

        resolved: str | None = None
        if user is not None:
            if _is_live_proxy(user.get("proxyWallet")):
                resolved = user["proxyWallet"]
            elif is_address(user.get("address")):
                resolved = user["address"]
        if resolved is None and is_address(cleaned):
            resolved = cleaned

        if resolved is None:
            log.warning("wallet_resolver.unresolved", identifier=cleaned[:42])
        else:
            log.info("wallet_resolver.resolved", identifier=cleaned[:42], address=resolved)
            self._cache[identifier] = resolved
        return resolved

    async def lookup_proxy(self, address: str) -> str | None:
        """The directory's proxy wallet for ``address``, if it has one."""
        if not is_address(address):
            return None
        user = await self._directory_lookup(address)
        if user is None:
            return None
        proxy = user.get("proxyWallet")
        return proxy if _is_live_proxy(proxy) else None
