"""HTTP fetch with direct-then-relay fallback.

Public Polymarket endpoints are frequently blocked by CORS or sit behind
flaky edges. Every read in the pipeline goes through ``ProxyFetch``:

  1. Direct request (5 s). Accepted when 2xx and the body is real JSON;
     a 404 is accepted as a terminal "not found".
  2. Public CORS relays in priority order (8 s each), filtered by
     whether they support the request method. Envelope relays are
     unwrapped and their inner status checked.
  3. If everything fails, a synthetic 503 response is returned.

``fetch`` never raises for transport failures.
"""

from __future__ import annotations

import json
import time
from dataclasses import dataclass
from typing import Any, Callable
from urllib.parse import quote

import httpx

from mirrorbot.observability.logger import get_logger
from mirrorbot.observability.metrics import metrics

log = get_logger(__name__)

_HEADERS = {
    "Accept": "application/json",
    "User-Agent": "mirrorbot/1.0",
}

_EXHAUSTED_BODY = json.dumps({"error": "All proxies failed"})


# ── Response / validation types ──────────────────────────────────────

@dataclass
class FetchResponse:
    """Response-shaped result of a fetch, whichever route produced it."""
    status: int
    text: str = ""
    source: str = "direct"

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    def json(self) -> Any:
        return json.loads(self.text)


@dataclass(frozen=True)
class BodyCheck:
    ok: bool
    reason: str = ""


def validate_body(text: str | None) -> BodyCheck:
    """Check that a body is a JSON object/array and not an HTML error page."""
    trimmed = (text or "").strip()
    if not trimmed:
        return BodyCheck(False, "empty")
    if trimmed.startswith("<"):
        return BodyCheck(False, "html")
    if not (trimmed[:1] in "{[" and trimmed[-1:] in "}]"):
        return BodyCheck(False, "not_json")
    try:
        json.loads(trimmed)
    except ValueError:
        return BodyCheck(False, "malformed_json")
    return BodyCheck(True)


# ── Relay providers ──────────────────────────────────────────────────

def encode_component(value: str) -> str:
    """Percent-encode the way browsers' encodeURIComponent does."""
    return quote(value, safe="-_.!~*'()")


@dataclass(frozen=True)
class ProxyProvider:
    name: str
    base: str
    encode: bool = True
    supports_post: bool = True
    is_wrapper: bool = False

    def build_url(self, url: str, stamp: int) -> str:
        sep = "&" if "?" in url else "?"
        busted = f"{url}{sep}_cb={stamp}"
        if "allorigins" in self.base:
            return f"{self.base}{encode_component(url)}&disableCache={stamp}"
        if self.encode:
            return f"{self.base}{encode_component(busted)}"
        return f"{self.base}{busted}"


DEFAULT_PROVIDERS: tuple[ProxyProvider, ...] = (
    ProxyProvider("CorsProxy", "https://corsproxy.io/?"),
    ProxyProvider("CodeTabs", "https://api.codetabs.com/v1/proxy?quest="),
    ProxyProvider("AllOrigins Raw", "https://api.allorigins.win/raw?url=", supports_post=False),
    ProxyProvider("ThingProxy", "https://thingproxy.freeboard.io/fetch/", encode=False),
    ProxyProvider(
        "AllOrigins JSON", "https://api.allorigins.win/get?url=",
        supports_post=False, is_wrapper=True,
    ),
)

_GET_PREFERRED = "AllOrigins Raw"


def prioritized_providers(
    providers: tuple[ProxyProvider, ...] | list[ProxyProvider], method: str,
) -> list[ProxyProvider]:
    """POST: only POST-capable relays. GET: AllOrigins Raw first, rest in order."""
    if method.upper() == "POST":
        return [p for p in providers if p.supports_post]
    return sorted(providers, key=lambda p: 0 if p.name == _GET_PREFERRED else 1)


# ── Fetcher ──────────────────────────────────────────────────────────

class ProxyFetch:
    """Fetch with direct attempt, relay fallback and body validation."""

    def __init__(
        self,
        providers: tuple[ProxyProvider, ...] | list[ProxyProvider] = DEFAULT_PROVIDERS,
        *,
        direct_timeout: float = 5.0,
        proxy_timeout: float = 8.0,
        use_proxies: bool = True,
        transport: httpx.AsyncBaseTransport | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self._providers = tuple(providers)
        self._direct_timeout = direct_timeout
        self._proxy_timeout = proxy_timeout
        self._use_proxies = use_proxies
        self._transport = transport
        self._clock = clock
        self._client: httpx.AsyncClient | None = None

    def _ensure_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                headers=_HEADERS,
                transport=self._transport,
                follow_redirects=True,
            )
        return self._client

    async def close(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()

    async def _send(
        self,
        url: str,
        method: str,
        headers: dict[str, str] | None,
        body: str | None,
        timeout: float,
    ) -> httpx.Response:
        client = self._ensure_client()
        return await client.request(
            method, url, headers=headers, content=body, timeout=timeout,
        )

    async def fetch(
        self,
        url: str,
        *,
        method: str = "GET",
        headers: dict[str, str] | None = None,
        body: str | None = None,
    ) -> FetchResponse:
        method = method.upper()

        # 1. Direct
        try:
            resp = await self._send(url, method, headers, body, self._direct_timeout)
            if resp.is_success and validate_body(resp.text).ok:
                metrics.incr("proxy_fetch.direct_ok")
                return FetchResponse(resp.status_code, resp.text, "direct")
            if resp.status_code == 404:
                return FetchResponse(404, resp.text, "direct")
            log.debug("proxy_fetch.direct_rejected", url=url[:120], status=resp.status_code)
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            log.debug("proxy_fetch.direct_failed", url=url[:120], error=type(e).__name__)

        if not self._use_proxies:
            return self._exhausted(url)

        # 2. Relays
        for provider in prioritized_providers(self._providers, method):
            stamp = int(self._clock() * 1000)
            target = provider.build_url(url, stamp)
            try:
                resp = await self._send(target, method, headers, body, self._proxy_timeout)
            except (httpx.HTTPError, httpx.InvalidURL) as e:
                log.debug("proxy_fetch.relay_failed", relay=provider.name, error=type(e).__name__)
                continue
            if not resp.is_success:
                log.debug("proxy_fetch.relay_status", relay=provider.name, status=resp.status_code)
                continue

            text = resp.text
            if provider.is_wrapper:
                try:
                    envelope = json.loads(text)
                except ValueError:
                    continue
                if not isinstance(envelope, dict):
                    continue
                text = envelope.get("contents") or ""
                inner = (envelope.get("status") or {}).get("http_code")
                if inner:
                    if inner == 404:
                        return FetchResponse(404, "[]", provider.name)
                    if inner != 200:
                        continue

            if validate_body(text).ok:
                metrics.incr("proxy_fetch.relay_ok", relay=provider.name)
                log.debug("proxy_fetch.relay_ok", relay=provider.name, url=url[:120])
                return FetchResponse(200, text, provider.name)

        return self._exhausted(url)

    def _exhausted(self, url: str) -> FetchResponse:
        metrics.incr("proxy_fetch.exhausted")
        log.warning("proxy_fetch.exhausted", url=url[:120])
        return FetchResponse(503, _EXHAUSTED_BODY, "none")
