"""GraphQL subgraph queries with endpoint and method fallback.

POST endpoints are tried first; the last endpoint is queried with a
GET-encoded variant for environments where POST through a relay is
blocked.
"""

from __future__ import annotations

import json
import re
from typing import Any
from urllib.parse import urlencode

from mirrorbot.connectors.proxy_fetch import ProxyFetch
from mirrorbot.observability.logger import get_logger

log = get_logger(__name__)

_COMMENT_RE = re.compile(r"#.*$", re.MULTILINE)
_WS_RE = re.compile(r"\s+")


def minify_query(query: str) -> str:
    """Strip comments and collapse whitespace so the query fits in a URL."""
    return _WS_RE.sub(" ", _COMMENT_RE.sub("", query)).strip()


def build_get_url(endpoint: str, query: str, variables: dict[str, Any] | None) -> str:
    params: dict[str, str] = {"query": minify_query(query)}
    if variables:
        params["variables"] = json.dumps(variables)
    return f"{endpoint}?{urlencode(params)}"


class SubgraphClient:
    """Run a query against the first subgraph endpoint that answers."""

    def __init__(
        self,
        fetcher: ProxyFetch,
        post_urls: list[str],
        get_url: str | None = None,
    ):
        self._fetcher = fetcher
        self._endpoints: list[tuple[str, str]] = [(u, "POST") for u in post_urls]
        if get_url:
            self._endpoints.append((get_url, "GET"))

    async def query(
        self, query: str, variables: dict[str, Any] | None = None,
    ) -> dict[str, Any] | None:
        """Return the ``data`` member of the first valid response, or None."""
        variables = variables or {}
        for url, method in self._endpoints:
            if method == "POST":
                resp = await self._fetcher.fetch(
                    url,
                    method="POST",
                    headers={"Content-Type": "application/json"},
                    body=json.dumps({"query": query, "variables": variables}),
                )
            else:
                resp = await self._fetcher.fetch(build_get_url(url, query, variables))

            if not resp.ok:
                continue
            try:
                payload = resp.json()
            except ValueError:
                continue
            if not isinstance(payload, dict) or not ("data" in payload or "errors" in payload):
                continue
            if payload.get("errors"):
                log.warning("subgraph.errors", endpoint=url[:60], errors=str(payload["errors"])[:200])
            return payload.get("data")

        log.warning("subgraph.all_endpoints_failed")
        return None
