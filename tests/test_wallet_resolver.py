"""Tests for WalletResolver: prefix stripping, proxy precedence, fallbacks."""

from __future__ import annotations

import asyncio

import pytest

from fakes import EXHAUSTED, FakeFetcher, json_response

EOA = "0xabc0000000000000000000000000000000000abc"
PROXY = "0xdef0000000000000000000000000000000000def"
ZERO = "0x0000000000000000000000000000000000000000"


def _resolver(fetcher):
    from mirrorbot.engine.wallet_resolver import WalletResolver
    return WalletResolver(fetcher)


class TestCleanIdentifier:

    @pytest.mark.parametrize("raw,expected", [
        (f"https://polymarket.com/profile/{EOA}", EOA),
        (f"https://polymarket.com/profile/{EOA}?tab=activity", EOA),
        ("https://polymarket.com/@whale", "whale"),
        ("polymarket.com/@whale/", "whale"),
        ("@whale", "whale"),
        (f"  {EOA} ", EOA),
    ])
    def test_strips_prefixes(self, raw, expected):
        from mirrorbot.engine.wallet_resolver import clean_identifier
        assert clean_identifier(raw) == expected

    def test_is_address(self):
        from mirrorbot.engine.wallet_resolver import is_address
        assert is_address(EOA)
        assert not is_address("whale")
        assert not is_address(EOA[:-1])
        assert not is_address("")


class TestResolve:

    def test_proxy_wins_over_valid_address(self):
        fetcher = FakeFetcher({"/users?address=": json_response([{"proxyWallet": PROXY, "address": EOA}])})
        assert asyncio.run(_resolver(fetcher).resolve(EOA)) == PROXY

    def test_address_lookup_by_address_query(self):
        fetcher = FakeFetcher({"/users?": json_response([{"proxyWallet": PROXY}])})
        asyncio.run(_resolver(fetcher).resolve(f"https://polymarket.com/profile/{EOA}"))
        assert fetcher.urls()[0].endswith(f"/users?address={EOA}")

    def test_slug_lookup(self):
        fetcher = FakeFetcher({"/users?slug=whale": json_response([{"proxyWallet": PROXY}])})
        assert asyncio.run(_resolver(fetcher).resolve("@whale")) == PROXY

    def test_zero_proxy_falls_back_to_record_address(self):
        fetcher = FakeFetcher({"/users?slug=": json_response([{"proxyWallet": ZERO, "address": EOA}])})
        assert asyncio.run(_resolver(fetcher).resolve("whale")) == EOA

    def test_directory_down_returns_literal_address(self):
        fetcher = FakeFetcher(default=EXHAUSTED)
        assert asyncio.run(_resolver(fetcher).resolve(EOA)) == EOA

    def test_directory_down_unresolvable_slug(self):
        fetcher = FakeFetcher(default=EXHAUSTED)
        assert asyncio.run(_resolver(fetcher).resolve("whale")) is None

    def test_empty_input(self):
        fetcher = FakeFetcher()
        assert asyncio.run(_resolver(fetcher).resolve("  ")) is None
        assert fetcher.calls == []

    def test_results_cached_per_input(self):
        fetcher = FakeFetcher({"/users?": json_response([{"proxyWallet": PROXY}])})
        resolver = _resolver(fetcher)

        async def twice():
            await resolver.resolve(EOA)
            return await resolver.resolve(EOA)

        assert asyncio.run(twice()) == PROXY
        assert len(fetcher.calls) == 1

    def test_failed_resolution_retried(self):
        replies = iter([EXHAUSTED, json_response([{"proxyWallet": PROXY}])])
        fetcher = FakeFetcher({"/users?slug=whale": lambda url, body: next(replies)})
        resolver = _resolver(fetcher)

        async def flow():
            resolver.set_target("whale")
            first = await resolver.resolve("whale")
            resolver.set_target("whale")
            return first, await resolver.resolve("whale")

        assert asyncio.run(flow()) == (None, PROXY)
        assert len(fetcher.calls) == 2

    def test_set_target_invalidates_cache(self):
        fetcher = FakeFetcher({"/users?": json_response([{"proxyWallet": PROXY}])})
        resolver = _resolver(fetcher)

        async def flow():
            resolver.set_target(EOA)
            await resolver.resolve(EOA)
            resolver.set_target(EOA)  # same target keeps the cache
            await resolver.resolve(EOA)
            resolver.set_target("@other")
            await resolver.resolve(EOA)

        asyncio.run(flow())
        assert len(fetcher.calls) == 2

    def test_lookup_proxy(self):
        fetcher = FakeFetcher({"/users?address=": json_response([{"proxyWallet": PROXY}])})
        resolver = _resolver(fetcher)
        assert asyncio.run(resolver.lookup_proxy(EOA)) == PROXY
        assert asyncio.run(resolver.lookup_proxy("whale")) is None
