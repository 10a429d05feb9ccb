import importlib.util
import os
from pathlib import Path

import httpx
import pytest


def _load_module():
    os.environ["MARKET_BACKEND_DISABLE_STARTUP"] = "1"

    path = Path(__file__).resolve().parents[1] / "main.py"
    spec = importlib.util.spec_from_file_location("market_backend_main", path)
    mod = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(mod)
    return mod


async def _client_for_app(app):
    transport = httpx.ASGITransport(app=app)
    return httpx.AsyncClient(transport=transport, base_url="http://test")


class _StaticCache:
    def __init__(self, mod, *records):
        self.generation = mod.CacheGeneration(
            records=tuple(mod.ProtocolRecord(**r) for r in records),
            fetched_unix_s=123.0,
            version=4,
        )
        self.ttl_ms = 300_000

    async def ensure_fresh(self):
        return self.generation


class _OneChainFetcher:
    def __init__(self, mod):
        self.mod = mod

    async def fetch(self, address, chain):
        mod = self.mod
        token = mod.TokenBalance(
            symbol="ETH",
            name="Ethereum",
            balance="0.5",
            usd_value=1250.0,
            chain=chain.key,
            decimals=18,
        )
        return mod._ChainResult(
            status=mod.ChainFetchStatus(chain=chain.key, ok=True, token_count=1),
            balances=[token],
        )


@pytest.mark.asyncio
async def test_health():
    mod = _load_module()

    async with await _client_for_app(mod.app) as client:
        r = await client.get("/health")

    assert r.status_code == 200
    assert r.json() == {"status": "ok"}


@pytest.mark.asyncio
async def test_resolve_protocols_returns_mixed_results():
    mod = _load_module()
    cache = _StaticCache(
        mod,
        {"id": "1", "name": "Aave", "symbol": "AAVE", "chains": ("Ethereum",), "tvl": 10.5},
        {"id": "2", "name": "Morpho", "symbol": "MORPHO"},
    )
    mod.PROTOCOL_RESOLVER = mod._ProtocolResolver(cache)

    async with await _client_for_app(mod.app) as client:
        r = await client.post("/protocols/resolve", json={"queries": ["morpho", "nothing", "Aave"]})

    assert r.status_code == 200
    body = r.json()
    assert body["success"] is True
    assert body["message"] == "Fetched TVL for 2 protocol(s); 1 not matched"
    assert [item["id"] for item in body["results"]] == ["morpho", "nothing", "Aave"]
    assert body["results"][0]["data"]["name"] == "Morpho"
    assert body["results"][1]["error_kind"] == "data_invalid"
    assert body["results"][2]["data"]["chains"] == ["Ethereum"]
    assert body["results"][2]["data"]["tvl"] == 10.5


@pytest.mark.asyncio
async def test_resolve_protocols_requires_queries():
    mod = _load_module()
    mod.PROTOCOL_RESOLVER = mod._ProtocolResolver(_StaticCache(mod))

    async with await _client_for_app(mod.app) as client:
        empty = await client.post("/protocols/resolve", json={"queries": []})
        invalid = await client.post("/protocols/resolve", json={"queries": "aave"})

    assert empty.status_code == 400
    assert empty.json()["code"] == "invalid_input"
    assert invalid.status_code == 422
    assert invalid.json()["code"] == "validation_error"


@pytest.mark.asyncio
async def test_resolve_protocols_drops_non_string_queries():
    mod = _load_module()
    mod.PROTOCOL_RESOLVER = mod._ProtocolResolver(_StaticCache(mod, {"id": "1", "name": "Aave"}))

    async with await _client_for_app(mod.app) as client:
        mixed = await client.post("/protocols/resolve", json={"queries": ["Aave", 5, None]})
        only_numbers = await client.post("/protocols/resolve", json={"queries": [5, 7.5]})

    assert mixed.status_code == 200
    assert [item["id"] for item in mixed.json()["results"]] == ["Aave"]
    assert mixed.json()["results"][0]["data"]["name"] == "Aave"
    assert only_numbers.status_code == 400
    assert only_numbers.json()["code"] == "invalid_input"


@pytest.mark.asyncio
async def test_protocol_index_status():
    mod = _load_module()
    mod.PROTOCOL_RESOLVER = mod._ProtocolResolver(_StaticCache(mod, {"id": "1", "name": "Aave"}))

    async with await _client_for_app(mod.app) as client:
        r = await client.get("/protocols/index")

    assert r.status_code == 200
    assert r.json() == {"version": 4, "fetched_unix_s": 123.0, "record_count": 1, "ttl_ms": 300_000}


@pytest.mark.asyncio
async def test_portfolio_endpoint():
    mod = _load_module()
    chains = [mod._CHAIN_CONFIGS["base"], mod._CHAIN_CONFIGS["polygon"]]
    mod.PORTFOLIO = mod._PortfolioAggregator(_OneChainFetcher(mod), chains)
    address = "0x" + "ab" * 20

    async with await _client_for_app(mod.app) as client:
        ok = await client.get(f"/portfolio/{address}")
        bad = await client.get("/portfolio/0x123")

    assert ok.status_code == 200
    body = ok.json()
    assert body["success"] is True
    assert body["address"] == address
    assert body["total_usd_value"] == 2500.0
    assert body["total_usd_display"] == "$2500.00"
    assert body["token_count"] == 2
    assert list(body["by_chain"]) == ["base", "polygon"]

    assert bad.status_code == 200
    assert bad.json()["success"] is False
    assert bad.json()["error"] == "invalid wallet address"
