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


class _Clock:
    def __init__(self, now: float = 0.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


class _ScriptedSource:
    """Replays the given outcomes in order; the last one repeats."""

    def __init__(self, outcomes):
        self._outcomes = list(outcomes)
        self.calls = 0

    async def fetch_protocols(self):
        outcome = self._outcomes[min(self.calls, len(self._outcomes) - 1)]
        self.calls += 1
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


def _sleep_recorder():
    delays = []

    async def sleep(seconds):
        delays.append(seconds)

    return sleep, delays


_AAVE = {"id": "111", "name": "Aave", "symbol": "AAVE", "slug": "aave", "chains": ["Ethereum"], "tvl": 1.0}


@pytest.mark.asyncio
async def test_refresh_retries_then_succeeds_and_advances_timestamp():
    mod = _load_module()
    clock = _Clock(100.0)
    sleep, delays = _sleep_recorder()
    source = _ScriptedSource([[_AAVE]])
    cache = mod._ProtocolIndexCache(source, sleep=sleep, clock=clock)

    assert await cache.refresh() is True
    first = cache.generation
    assert first.fetched_unix_s == 100.0

    source._outcomes = [httpx.ConnectError("down"), httpx.ReadTimeout("slow"), [_AAVE]]
    source.calls = 0
    clock.now = 1000.0

    assert await cache.refresh() is True

    assert source.calls == 3
    assert len(delays) == 2
    assert 0.5 <= delays[0] <= 0.7
    assert 1.0 <= delays[1] <= 1.2
    assert cache.generation.fetched_unix_s == 1000.0
    assert cache.generation.version > first.version


@pytest.mark.asyncio
async def test_refresh_exhaustion_keeps_previous_generation():
    mod = _load_module()
    sleep, delays = _sleep_recorder()
    source = _ScriptedSource([[_AAVE]])
    cache = mod._ProtocolIndexCache(source, sleep=sleep, clock=_Clock(5.0))
    await cache.refresh()
    previous = cache.generation

    source._outcomes = [httpx.ConnectError("down")]
    source.calls = 0

    assert await cache.refresh() is False

    assert source.calls == 5
    assert len(delays) == 4
    assert delays[3] >= 4.0
    assert cache.generation is previous
    assert cache.generation.records[0].name == "Aave"


@pytest.mark.asyncio
async def test_ensure_fresh_refreshes_only_when_stale_or_empty():
    mod = _load_module()
    clock = _Clock(0.0)
    source = _ScriptedSource([[_AAVE]])
    cache = mod._ProtocolIndexCache(source, ttl_ms=1000, clock=clock)

    await cache.ensure_fresh()
    assert source.calls == 1

    clock.now = 0.5
    await cache.ensure_fresh()
    assert source.calls == 1

    clock.now = 1.5
    generation = await cache.ensure_fresh()
    assert source.calls == 2
    assert generation.fetched_unix_s == 1.5


@pytest.mark.asyncio
async def test_empty_catalog_is_refetched_on_every_call():
    mod = _load_module()
    source = _ScriptedSource([[]])
    cache = mod._ProtocolIndexCache(source, clock=_Clock(0.0))

    await cache.ensure_fresh()
    await cache.ensure_fresh()

    assert source.calls == 2


def test_ttl_override_accepts_only_non_negative_integers():
    mod = _load_module()
    source = _ScriptedSource([[]])

    assert mod._ProtocolIndexCache(source).ttl_ms == 300_000
    assert mod._ProtocolIndexCache(source, ttl_ms="-5").ttl_ms == 300_000
    assert mod._ProtocolIndexCache(source, ttl_ms="abc").ttl_ms == 300_000
    assert mod._ProtocolIndexCache(source, ttl_ms=" 60000 ").ttl_ms == 60_000
    assert mod._ProtocolIndexCache(source, ttl_ms=0).ttl_ms == 0

    cache = mod._ProtocolIndexCache(source, ttl_ms="1000")
    assert cache.set_ttl_ms("1.5") is False
    assert cache.set_ttl_ms(True) is False
    assert cache.ttl_ms == 1000


@pytest.mark.asyncio
async def test_refresh_drops_malformed_entries_and_unknown_fields():
    mod = _load_module()
    payload = [
        {
            "id": "1",
            "name": "Lido",
            "symbol": "-",
            "slug": "lido",
            "chains": ["Ethereum", "Ethereum", "Solana"],
            "chainTvls": {"Ethereum": 1.5, "broken": "n/a"},
            "change_1d": 2,
            "cmcId": 8000,
            "hallmarks": [[1, "event"]],
        },
        {"name": "no id"},
        {"id": "3", "name": "   "},
        "junk",
    ]
    cache = mod._ProtocolIndexCache(_ScriptedSource([payload]), clock=_Clock(0.0))

    await cache.refresh()

    records = cache.generation.records
    assert len(records) == 1
    lido = records[0]
    assert lido.symbol is None
    assert lido.chains == ("Ethereum", "Solana")
    assert lido.chain_tvls == {"Ethereum": 1.5}
    assert lido.tvl_change_1d == 2.0
    assert lido.cmc_id == "8000"
    assert "hallmarks" not in lido.model_dump()


@pytest.mark.asyncio
async def test_index_source_fetches_with_headers_and_rejects_non_list(monkeypatch):
    mod = _load_module()
    seen = {}
    bodies = [[_AAVE], {"message": "rate limited"}]

    class _Resp:
        def __init__(self, body):
            self._body = body

        def raise_for_status(self):
            return None

        def json(self):
            return self._body

    class _Client:
        def __init__(self, *args, **kwargs):
            seen["timeout"] = kwargs.get("timeout")

        async def __aenter__(self):
            return self

        async def __aexit__(self, exc_type, exc, tb):
            return False

        async def get(self, url, headers=None):
            seen["url"] = url
            seen["headers"] = headers
            return _Resp(bodies.pop(0))

    monkeypatch.setattr(mod.httpx, "AsyncClient", _Client)
    source = mod._ProtocolIndexSource(url="https://example.test/protocols", timeout_s=15.0)

    data = await source.fetch_protocols()
    assert data[0]["name"] == "Aave"
    assert seen["url"] == "https://example.test/protocols"
    assert seen["timeout"] == 15.0
    assert seen["headers"]["Accept"] == "application/json"

    with pytest.raises(ValueError):
        await source.fetch_protocols()


def test_build_protocol_resolver_reads_ttl_from_env(monkeypatch):
    mod = _load_module()

    monkeypatch.setenv("DEFILLAMA_PROTOCOLS_TTL_MS", "60000")
    assert mod._build_protocol_resolver().cache.ttl_ms == 60_000

    monkeypatch.setenv("DEFILLAMA_PROTOCOLS_TTL_MS", "-1")
    assert mod._build_protocol_resolver().cache.ttl_ms == 300_000
