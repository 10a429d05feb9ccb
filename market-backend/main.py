import asyncio
import decimal
import itertools
import logging
import os
import random
import re
import time
from enum import Enum
from typing import Any, Awaitable, Callable

import httpx
from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from web3 import Web3

app = FastAPI()
logger = logging.getLogger("market-backend")


def init_logging():
    load_dotenv()
    level_name = os.getenv("MARKET_BACKEND_LOG_LEVEL", "INFO").strip().upper()
    logging.basicConfig(
        level=getattr(logging, level_name, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


class FailureKind(str, Enum):
    configuration_missing = "configuration_missing"
    transient_network = "transient_network"
    data_invalid = "data_invalid"


def _classify_error(e: BaseException) -> FailureKind:
    if isinstance(e, httpx.HTTPStatusError):
        if e.response is not None and e.response.status_code >= 500:
            return FailureKind.transient_network
        return FailureKind.data_invalid
    if isinstance(e, (httpx.TransportError, asyncio.TimeoutError, TimeoutError, ConnectionError)):
        return FailureKind.transient_network
    if isinstance(e, (ValueError, KeyError, TypeError)):
        return FailureKind.data_invalid
    return FailureKind.transient_network


def _error_text(e: BaseException) -> str:
    return str(e) or type(e).__name__


_DEFAULT_DEFILLAMA_PROTOCOLS_URL = "https://api.llama.fi/protocols"
_DEFAULT_PROTOCOLS_TTL_MS = 300_000
_USER_AGENT = "market-backend/0.1"


class ProtocolRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    symbol: str | None = None
    slug: str | None = None
    chains: tuple[str, ...] = ()
    tvl: float | None = None
    tvl_change_1h: float | None = None
    tvl_change_1d: float | None = None
    tvl_change_7d: float | None = None
    url: str | None = None
    logo: str | None = None
    category: str | None = None
    address: str | None = None
    gecko_id: str | None = None
    cmc_id: str | None = None
    twitter: str | None = None
    chain_tvls: dict[str, float] = Field(default_factory=dict)


class CacheGeneration(BaseModel):
    model_config = ConfigDict(frozen=True)

    records: tuple[ProtocolRecord, ...] = ()
    fetched_unix_s: float = 0.0
    version: int = 0


class ResolutionResult(BaseModel):
    id: str
    success: bool
    data: ProtocolRecord | None = None
    error: str | None = None
    error_kind: FailureKind | None = None


class ProtocolLookupResponse(BaseModel):
    success: bool
    message: str
    results: list[ResolutionResult] = Field(default_factory=list)


def _optional_str(value: Any) -> str | None:
    if value is None or isinstance(value, (dict, list)):
        return None
    text = str(value).strip()
    # DefiLlama uses "-" for protocols without a token.
    if not text or text == "-":
        return None
    return text


def _optional_float(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError:
            return None
    return None


def _protocol_from_upstream(raw: Any) -> ProtocolRecord | None:
    """Map one upstream protocol object onto the closed record schema.

    Returns None for entries without an id or a name. Fields not named on
    ProtocolRecord are dropped.
    """
    if not isinstance(raw, dict):
        return None
    protocol_id = _optional_str(raw.get("id"))
    name = raw.get("name")
    if protocol_id is None or not isinstance(name, str) or not name.strip():
        return None

    chains: list[str] = []
    chains_raw = raw.get("chains")
    if isinstance(chains_raw, list):
        for chain in chains_raw:
            if isinstance(chain, str) and chain and chain not in chains:
                chains.append(chain)

    chain_tvls: dict[str, float] = {}
    chain_tvls_raw = raw.get("chainTvls")
    if isinstance(chain_tvls_raw, dict):
        for key, value in chain_tvls_raw.items():
            amount = _optional_float(value)
            if amount is not None:
                chain_tvls[str(key)] = amount

    return ProtocolRecord(
        id=protocol_id,
        name=name.strip(),
        symbol=_optional_str(raw.get("symbol")),
        slug=_optional_str(raw.get("slug")),
        chains=tuple(chains),
        tvl=_optional_float(raw.get("tvl")),
        tvl_change_1h=_optional_float(raw.get("change_1h")),
        tvl_change_1d=_optional_float(raw.get("change_1d")),
        tvl_change_7d=_optional_float(raw.get("change_7d")),
        url=_optional_str(raw.get("url")),
        logo=_optional_str(raw.get("logo")),
        category=_optional_str(raw.get("category")),
        address=_optional_str(raw.get("address")),
        gecko_id=_optional_str(raw.get("gecko_id")),
        cmc_id=_optional_str(raw.get("cmcId")),
        twitter=_optional_str(raw.get("twitter")),
        chain_tvls=chain_tvls,
    )


def _parse_ttl_ms(raw: Any) -> int | None:
    if raw is None or isinstance(raw, bool):
        return None
    if isinstance(raw, int):
        return raw if raw >= 0 else None
    text = str(raw).strip()
    if not re.fullmatch(r"[0-9]+", text):
        return None
    return int(text)


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = float(raw)
    except ValueError:
        value = -1.0
    if not value > 0:
        logger.warning("Ignoring invalid %s=%r (keeping %s)", name, raw, default)
        return default
    return value


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    text = raw.strip()
    if not re.fullmatch(r"[0-9]+", text) or int(text) == 0:
        logger.warning("Ignoring invalid %s=%r (keeping %s)", name, raw, default)
        return default
    return int(text)


def _load_protocol_index_config() -> dict[str, Any]:
    return {
        "url": os.getenv("DEFILLAMA_PROTOCOLS_URL", _DEFAULT_DEFILLAMA_PROTOCOLS_URL).strip(),
        "timeout_s": _env_float("DEFILLAMA_TIMEOUT_SECONDS", 15.0),
        "ttl_ms": os.getenv("DEFILLAMA_PROTOCOLS_TTL_MS"),
    }


class _ProtocolIndexSource:
    def __init__(self, url: str = _DEFAULT_DEFILLAMA_PROTOCOLS_URL, timeout_s: float = 15.0) -> None:
        self.url = url
        self.timeout_s = timeout_s

    async def fetch_protocols(self) -> list[Any]:
        async with httpx.AsyncClient(timeout=self.timeout_s) as client:
            resp = await client.get(
                self.url,
                headers={"Accept": "application/json", "User-Agent": _USER_AGENT},
            )
            resp.raise_for_status()
            data = resp.json()

        if not isinstance(data, list):
            raise ValueError("unexpected response")
        return data


class _ProtocolIndexCache:
    """TTL-bounded, atomically swapped generation of protocol records.

    Refreshes are not serialized: two callers that both see a stale
    generation each run their own fetch, and the last one to finish wins.
    """

    def __init__(
        self,
        source: _ProtocolIndexSource,
        ttl_ms: Any = None,
        max_attempts: int = 5,
        base_delay_ms: float = 500.0,
        jitter_ms: float = 200.0,
        sleep: Callable[[float], Awaitable[Any]] | None = None,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self._source = source
        self._ttl_ms = _DEFAULT_PROTOCOLS_TTL_MS
        if ttl_ms is not None:
            self.set_ttl_ms(ttl_ms)
        self._max_attempts = max(1, int(max_attempts))
        self._base_delay_ms = base_delay_ms
        self._jitter_ms = jitter_ms
        self._sleep = sleep or asyncio.sleep
        self._clock = clock or time.time
        self._versions = itertools.count(1)
        self._generation = CacheGeneration()

    @property
    def generation(self) -> CacheGeneration:
        return self._generation

    @property
    def ttl_ms(self) -> int:
        return self._ttl_ms

    def set_ttl_ms(self, raw: Any) -> bool:
        parsed = _parse_ttl_ms(raw)
        if parsed is None:
            logger.warning("[protocol-index] ignoring invalid TTL override %r (keeping %sms)", raw, self._ttl_ms)
            return False
        self._ttl_ms = parsed
        return True

    def is_stale(self, generation: CacheGeneration | None = None) -> bool:
        gen = self._generation if generation is None else generation
        if not gen.records:
            return True
        age_ms = (self._clock() - gen.fetched_unix_s) * 1000.0
        return age_ms > self._ttl_ms

    async def ensure_fresh(self) -> CacheGeneration:
        if self.is_stale():
            await self.refresh()
        return self._generation

    def _backoff_ms(self, attempt: int) -> float:
        return self._base_delay_ms * (2 ** (attempt - 1)) + random.uniform(0, self._jitter_ms)

    async def refresh(self) -> bool:
        """Fetch the catalog and swap in a new generation.

        Returns False when every attempt failed; the previous generation is
        kept in that case.
        """
        for attempt in range(1, self._max_attempts + 1):
            try:
                logger.debug("[protocol-index] loading protocols (attempt %d/%d)", attempt, self._max_attempts)
                raw = await self._source.fetch_protocols()
            except Exception as e:
                if attempt == self._max_attempts:
                    logger.error(
                        "[protocol-index] failed to load protocols after %d attempts: %s",
                        self._max_attempts,
                        _error_text(e),
                    )
                    return False
                delay_ms = self._backoff_ms(attempt)
                logger.warning(
                    "[protocol-index] fetch failed (attempt %d): %s. Retrying in %.0fms",
                    attempt,
                    _error_text(e),
                    delay_ms,
                )
                await self._sleep(delay_ms / 1000.0)
                continue

            records = [r for r in (_protocol_from_upstream(item) for item in raw) if r is not None]
            dropped = len(raw) - len(records)
            if dropped:
                logger.warning("[protocol-index] dropped %d malformed protocol entries", dropped)
            self._generation = CacheGeneration(
                records=tuple(records),
                fetched_unix_s=self._clock(),
                version=next(self._versions),
            )
            logger.info("[protocol-index] protocols loaded: %d (ttl_ms=%d)", len(records), self._ttl_ms)
            return True
        return False


class _MatchTier:
    def __init__(self, label: str, field: Callable[[ProtocolRecord], str | None], prefix: bool = False) -> None:
        self.label = label
        self._field = field
        self._prefix = prefix

    def attempt(self, records: tuple[ProtocolRecord, ...], query_lower: str) -> ProtocolRecord | None:
        for record in records:
            value = (self._field(record) or "").lower()
            if not value:
                continue
            if self._prefix:
                if value.startswith(query_lower):
                    return record
            elif value == query_lower:
                return record
        return None


_MATCH_TIERS: tuple[_MatchTier, ...] = (
    _MatchTier("exact_name", lambda r: r.name),
    _MatchTier("exact_symbol", lambda r: r.symbol),
    _MatchTier("exact_slug", lambda r: r.slug),
    _MatchTier("name_prefix", lambda r: r.name, prefix=True),
    _MatchTier("slug_prefix", lambda r: r.slug, prefix=True),
)


class _ProtocolResolver:
    def __init__(self, cache: _ProtocolIndexCache, tiers: tuple[_MatchTier, ...] = _MATCH_TIERS) -> None:
        self.cache = cache
        self._tiers = tiers

    def match(self, records: tuple[ProtocolRecord, ...], query: str) -> ProtocolRecord | None:
        query_lower = query.lower()
        for tier in self._tiers:
            picked = tier.attempt(records, query_lower)
            if picked is not None:
                return picked
        return None

    async def resolve(self, queries: list[str]) -> list[ResolutionResult]:
        """Resolve each query against one generation, preserving input order."""
        generation: CacheGeneration | None = None
        results: list[ResolutionResult] = []
        for raw in queries:
            query = raw.strip() if isinstance(raw, str) else ""
            if not query:
                results.append(
                    ResolutionResult(
                        id=query,
                        success=False,
                        error="Empty protocol name",
                        error_kind=FailureKind.data_invalid,
                    )
                )
                continue

            if generation is None:
                generation = await self.cache.ensure_fresh()

            picked = self.match(generation.records, query)
            if picked is None:
                results.append(
                    ResolutionResult(
                        id=query,
                        success=False,
                        error=f"No protocol match for: {query}",
                        error_kind=FailureKind.data_invalid,
                    )
                )
            else:
                results.append(ResolutionResult(id=query, success=True, data=picked))
        return results

    async def resolve_protocols(self, queries: list[str]) -> ProtocolLookupResponse:
        results = await self.resolve(queries)
        matched = sum(1 for r in results if r.success)
        failed = len(results) - matched
        if matched == 0:
            return ProtocolLookupResponse(
                success=False,
                message="No protocols matched the provided names",
                results=results,
            )
        message = f"Fetched TVL for {matched} protocol(s)"
        if failed:
            message += f"; {failed} not matched"
        return ProtocolLookupResponse(success=True, message=message, results=results)


_DEFAULT_COINGECKO_BASE_URL = "https://pro-api.coingecko.com/api/v3"
_DEFAULT_PORTFOLIO_CHAINS = "base,ethereum,polygon"


class _ChainConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    key: str
    name: str
    native_symbol: str
    native_name: str
    native_coingecko_id: str
    native_decimals: int = 18
    coingecko_platform: str
    alchemy_url_template: str


_CHAIN_CONFIGS: dict[str, _ChainConfig] = {
    c.key: c
    for c in (
        _ChainConfig(
            key="base",
            name="Base",
            native_symbol="ETH",
            native_name="Ethereum",
            native_coingecko_id="ethereum",
            coingecko_platform="base",
            alchemy_url_template="https://base-mainnet.g.alchemy.com/v2/{key}",
        ),
        _ChainConfig(
            key="ethereum",
            name="Ethereum",
            native_symbol="ETH",
            native_name="Ethereum",
            native_coingecko_id="ethereum",
            coingecko_platform="ethereum",
            alchemy_url_template="https://eth-mainnet.g.alchemy.com/v2/{key}",
        ),
        _ChainConfig(
            key="polygon",
            name="Polygon",
            native_symbol="MATIC",
            native_name="Polygon",
            native_coingecko_id="matic-network",
            coingecko_platform="polygon-pos",
            alchemy_url_template="https://polygon-mainnet.g.alchemy.com/v2/{key}",
        ),
        _ChainConfig(
            key="arbitrum",
            name="Arbitrum",
            native_symbol="ETH",
            native_name="Ethereum",
            native_coingecko_id="ethereum",
            coingecko_platform="arbitrum-one",
            alchemy_url_template="https://arb-mainnet.g.alchemy.com/v2/{key}",
        ),
        _ChainConfig(
            key="optimism",
            name="Optimism",
            native_symbol="ETH",
            native_name="Ethereum",
            native_coingecko_id="ethereum",
            coingecko_platform="optimistic-ethereum",
            alchemy_url_template="https://opt-mainnet.g.alchemy.com/v2/{key}",
        ),
        _ChainConfig(
            key="scroll",
            name="Scroll",
            native_symbol="ETH",
            native_name="Ethereum",
            native_coingecko_id="ethereum",
            coingecko_platform="scroll",
            alchemy_url_template="https://scroll-mainnet.g.alchemy.com/v2/{key}",
        ),
        _ChainConfig(
            key="base-sepolia",
            name="Base Sepolia",
            native_symbol="ETH",
            native_name="Ethereum",
            native_coingecko_id="ethereum",
            coingecko_platform="base",
            alchemy_url_template="https://base-sepolia.g.alchemy.com/v2/{key}",
        ),
        _ChainConfig(
            key="ethereum-sepolia",
            name="Ethereum Sepolia",
            native_symbol="ETH",
            native_name="Ethereum",
            native_coingecko_id="ethereum",
            coingecko_platform="ethereum",
            alchemy_url_template="https://eth-sepolia.g.alchemy.com/v2/{key}",
        ),
    )
}


_ERC20_ABI = [
    {
        "constant": True,
        "inputs": [],
        "name": "decimals",
        "outputs": [{"name": "", "type": "uint8"}],
        "payable": False,
        "stateMutability": "view",
        "type": "function",
    },
    {
        "constant": True,
        "inputs": [],
        "name": "symbol",
        "outputs": [{"name": "", "type": "string"}],
        "payable": False,
        "stateMutability": "view",
        "type": "function",
    },
    {
        "constant": True,
        "inputs": [],
        "name": "name",
        "outputs": [{"name": "", "type": "string"}],
        "payable": False,
        "stateMutability": "view",
        "type": "function",
    },
]


class TokenBalance(BaseModel):
    symbol: str
    name: str
    balance: str
    usd_value: float
    chain: str
    contract_address: str | None = None
    decimals: int


class ChainFetchStatus(BaseModel):
    chain: str
    ok: bool
    skipped: bool = False
    token_count: int = 0
    error_kind: FailureKind | None = None
    error: str | None = None


class PortfolioSnapshot(BaseModel):
    address: str
    success: bool
    total_usd_value: float = 0.0
    total_usd_display: str = "$0.00"
    token_count: int = 0
    tokens: list[TokenBalance] = Field(default_factory=list)
    by_chain: dict[str, list[TokenBalance]] = Field(default_factory=dict)
    no_tokens_found: bool = False
    chains: list[ChainFetchStatus] = Field(default_factory=list)
    error: str | None = None
    timestamp_unix_s: float = Field(default_factory=time.time)

    @classmethod
    def failure(cls, address: str, error: str) -> "PortfolioSnapshot":
        return cls(address=address, success=False, error=error)


class _TokenInfo(BaseModel):
    symbol: str
    name: str
    decimals: int
    price: float = 0.0


class _ChainResult(BaseModel):
    status: ChainFetchStatus
    balances: list[TokenBalance] = Field(default_factory=list)


def _rpc_env_key(chain_key: str) -> str:
    return chain_key.upper().replace("-", "_") + "_RPC_URL"


def _load_portfolio_config() -> dict[str, Any]:
    chains: list[str] = []
    for key in os.getenv("MARKET_BACKEND_PORTFOLIO_CHAINS", _DEFAULT_PORTFOLIO_CHAINS).split(","):
        key = key.strip().lower()
        if not key or key in chains:
            continue
        if key not in _CHAIN_CONFIGS:
            logger.warning("Unsupported chain %r in MARKET_BACKEND_PORTFOLIO_CHAINS, ignoring", key)
            continue
        chains.append(key)

    alchemy_key = os.getenv("ALCHEMY_API_KEY", "").strip()
    rpc_urls: dict[str, str] = {}
    for key in chains:
        url = os.getenv(_rpc_env_key(key), "").strip()
        if not url and alchemy_key:
            url = _CHAIN_CONFIGS[key].alchemy_url_template.format(key=alchemy_key)
        if url:
            rpc_urls[key] = url

    return {
        "chains": chains,
        "rpc_urls": rpc_urls,
        "coingecko_api_key": os.getenv("COINGECKO_API_KEY", "").strip(),
        "coingecko_base_url": os.getenv("COINGECKO_BASE_URL", _DEFAULT_COINGECKO_BASE_URL).strip(),
        "price_timeout_s": _env_float("COINGECKO_TIMEOUT_SECONDS", 10.0),
        "rpc_timeout_s": _env_float("MARKET_BACKEND_RPC_TIMEOUT_SECONDS", 15.0),
        "chain_timeout_s": _env_float("MARKET_BACKEND_CHAIN_TIMEOUT_SECONDS", 45.0),
        "token_concurrency": _env_int("MARKET_BACKEND_TOKEN_CONCURRENCY", 8),
    }


def _w3(rpc_url: str) -> Web3:
    timeout_s = _env_float("MARKET_BACKEND_RPC_TIMEOUT_SECONDS", 15.0)
    return Web3(Web3.HTTPProvider(rpc_url, request_kwargs={"timeout": timeout_s}))


def _from_wei(amount_wei: int, decimals: int) -> decimal.Decimal:
    ctx = decimal.Context(prec=80)
    d = ctx.create_decimal(amount_wei)
    scale = ctx.power(ctx.create_decimal(10), ctx.create_decimal(decimals))
    return ctx.divide(d, scale)


def _format_amount(amount: decimal.Decimal) -> str:
    if amount == 0:
        return "0"
    return format(amount.normalize(), "f")


def _usd_value(amount: decimal.Decimal, price: float) -> float:
    return float(amount * decimal.Decimal(str(price)))


def _parse_quantity(value: Any) -> int:
    if value is None:
        return 0
    if isinstance(value, bool):
        raise ValueError("invalid quantity")
    if isinstance(value, int):
        return value
    text = str(value).strip().lower()
    if text in {"", "0x"}:
        return 0
    if text.startswith("0x"):
        return int(text, 16)
    return int(text)


def _dig(data: Any, *keys: str) -> Any:
    for key in keys:
        if not isinstance(data, dict):
            return None
        data = data.get(key)
    return data


class _CoinGeckoClient:
    def __init__(self, api_key: str = "", base_url: str = _DEFAULT_COINGECKO_BASE_URL, timeout_s: float = 10.0) -> None:
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.timeout_s = timeout_s

    @property
    def has_credentials(self) -> bool:
        return bool(self.api_key)

    def _headers(self) -> dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.api_key:
            headers["x-cg-pro-api-key"] = self.api_key
        return headers

    async def token_info(self, platform: str, contract_address: str) -> _TokenInfo:
        url = f"{self.base_url}/coins/{platform}/contract/{contract_address}"
        async with httpx.AsyncClient(timeout=self.timeout_s) as client:
            resp = await client.get(url, headers=self._headers())
            resp.raise_for_status()
            data = resp.json()

        if not isinstance(data, dict):
            raise ValueError("unexpected response")

        decimals = _dig(data, "detail_platforms", platform, "decimal_place")
        price = _optional_float(_dig(data, "market_data", "current_price", "usd"))
        return _TokenInfo(
            symbol=str(data.get("symbol") or "").upper(),
            name=str(data.get("name") or "Unknown Token"),
            decimals=decimals if isinstance(decimals, int) and not isinstance(decimals, bool) else 18,
            price=price or 0.0,
        )

    async def native_price_usd(self, coingecko_id: str) -> float:
        url = f"{self.base_url}/simple/price"
        params = {"ids": coingecko_id, "vs_currencies": "usd"}
        async with httpx.AsyncClient(timeout=self.timeout_s) as client:
            resp = await client.get(url, params=params, headers=self._headers())
            resp.raise_for_status()
            data = resp.json()

        return _optional_float(_dig(data, coingecko_id, "usd")) or 0.0


class _OnChainMetadataReader:
    async def read(self, rpc_url: str, contract_address: str) -> _TokenInfo:
        w3 = _w3(rpc_url)
        token_c = w3.eth.contract(address=Web3.to_checksum_address(contract_address), abi=_ERC20_ABI)
        symbol, name, decimals = await asyncio.gather(
            asyncio.to_thread(token_c.functions.symbol().call),
            asyncio.to_thread(token_c.functions.name().call),
            asyncio.to_thread(token_c.functions.decimals().call),
        )
        return _TokenInfo(
            symbol=(str(symbol or "") or "UNKNOWN").upper(),
            name=str(name or "") or "Unknown Token",
            decimals=int(decimals),
            price=0.0,
        )


class _PriceResolver:
    """Token metadata and USD price: CoinGecko first, on-chain metadata second."""

    def __init__(self, pricing: _CoinGeckoClient | None, metadata: _OnChainMetadataReader) -> None:
        self._pricing = pricing
        self._metadata = metadata

    async def resolve_token(self, chain: _ChainConfig, rpc_url: str, contract_address: str) -> _TokenInfo | None:
        if self._pricing is not None and self._pricing.has_credentials:
            try:
                return await self._pricing.token_info(chain.coingecko_platform, contract_address)
            except Exception as e:
                logger.warning("CoinGecko error for %s on %s: %s", contract_address, chain.key, _error_text(e))

        try:
            return await self._metadata.read(rpc_url, contract_address)
        except Exception as e:
            logger.warning(
                "Failed to fetch on-chain metadata for %s on %s: %s",
                contract_address,
                chain.key,
                _error_text(e),
            )
        return None

    async def native_price(self, chain: _ChainConfig) -> float:
        if self._pricing is None:
            return 0.0
        try:
            return await self._pricing.native_price_usd(chain.native_coingecko_id)
        except Exception as e:
            logger.error("Failed to fetch %s price: %s", chain.native_symbol, _error_text(e))
            return 0.0


class _ChainBalanceFetcher:
    def __init__(
        self,
        prices: _PriceResolver,
        rpc_urls: dict[str, str],
        timeout_s: float = 15.0,
        token_concurrency: int = 8,
    ) -> None:
        self._prices = prices
        self._rpc_urls = dict(rpc_urls)
        self._timeout_s = timeout_s
        self._token_concurrency = max(1, int(token_concurrency))

    async def _rpc(self, client: httpx.AsyncClient, rpc_url: str, request_id: int, method: str, params: list[Any]) -> Any:
        resp = await client.post(
            rpc_url,
            json={"jsonrpc": "2.0", "id": request_id, "method": method, "params": params},
        )
        resp.raise_for_status()
        body = resp.json()
        if not isinstance(body, dict):
            raise ValueError("unexpected response")
        if body.get("error"):
            raise ValueError(f"rpc error: {body['error']}")
        return body.get("result")

    async def _token_balances(self, client: httpx.AsyncClient, rpc_url: str, address: str) -> list[tuple[Any, Any]]:
        result = await self._rpc(client, rpc_url, 1, "alchemy_getTokenBalances", [address])
        rows = _dig(result, "tokenBalances")
        if rows is None:
            return []
        if not isinstance(rows, list):
            raise ValueError("unexpected tokenBalances payload")
        return [(row.get("contractAddress"), row.get("tokenBalance")) for row in rows if isinstance(row, dict)]

    async def _native_balance(self, client: httpx.AsyncClient, rpc_url: str, address: str) -> int:
        result = await self._rpc(client, rpc_url, 2, "eth_getBalance", [address, "latest"])
        return _parse_quantity(result)

    async def _native_entry(self, chain: _ChainConfig, native_wei: int) -> TokenBalance:
        price = await self._prices.native_price(chain)
        amount = _from_wei(native_wei, chain.native_decimals)
        return TokenBalance(
            symbol=chain.native_symbol,
            name=chain.native_name,
            balance=_format_amount(amount),
            usd_value=_usd_value(amount, price),
            chain=chain.key,
            decimals=chain.native_decimals,
        )

    async def _token_entry(
        self,
        chain: _ChainConfig,
        rpc_url: str,
        contract_address: Any,
        raw_balance: Any,
        semaphore: asyncio.Semaphore,
    ) -> TokenBalance | None:
        try:
            balance = _parse_quantity(raw_balance)
            if balance == 0:
                return None
            if not isinstance(contract_address, str) or not contract_address:
                raise ValueError("missing contract address")

            async with semaphore:
                info = await self._prices.resolve_token(chain, rpc_url, contract_address)
            if info is None:
                return None

            amount = _from_wei(balance, info.decimals)
            return TokenBalance(
                symbol=info.symbol,
                name=info.name,
                balance=_format_amount(amount),
                usd_value=_usd_value(amount, info.price),
                chain=chain.key,
                contract_address=contract_address,
                decimals=info.decimals,
            )
        except Exception as e:
            logger.warning("Skipping token %s on %s: %s", contract_address, chain.key, _error_text(e))
            return None

    async def fetch(self, address: str, chain: _ChainConfig) -> _ChainResult:
        """Native and ERC-20 balances of one wallet on one chain.

        Never raises: a missing endpoint or a failed balance call yields an
        empty result whose status says why.
        """
        rpc_url = self._rpc_urls.get(chain.key, "")
        if not rpc_url:
            logger.warning("%s not configured, skipping %s", _rpc_env_key(chain.key), chain.key)
            return _ChainResult(
                status=ChainFetchStatus(
                    chain=chain.key,
                    ok=False,
                    skipped=True,
                    error_kind=FailureKind.configuration_missing,
                    error=f"{_rpc_env_key(chain.key)} not configured",
                )
            )

        try:
            async with httpx.AsyncClient(timeout=self._timeout_s) as client:
                outcomes = await asyncio.gather(
                    self._token_balances(client, rpc_url, address),
                    self._native_balance(client, rpc_url, address),
                    return_exceptions=True,
                )
            for outcome in outcomes:
                if isinstance(outcome, BaseException):
                    raise outcome
            token_rows, native_wei = outcomes
        except Exception as e:
            logger.error("Failed to fetch balances for %s: %s", chain.key, _error_text(e))
            return _ChainResult(
                status=ChainFetchStatus(
                    chain=chain.key,
                    ok=False,
                    error_kind=_classify_error(e),
                    error=_error_text(e),
                )
            )

        semaphore = asyncio.Semaphore(self._token_concurrency)
        native_tasks = [self._native_entry(chain, native_wei)] if native_wei > 0 else []
        entries = await asyncio.gather(
            *native_tasks,
            *(self._token_entry(chain, rpc_url, contract, raw, semaphore) for contract, raw in token_rows),
        )
        balances = [entry for entry in entries if entry is not None]
        return _ChainResult(
            status=ChainFetchStatus(chain=chain.key, ok=True, token_count=len(balances)),
            balances=balances,
        )


class _PortfolioAggregator:
    def __init__(self, fetcher: _ChainBalanceFetcher, chains: list[_ChainConfig], chain_timeout_s: float = 45.0) -> None:
        self._fetcher = fetcher
        self._chains = list(chains)
        self._chain_timeout_s = chain_timeout_s

    async def _fetch_chain(self, address: str, chain: _ChainConfig) -> _ChainResult:
        try:
            return await asyncio.wait_for(self._fetcher.fetch(address, chain), timeout=self._chain_timeout_s)
        except asyncio.TimeoutError:
            logger.warning("Balance fetch for %s timed out after %.1fs", chain.key, self._chain_timeout_s)
            return _ChainResult(
                status=ChainFetchStatus(
                    chain=chain.key,
                    ok=False,
                    error_kind=FailureKind.transient_network,
                    error="timeout",
                )
            )
        except Exception as e:
            logger.error("Failed to fetch balances for %s: %s", chain.key, _error_text(e))
            return _ChainResult(
                status=ChainFetchStatus(
                    chain=chain.key,
                    ok=False,
                    error_kind=_classify_error(e),
                    error=_error_text(e),
                )
            )

    def _merge(self, address: str, results: list[_ChainResult]) -> PortfolioSnapshot:
        statuses = [r.status for r in results]
        attempted = [s for s in statuses if not s.skipped]
        if attempted and not any(s.ok for s in attempted):
            return PortfolioSnapshot(
                address=address,
                success=False,
                chains=statuses,
                error="Could not fetch balances from any chain",
            )

        tokens = [b for r in results for b in r.balances]
        total = sum(t.usd_value for t in tokens)
        tokens = sorted(tokens, key=lambda t: t.usd_value, reverse=True)

        by_chain: dict[str, list[TokenBalance]] = {}
        for token in tokens:
            by_chain.setdefault(token.chain, []).append(token)

        return PortfolioSnapshot(
            address=address,
            success=True,
            total_usd_value=total,
            total_usd_display=f"${total:.2f}",
            token_count=len(tokens),
            tokens=tokens,
            by_chain=by_chain,
            no_tokens_found=not tokens,
            chains=statuses,
        )

    async def get_portfolio(self, address: str) -> PortfolioSnapshot:
        """Merged balances of one wallet across every configured chain."""
        addr = (address or "").strip()
        if not Web3.is_address(addr):
            logger.warning("Rejecting portfolio request for invalid address %r", addr)
            return PortfolioSnapshot.failure(addr, "invalid wallet address")
        if int(addr, 16) == 0:
            return PortfolioSnapshot.failure(addr, "zero address has no portfolio")

        try:
            results = await asyncio.gather(*(self._fetch_chain(addr, chain) for chain in self._chains))
            return self._merge(addr, list(results))
        except Exception as e:
            logger.error("Error fetching wallet info for %s: %s", addr, _error_text(e))
            return PortfolioSnapshot.failure(addr, _error_text(e))


def _build_protocol_resolver() -> _ProtocolResolver:
    cfg = _load_protocol_index_config()
    source = _ProtocolIndexSource(url=cfg["url"], timeout_s=cfg["timeout_s"])
    cache = _ProtocolIndexCache(source, ttl_ms=cfg["ttl_ms"])
    return _ProtocolResolver(cache)


def _build_portfolio_aggregator() -> _PortfolioAggregator:
    cfg = _load_portfolio_config()
    pricing = _CoinGeckoClient(
        api_key=cfg["coingecko_api_key"],
        base_url=cfg["coingecko_base_url"],
        timeout_s=cfg["price_timeout_s"],
    )
    prices = _PriceResolver(pricing, _OnChainMetadataReader())
    fetcher = _ChainBalanceFetcher(
        prices,
        cfg["rpc_urls"],
        timeout_s=cfg["rpc_timeout_s"],
        token_concurrency=cfg["token_concurrency"],
    )
    chains = [_CHAIN_CONFIGS[key] for key in cfg["chains"]]
    return _PortfolioAggregator(fetcher, chains, chain_timeout_s=cfg["chain_timeout_s"])


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=422,
        content={
            "code": "validation_error",
            "message": "Invalid request",
            "details": exc.errors(),
        },
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    detail = exc.detail
    if isinstance(detail, dict) and ("code" in detail or "message" in detail):
        payload = {
            "code": detail.get("code", "http_error"),
            "message": detail.get("message", "Request failed"),
        }
        if "details" in detail:
            payload["details"] = detail["details"]
        return JSONResponse(status_code=exc.status_code, content=payload)

    return JSONResponse(
        status_code=exc.status_code,
        content={
            "code": "http_error",
            "message": str(detail) if detail is not None else "Request failed",
        },
    )


PROTOCOL_RESOLVER: _ProtocolResolver | None = None
PORTFOLIO: _PortfolioAggregator | None = None


@app.on_event("startup")
async def startup_event():
    init_logging()
    global PROTOCOL_RESOLVER
    global PORTFOLIO

    if os.getenv("MARKET_BACKEND_DISABLE_STARTUP", "").strip() == "1":
        return

    PROTOCOL_RESOLVER = _build_protocol_resolver()
    PORTFOLIO = _build_portfolio_aggregator()

    if os.getenv("MARKET_BACKEND_WARM_INDEX", "1").strip().lower() not in {"0", "false", "no"}:
        await PROTOCOL_RESOLVER.cache.refresh()


def _protocol_resolver() -> _ProtocolResolver:
    global PROTOCOL_RESOLVER
    if PROTOCOL_RESOLVER is None:
        PROTOCOL_RESOLVER = _build_protocol_resolver()
    return PROTOCOL_RESOLVER


def _portfolio_aggregator() -> _PortfolioAggregator:
    global PORTFOLIO
    if PORTFOLIO is None:
        PORTFOLIO = _build_portfolio_aggregator()
    return PORTFOLIO


class ProtocolResolveRequest(BaseModel):
    queries: list[Any] = Field(default_factory=list)


@app.get("/health")
async def health():
    return {"status": "ok"}


@app.post("/protocols/resolve")
async def protocols_resolve(request: ProtocolResolveRequest):
    queries = [q for q in request.queries if isinstance(q, str)]
    if not queries:
        raise HTTPException(status_code=400, detail={"code": "invalid_input", "message": "queries is required"})
    return await _protocol_resolver().resolve_protocols(queries)


@app.get("/protocols/index")
async def protocols_index():
    cache = _protocol_resolver().cache
    generation = cache.generation
    return {
        "version": generation.version,
        "fetched_unix_s": generation.fetched_unix_s,
        "record_count": len(generation.records),
        "ttl_ms": cache.ttl_ms,
    }


@app.get("/portfolio/{address}")
async def portfolio(address: str):
    return await _portfolio_aggregator().get_portfolio(address)
