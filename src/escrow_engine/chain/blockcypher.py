"""BlockCypher chain gateway with rate limiting, retries and caching.

This module provides the production :class:`ChainGateway` with:
- A shared aiohttp session for all requests
- Redis caching of balances and deep confirmation counts
- Retry logic with exponential backoff for reads
- Rate limiting to respect provider limits
- Single-shot broadcasts (a failed broadcast is reported, never retried)
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import aiohttp
from redis.asyncio import Redis

from escrow_engine.assets import Asset, get_params
from escrow_engine.chain.gateway import (
    AddressBalance,
    BroadcastRejectedError,
    BroadcastResult,
    MalformedResponseError,
    ProviderUnavailableError,
    RateLimitedError,
    Utxo,
)

if TYPE_CHECKING:
    from escrow_engine.config import ChainSettings

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.blockcypher.com/v1"
DEFAULT_MAX_REQUESTS_PER_SECOND = 3.0
DEFAULT_MAX_RETRIES = 3
DEFAULT_RETRY_DELAY_SECONDS = 1.0
DEFAULT_REQUEST_TIMEOUT = 15.0
DEFAULT_BALANCE_CACHE_TTL_SECONDS = 15

# Confirmation counts this deep are treated as final and cached for longer.
FINAL_CONFIRMATIONS = 6
FINAL_CONFIRMATIONS_CACHE_TTL_SECONDS = 3600
UTXO_PAGE_LIMIT = 2000


class _NotFoundError(Exception):
    pass


@dataclass
class RateLimiter:
    """Token bucket rate limiter."""

    max_tokens: float
    refill_rate: float  # tokens per second
    tokens: float
    last_refill: float

    @classmethod
    def create(cls, max_requests_per_second: float) -> RateLimiter:
        """Create a rate limiter with specified max requests per second."""
        return cls(
            max_tokens=max_requests_per_second,
            refill_rate=max_requests_per_second,
            tokens=max_requests_per_second,
            last_refill=time.monotonic(),
        )

    def _refill(self) -> None:
        now = time.monotonic()
        elapsed = now - self.last_refill
        self.tokens = min(self.max_tokens, self.tokens + elapsed * self.refill_rate)
        self.last_refill = now

    async def acquire(self, tokens: float = 1.0) -> None:
        """Acquire tokens, waiting if necessary."""
        while True:
            self._refill()
            if self.tokens >= tokens:
                self.tokens -= tokens
                return
            wait_time = (tokens - self.tokens) / self.refill_rate
            await asyncio.sleep(wait_time)


class BlockCypherGateway:
    """Chain gateway backed by the BlockCypher REST API.

    Example:
        ```python
        gateway = BlockCypherGateway(api_token="...", redis=redis)
        balance = await gateway.get_balance("1BoatSLRHtKNngkdXEeobR76b53LETtpyT", Asset.BTC)
        await gateway.aclose()
        ```
    """

    def __init__(
        self,
        *,
        base_url: str = DEFAULT_BASE_URL,
        network: str = "main",
        api_token: str | None = None,
        redis: Redis | None = None,
        max_requests_per_second: float = DEFAULT_MAX_REQUESTS_PER_SECOND,
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_delay_seconds: float = DEFAULT_RETRY_DELAY_SECONDS,
        request_timeout_seconds: float = DEFAULT_REQUEST_TIMEOUT,
        balance_cache_ttl_seconds: int = DEFAULT_BALANCE_CACHE_TTL_SECONDS,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._network = network
        self._api_token = api_token
        self._redis = redis
        self._max_retries = max_retries
        self._retry_delay = retry_delay_seconds
        self._timeout = aiohttp.ClientTimeout(total=request_timeout_seconds)
        self._balance_cache_ttl = balance_cache_ttl_seconds
        self._rate_limiter = RateLimiter.create(max_requests_per_second)
        self._session: aiohttp.ClientSession | None = None
        self._cache_prefix = "chain:"

    @classmethod
    def from_settings(cls, settings: ChainSettings, *, redis: Redis | None = None) -> BlockCypherGateway:
        return cls(
            base_url=settings.provider_url,
            network=settings.network,
            api_token=settings.api_token.get_secret_value() if settings.api_token else None,
            redis=redis,
            max_requests_per_second=settings.max_requests_per_second,
            max_retries=settings.max_retries,
            retry_delay_seconds=settings.retry_delay_seconds,
            request_timeout_seconds=settings.request_timeout_seconds,
            balance_cache_ttl_seconds=settings.balance_cache_ttl_seconds,
        )

    def _url(self, asset: Asset, path: str) -> str:
        return f"{self._base_url}/{get_params(asset).provider_coin}/{self._network}/{path.lstrip('/')}"

    def _cache_key(self, key_type: str, asset: Asset, ident: str) -> str:
        return f"{self._cache_prefix}{asset.value.lower()}:{key_type}:{ident}"

    async def _get_cached(self, key: str) -> str | None:
        if not self._redis:
            return None
        try:
            value = await self._redis.get(key)
            if isinstance(value, bytes):
                return value.decode()
            return str(value) if value is not None else None
        except Exception as e:
            logger.warning("Cache get failed: %s", e)
            return None

    async def _set_cached(self, key: str, value: str, ttl: int) -> None:
        if not self._redis or ttl <= 0:
            return
        try:
            await self._redis.set(key, value, ex=ttl)
        except Exception as e:
            logger.warning("Cache set failed: %s", e)

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
        return self._session

    async def _request(
        self,
        method: str,
        url: str,
        *,
        params: dict[str, Any] | None = None,
        json_body: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Perform one HTTP request and decode the JSON body."""
        query = dict(params or {})
        if self._api_token:
            query["token"] = self._api_token

        await self._rate_limiter.acquire()
        session = self._get_session()
        async with session.request(method, url, params=query, json=json_body) as response:
            text = await response.text()
            if response.status == 429:
                raise RateLimitedError("provider rate limit exceeded")
            if response.status == 404:
                raise _NotFoundError(url)
            if response.status >= 500:
                raise ProviderUnavailableError(f"provider returned HTTP {response.status}")
            if response.status >= 400:
                raise MalformedResponseError(f"provider returned HTTP {response.status}: {text[:200]}")
            try:
                payload = json.loads(text)
            except ValueError:
                raise MalformedResponseError("provider returned invalid JSON") from None
        if not isinstance(payload, dict):
            raise MalformedResponseError("provider returned a non-object payload")
        return payload

    async def _execute_with_retry(self, operation: str, url: str, **kwargs: Any) -> dict[str, Any]:
        """Run a read request with exponential backoff.

        Raises:
            ProviderUnavailableError: If all retries fail.
            MalformedResponseError: If the provider answers with a client error.
        """
        last_error: Exception | None = None
        delay = self._retry_delay
        for attempt in range(self._max_retries):
            try:
                return await self._request("GET", url, **kwargs)
            except (ProviderUnavailableError, RateLimitedError, aiohttp.ClientError, TimeoutError) as e:
                last_error = e
                logger.warning(
                    "Chain provider %s failed (attempt %d/%d): %s",
                    operation,
                    attempt + 1,
                    self._max_retries,
                    e,
                )
                if attempt < self._max_retries - 1:
                    await asyncio.sleep(delay)
                    delay *= 2

        if isinstance(last_error, RateLimitedError):
            raise RateLimitedError(f"{operation} rate limited after all retries")
        raise ProviderUnavailableError(f"{operation} failed after all retries: {last_error}")

    async def get_balance(self, address: str, asset: Asset, *, fresh: bool = False) -> AddressBalance:
        cache_key = self._cache_key("balance", asset, address)
        cached = None if fresh else await self._get_cached(cache_key)
        if cached is not None:
            confirmed, unconfirmed = (int(part) for part in cached.split(":"))
            return AddressBalance(confirmed_sats=confirmed, unconfirmed_sats=unconfirmed)

        try:
            payload = await self._execute_with_retry(
                "get_balance", self._url(asset, f"addrs/{address}/balance")
            )
        except _NotFoundError:
            return AddressBalance(confirmed_sats=0, unconfirmed_sats=0)

        try:
            balance = AddressBalance(
                confirmed_sats=int(payload["balance"]),
                unconfirmed_sats=int(payload.get("unconfirmed_balance", 0)),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise MalformedResponseError(f"unexpected balance payload: {e}") from e

        await self._set_cached(
            cache_key,
            f"{balance.confirmed_sats}:{balance.unconfirmed_sats}",
            self._balance_cache_ttl,
        )
        return balance

    async def get_utxos(self, address: str, asset: Asset) -> list[Utxo]:
        try:
            payload = await self._execute_with_retry(
                "get_utxos",
                self._url(asset, f"addrs/{address}"),
                params={"unspentOnly": "true", "includeScript": "false", "limit": UTXO_PAGE_LIMIT},
            )
        except _NotFoundError:
            return []

        refs = list(payload.get("txrefs") or []) + list(payload.get("unconfirmed_txrefs") or [])
        utxos: dict[tuple[str, int], Utxo] = {}
        try:
            for ref in refs:
                vout = int(ref["tx_output_n"])
                if vout < 0:
                    continue
                key = (str(ref["tx_hash"]), vout)
                utxos[key] = Utxo(
                    txid=key[0],
                    vout=vout,
                    value_sats=int(ref["value"]),
                    confirmations=int(ref.get("confirmations", 0)),
                )
        except (KeyError, TypeError, ValueError) as e:
            raise MalformedResponseError(f"unexpected UTXO payload: {e}") from e
        return list(utxos.values())

    async def broadcast(self, raw_tx_hex: str, asset: Asset) -> BroadcastResult:
        """Push a signed transaction. Never retried."""
        try:
            payload = await self._request("POST", self._url(asset, "txs/push"), json_body={"tx": raw_tx_hex})
        except (aiohttp.ClientError, TimeoutError) as e:
            raise BroadcastRejectedError(f"broadcast failed: {e}") from e
        except (_NotFoundError, MalformedResponseError, ProviderUnavailableError, RateLimitedError) as e:
            raise BroadcastRejectedError(f"broadcast rejected: {e}") from e

        tx = payload.get("tx")
        tx_hash = tx.get("hash") if isinstance(tx, dict) else None
        if not tx_hash:
            raise BroadcastRejectedError("broadcast response did not include a transaction hash")
        logger.info("Broadcast %s transaction %s", asset.value, tx_hash)
        return BroadcastResult(tx_hash=str(tx_hash))

    async def get_confirmations(self, tx_hash: str, asset: Asset) -> int:
        cache_key = self._cache_key("confirmations", asset, tx_hash)
        cached = await self._get_cached(cache_key)
        if cached is not None:
            return int(cached)

        try:
            payload = await self._execute_with_retry(
                "get_confirmations", self._url(asset, f"txs/{tx_hash}"), params={"limit": 1}
            )
        except _NotFoundError:
            return 0

        try:
            confirmations = int(payload.get("confirmations", 0))
        except (TypeError, ValueError) as e:
            raise MalformedResponseError(f"unexpected transaction payload: {e}") from e

        if confirmations >= FINAL_CONFIRMATIONS:
            await self._set_cached(cache_key, str(confirmations), FINAL_CONFIRMATIONS_CACHE_TTL_SECONDS)
        return confirmations

    async def health_check(self) -> bool:
        """Check that the provider answers for every supported asset."""
        try:
            for asset in Asset:
                chain_url = f"{self._base_url}/{get_params(asset).provider_coin}/{self._network}"
                await self._execute_with_retry("health_check", chain_url)
            return True
        except (ProviderUnavailableError, RateLimitedError, MalformedResponseError, _NotFoundError):
            return False

    async def aclose(self) -> None:
        """Close the shared HTTP session."""
        if self._session is not None and not self._session.closed:
            try:
                await self._session.close()
            except Exception as e:
                logger.warning("Failed to close chain provider session: %s", e)
        self._session = None
