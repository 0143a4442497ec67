from __future__ import annotations

import asyncio
import logging
from collections import OrderedDict
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Final, Protocol

import httpx
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    RetryError,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from app.settings import Settings
from geo.rate_limit import RateLimiter


logger = logging.getLogger(__name__)

GOOGLE_GEOCODE_URL = "https://maps.googleapis.com/maps/api/geocode/json"


@dataclass(frozen=True)
class Coordinates:
    latitude: float
    longitude: float


class _NoResult:
    """Negative cache marker: the provider has no match for the address."""

    _instance: _NoResult | None = None

    def __new__(cls) -> _NoResult:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "NO_RESULT"

    def __bool__(self) -> bool:
        return False


NO_RESULT: Final = _NoResult()

GeocodeResult = Coordinates | _NoResult


class GeocodeError(Exception):
    pass


class TransientGeocodeError(GeocodeError):
    """Rate-limited or network-level failure worth retrying."""


class GeocodeBackend(Protocol):
    async def lookup(self, address: str) -> list[Coordinates]: ...


def normalize_address_key(address: str) -> str:
    return address.strip().lower()


def _retrieve_exception(task: asyncio.Task) -> None:
    # Waiters may all have timed out; mark the outcome as observed.
    if not task.cancelled():
        task.exception()


class GoogleGeocoder:
    def __init__(
        self,
        client: httpx.AsyncClient,
        api_key: str,
        *,
        url: str = GOOGLE_GEOCODE_URL,
        user_agent: str | None = None,
    ) -> None:
        self._client = client
        self._api_key = api_key
        self._url = url
        self._user_agent = user_agent

    async def lookup(self, address: str) -> list[Coordinates]:
        headers = {"Accept": "application/json"}
        if self._user_agent:
            headers["User-Agent"] = self._user_agent
        try:
            res = await self._client.get(
                self._url,
                params={"address": address, "key": self._api_key},
                headers=headers,
                timeout=httpx.Timeout(connect=5.0, read=5.0, write=5.0, pool=5.0),
            )
        except httpx.TimeoutException as e:
            raise TransientGeocodeError(f"timeout:{e.__class__.__name__}") from e
        except httpx.TransportError as e:
            raise TransientGeocodeError(f"network:{e.__class__.__name__}") from e

        if res.status_code == 429:
            raise TransientGeocodeError("http_429")
        if res.status_code != 200:
            raise GeocodeError(f"http_{res.status_code}")

        try:
            doc = res.json()
        except ValueError as e:
            raise GeocodeError("invalid_json") from e

        status = str(doc.get("status") or "")
        if status == "ZERO_RESULTS":
            return []
        if status == "OVER_QUERY_LIMIT":
            raise TransientGeocodeError("over_query_limit")
        if status != "OK":
            raise GeocodeError(f"status:{status or 'missing'}")

        results: list[Coordinates] = []
        for entry in doc.get("results") or []:
            location = (entry.get("geometry") or {}).get("location") or {}
            if location.get("lat") is None or location.get("lng") is None:
                continue
            results.append(
                Coordinates(
                    latitude=float(location["lat"]), longitude=float(location["lng"])
                )
            )
        return results


class GeoResolver:
    """Caching, rate-limited address resolver shared by all source adapters.

    Cache hits (including negative ones) never touch the limiter or the
    backend. Misses for the same key that overlap in time share one lookup.
    """

    def __init__(
        self,
        backend: GeocodeBackend | None,
        *,
        cache_size_limit: int = 1000,
        rate_limit_per_second: int = 10,
        timeout_seconds: float = 30.0,
        max_retries: int = 3,
        backoff_base_seconds: float = 1.0,
        rate_limiter: RateLimiter | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if cache_size_limit < 1:
            raise ValueError("cache_size_limit must be >= 1")
        self._backend = backend
        self.cache_size_limit = cache_size_limit
        self.timeout_seconds = timeout_seconds
        self.max_retries = max_retries
        self.backoff_base_seconds = backoff_base_seconds
        self._limiter = rate_limiter or RateLimiter(rate_limit_per_second, 1.0)
        self._sleep = sleep
        self._lock = asyncio.Lock()
        self._cache: OrderedDict[str, GeocodeResult] = OrderedDict()
        self._inflight: dict[str, asyncio.Task[GeocodeResult]] = {}

    @property
    def enabled(self) -> bool:
        return self._backend is not None

    def cache_stats(self) -> dict[str, int]:
        return {"size": len(self._cache), "limit": self.cache_size_limit}

    def cached(self, address: str) -> GeocodeResult | None:
        return self._cache.get(normalize_address_key(address))

    def clear_cache(self) -> None:
        self._cache.clear()
        logger.info("geocoding cache cleared")

    async def resolve(self, address: str) -> GeocodeResult:
        key = normalize_address_key(address or "")
        if not key:
            return NO_RESULT

        async with self._lock:
            if key in self._cache:
                logger.debug("geocode cache hit: %s", address)
                return self._cache[key]
            if self._backend is None:
                raise GeocodeError("geocoding not configured")
            task = self._inflight.get(key)
            if task is None:
                task = asyncio.create_task(self._lookup_and_store(key, address))
                task.add_done_callback(_retrieve_exception)
                self._inflight[key] = task

        try:
            return await asyncio.wait_for(
                asyncio.shield(task), timeout=self.timeout_seconds
            )
        except TimeoutError as e:
            raise GeocodeError(
                f"timed out after {self.timeout_seconds:g}s: {address}"
            ) from e

    async def resolve_many(
        self, addresses: list[str]
    ) -> list[tuple[str, GeocodeResult | None]]:
        results: list[tuple[str, GeocodeResult | None]] = []
        for address in addresses:
            try:
                results.append((address, await self.resolve(address)))
            except GeocodeError as e:
                logger.warning("geocoding failed for %s: %s", address, e)
                results.append((address, None))
        return results

    async def close(self) -> None:
        async with self._lock:
            tasks = list(self._inflight.values())
            self._inflight.clear()
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def _lookup_and_store(self, key: str, address: str) -> GeocodeResult:
        try:
            candidates = await self._lookup_with_retry(address)
            result: GeocodeResult = candidates[0] if candidates else NO_RESULT
            async with self._lock:
                self._store(key, result)
            if result is NO_RESULT:
                logger.info("no geocoding results for: %s", address)
            else:
                logger.debug(
                    "geocoded %s -> (%s, %s)",
                    address,
                    result.latitude,
                    result.longitude,
                )
            return result
        finally:
            async with self._lock:
                if self._inflight.get(key) is asyncio.current_task():
                    del self._inflight[key]

    def _log_retry(self, retry_state: RetryCallState) -> None:
        address = retry_state.args[0] if retry_state.args else "?"
        error = retry_state.outcome.exception() if retry_state.outcome else None
        logger.info(
            "geocoding %s failed (%s), retrying in %.0fs (retry %d/%d)",
            address,
            error,
            retry_state.next_action.sleep if retry_state.next_action else 0,
            retry_state.attempt_number,
            self.max_retries,
        )

    async def _lookup_with_retry(self, address: str) -> list[Coordinates]:
        assert self._backend is not None
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.max_retries + 1),
            wait=wait_exponential(multiplier=self.backoff_base_seconds),
            retry=retry_if_exception_type(TransientGeocodeError),
            before_sleep=self._log_retry,
            sleep=self._sleep,
        )
        try:
            return await retrying(self._limited_lookup, address)
        except RetryError as e:
            raise GeocodeError(f"max retries exceeded: {address}") from e

    async def _limited_lookup(self, address: str) -> list[Coordinates]:
        assert self._backend is not None
        await self._limiter.acquire()
        return await self._backend.lookup(address)

    def _store(self, key: str, result: GeocodeResult) -> None:
        self._cache[key] = result
        while len(self._cache) > self.cache_size_limit:
            evicted, _ = self._cache.popitem(last=False)
            logger.debug("geocode cache evicted: %s", evicted)


def build_resolver(settings: Settings, client: httpx.AsyncClient) -> GeoResolver:
    backend = None
    if settings.google_maps_api_key:
        backend = GoogleGeocoder(
            client, settings.google_maps_api_key, user_agent=settings.user_agent
        )
    else:
        logger.warning("GOOGLE_MAPS_API_KEY not configured, geocoding disabled")
    return GeoResolver(
        backend,
        cache_size_limit=settings.geocoding_cache_size_limit,
        rate_limit_per_second=settings.geocoding_rate_limit_per_second,
        timeout_seconds=settings.geocoding_timeout_seconds,
    )
