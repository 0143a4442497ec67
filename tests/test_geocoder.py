import asyncio
from collections import Counter

import httpx
import pytest
import respx

from geo.geocoder import (
    GOOGLE_GEOCODE_URL,
    NO_RESULT,
    Coordinates,
    GeocodeError,
    GeoResolver,
    GoogleGeocoder,
    TransientGeocodeError,
)
from geo.rate_limit import RateLimiter


class StubBackend:
    def __init__(self, failures: int = 0, error: Exception | None = None) -> None:
        self.calls: Counter[str] = Counter()
        self.failures = failures
        self.error = error

    async def lookup(self, address: str) -> list[Coordinates]:
        self.calls[address] += 1
        await asyncio.sleep(0)
        if self.error is not None:
            raise self.error
        if self.failures > 0:
            self.failures -= 1
            raise TransientGeocodeError("http_429")
        if "nowhere" in address.lower():
            return []
        return [Coordinates(latitude=40.7, longitude=-74.0)]


class RecordingSleep:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


def _resolver(backend, **kwargs) -> GeoResolver:
    kwargs.setdefault("rate_limiter", RateLimiter(1000, 1.0))
    return GeoResolver(backend, **kwargs)


async def test_resolve_caches_by_normalized_key() -> None:
    backend = StubBackend()
    geo = _resolver(backend)

    first = await geo.resolve("Union Square, New York")
    second = await geo.resolve("  union square, NEW YORK ")

    assert first == second == Coordinates(40.7, -74.0)
    assert sum(backend.calls.values()) == 1


async def test_concurrent_lookups_share_one_request() -> None:
    backend = StubBackend()
    geo = _resolver(backend)

    results = await asyncio.gather(*(geo.resolve("Boston, MA") for _ in range(5)))

    assert all(r == Coordinates(40.7, -74.0) for r in results)
    assert backend.calls["Boston, MA"] == 1


async def test_no_result_is_cached() -> None:
    backend = StubBackend()
    geo = _resolver(backend)

    assert await geo.resolve("Nowhere Land") is NO_RESULT
    assert await geo.resolve("nowhere land") is NO_RESULT
    assert sum(backend.calls.values()) == 1
    assert geo.cached("Nowhere Land") is NO_RESULT


async def test_blank_address_is_no_result_without_lookup() -> None:
    backend = StubBackend()
    geo = _resolver(backend)
    assert await geo.resolve("   ") is NO_RESULT
    assert not backend.calls


async def test_eviction_drops_oldest_entry() -> None:
    backend = StubBackend()
    geo = _resolver(backend, cache_size_limit=2)

    await geo.resolve("a")
    await geo.resolve("b")
    await geo.resolve("c")

    assert geo.cached("a") is None
    assert geo.cached("b") is not None
    assert geo.cached("c") is not None
    assert geo.cache_stats() == {"size": 2, "limit": 2}


async def test_transient_errors_are_retried_with_backoff() -> None:
    backend = StubBackend(failures=2)
    sleep = RecordingSleep()
    geo = _resolver(backend, sleep=sleep)

    assert await geo.resolve("Chicago, IL") == Coordinates(40.7, -74.0)
    assert sleep.delays == [1.0, 2.0]
    assert backend.calls["Chicago, IL"] == 3


async def test_retries_exhausted_raises_and_is_not_cached() -> None:
    backend = StubBackend(failures=10)
    sleep = RecordingSleep()
    geo = _resolver(backend, sleep=sleep)

    with pytest.raises(GeocodeError, match="max retries exceeded"):
        await geo.resolve("Chicago, IL")
    assert sleep.delays == [1.0, 2.0, 4.0]
    assert backend.calls["Chicago, IL"] == 4
    assert geo.cached("Chicago, IL") is None


async def test_non_transient_error_propagates_without_retry() -> None:
    backend = StubBackend(error=GeocodeError("status:REQUEST_DENIED"))
    sleep = RecordingSleep()
    geo = _resolver(backend, sleep=sleep)

    with pytest.raises(GeocodeError, match="REQUEST_DENIED"):
        await geo.resolve("Austin, TX")
    assert sleep.delays == []
    assert backend.calls["Austin, TX"] == 1


async def test_unconfigured_resolver_raises() -> None:
    geo = GeoResolver(None)
    assert not geo.enabled
    with pytest.raises(GeocodeError, match="not configured"):
        await geo.resolve("Austin, TX")


class StalledBackend:
    def __init__(self) -> None:
        self.release = asyncio.Event()
        self.calls = 0

    async def lookup(self, address: str) -> list[Coordinates]:
        self.calls += 1
        await self.release.wait()
        return [Coordinates(latitude=51.5, longitude=-0.1)]


async def test_stalled_lookup_times_out_and_stays_joinable() -> None:
    backend = StalledBackend()
    geo = _resolver(backend, timeout_seconds=0.01)

    with pytest.raises(GeocodeError, match="timed out"):
        await geo.resolve("London")
    assert geo.cached("London") is None

    geo.timeout_seconds = 1.0
    joined = asyncio.create_task(geo.resolve("london"))
    await asyncio.sleep(0)
    backend.release.set()

    assert await joined == Coordinates(51.5, -0.1)
    assert backend.calls == 1
    assert geo.cached("London") == Coordinates(51.5, -0.1)


@respx.mock
async def test_google_geocoder_parses_first_result() -> None:
    route = respx.get(url__startswith=GOOGLE_GEOCODE_URL).mock(
        return_value=httpx.Response(
            200,
            json={
                "status": "OK",
                "results": [{"geometry": {"location": {"lat": 47.6, "lng": -122.3}}}],
            },
        )
    )
    async with httpx.AsyncClient() as client:
        backend = GoogleGeocoder(client, "test-key")
        assert await backend.lookup("Seattle, WA") == [Coordinates(47.6, -122.3)]

    request = route.calls.last.request
    assert request.url.params["address"] == "Seattle, WA"
    assert request.url.params["key"] == "test-key"


@respx.mock
async def test_google_geocoder_status_mapping() -> None:
    route = respx.get(url__startswith=GOOGLE_GEOCODE_URL)
    async with httpx.AsyncClient() as client:
        backend = GoogleGeocoder(client, "test-key")

        route.mock(return_value=httpx.Response(200, json={"status": "ZERO_RESULTS"}))
        assert await backend.lookup("nowhere") == []

        route.mock(return_value=httpx.Response(200, json={"status": "OVER_QUERY_LIMIT"}))
        with pytest.raises(TransientGeocodeError):
            await backend.lookup("x")

        route.mock(return_value=httpx.Response(429))
        with pytest.raises(TransientGeocodeError):
            await backend.lookup("x")

        route.mock(return_value=httpx.Response(200, json={"status": "REQUEST_DENIED"}))
        with pytest.raises(GeocodeError) as excinfo:
            await backend.lookup("x")
        assert not isinstance(excinfo.value, TransientGeocodeError)
