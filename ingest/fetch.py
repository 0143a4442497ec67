from __future__ import annotations

import json

import httpx

from ingest.errors import SourceError, TransientSourceError


_TIMEOUT = httpx.Timeout(connect=5.0, read=15.0, write=5.0, pool=5.0)


async def fetch(
    client: httpx.AsyncClient,
    *,
    url: str,
    user_agent: str,
    params: dict[str, object] | None = None,
    extra_headers: dict[str, str] | None = None,
    accept: str = "application/json, application/xml, application/rss+xml, text/xml, */*",
) -> tuple[bytes, int]:
    """GET `url` and return (body, elapsed_ms) for a 200 response.

    Timeouts, transport failures, 429 and 5xx raise `TransientSourceError`;
    any other non-200 status raises `SourceError`.
    """
    headers = {"User-Agent": user_agent, "Accept": accept}
    if extra_headers:
        headers.update(extra_headers)

    try:
        response = await client.get(url, params=params, headers=headers, timeout=_TIMEOUT)
    except httpx.TimeoutException as e:
        raise TransientSourceError(f"timeout fetching {url}") from e
    except httpx.TransportError as e:
        raise TransientSourceError(f"{e.__class__.__name__} fetching {url}") from e

    if response.status_code == 429:
        raise TransientSourceError(f"rate limit exceeded: {url}")
    if response.status_code >= 500:
        raise TransientSourceError(f"http_{response.status_code}: {url}")
    if response.status_code != 200:
        raise SourceError(f"http_{response.status_code}: {url}")

    elapsed_ms = int(response.elapsed.total_seconds() * 1000)
    return response.content, elapsed_ms


async def fetch_json(
    client: httpx.AsyncClient,
    *,
    url: str,
    user_agent: str,
    params: dict[str, object] | None = None,
    extra_headers: dict[str, str] | None = None,
) -> object:
    body, _ = await fetch(
        client,
        url=url,
        user_agent=user_agent,
        params=params,
        extra_headers=extra_headers,
        accept="application/json",
    )
    try:
        return json.loads(body)
    except json.JSONDecodeError as e:
        raise SourceError(f"invalid JSON from {url}") from e
