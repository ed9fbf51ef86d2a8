"""Shared httpx.AsyncClient for the form-encoded payment gateway.

One pooled client per process; adapters may be handed their own client
(tests pass one built on ``httpx.MockTransport``).
"""

import httpx

from listing_billing.constants import HTTP_CONNECT_TIMEOUT, PROVIDER_TIMEOUT

_client: httpx.AsyncClient | None = None


def build_gateway_client(timeout: float = PROVIDER_TIMEOUT, user_agent: str = "listing-billing") -> httpx.AsyncClient:
    return httpx.AsyncClient(
        timeout=httpx.Timeout(timeout, connect=HTTP_CONNECT_TIMEOUT),
        limits=httpx.Limits(max_connections=20, max_keepalive_connections=5),
        headers={"User-Agent": user_agent},
        follow_redirects=False,
    )


def get_http_client() -> httpx.AsyncClient:
    """Return the shared client, creating a default one if startup did not."""
    global _client
    if _client is None:
        _client = build_gateway_client()
    return _client


async def init_http_client(timeout: float = PROVIDER_TIMEOUT, user_agent: str = "listing-billing") -> None:
    """Create the shared client. Called from the app lifespan."""
    global _client
    await close_http_client()
    _client = build_gateway_client(timeout, user_agent)


async def close_http_client() -> None:
    global _client
    if _client:
        await _client.aclose()
        _client = None
