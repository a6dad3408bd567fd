"""Tests for the page fetcher."""

import httpx
import pytest

from pricewatch.errors import BlockedError, TransientFetchError
from pricewatch.extract.http_client import PageFetcher


def fetcher_for(handler, max_attempts=1):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler), follow_redirects=True)
    return PageFetcher(client=client, max_attempts=max_attempts), client


@pytest.mark.asyncio
async def test_fetch_returns_page():
    fetcher, client = fetcher_for(lambda r: httpx.Response(200, text="<html>ok</html>"))
    async with client:
        page = await fetcher.fetch("https://shop.example.com/p/1")

    assert page.html == "<html>ok</html>"
    assert page.status_code == 200
    assert page.url == "https://shop.example.com/p/1"


@pytest.mark.asyncio
async def test_forbidden_is_blocked():
    fetcher, client = fetcher_for(lambda r: httpx.Response(403))
    async with client:
        with pytest.raises(BlockedError):
            await fetcher.fetch("https://shop.example.com/p/2")


@pytest.mark.asyncio
async def test_server_error_is_transient():
    fetcher, client = fetcher_for(lambda r: httpx.Response(503))
    async with client:
        with pytest.raises(TransientFetchError):
            await fetcher.fetch("https://shop.example.com/p/3")


@pytest.mark.asyncio
async def test_blocked_redirect():
    def handler(request):
        if request.url.path == "/p/4":
            return httpx.Response(302, headers={"Location": "https://shop.example.com/blocked?from=p4"})
        return httpx.Response(200, text="captcha")

    fetcher, client = fetcher_for(handler)
    async with client:
        with pytest.raises(BlockedError):
            await fetcher.fetch("https://shop.example.com/p/4")


@pytest.mark.asyncio
async def test_custom_headers_are_merged():
    seen = {}

    def handler(request):
        seen.update(request.headers)
        return httpx.Response(200, text="")

    fetcher, client = fetcher_for(handler)
    async with client:
        await fetcher.fetch("https://shop.example.com/p/5", headers={"Accept-Language": "de-DE"})

    assert seen["accept-language"] == "de-DE"
    assert "Chrome" in seen["user-agent"]
