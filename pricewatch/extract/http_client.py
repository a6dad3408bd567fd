"""Page fetcher with browser-like headers and status-aware error handling."""

from __future__ import annotations

import asyncio
import logging
import random
import time
from typing import Optional

import httpx

from pricewatch import metrics
from pricewatch.config import settings
from pricewatch.errors import BlockedError, TransientFetchError
from pricewatch.extract.candidates import FetchedPage

logger = logging.getLogger(__name__)

# Retryable exceptions (transport errors)
RETRYABLE_EXC = (
    httpx.ReadTimeout,
    httpx.ConnectTimeout,
    httpx.ConnectError,
    httpx.RemoteProtocolError,
    httpx.PoolTimeout,
)


def default_headers() -> dict[str, str]:
    """Get default browser-like headers."""
    return {
        "User-Agent": "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
        "Accept": "text/html, application/xhtml+xml, application/xml; q=0.9, */*; q=0.8",
        "Accept-Language": "en-US, en; q=0.9",
        "Cache-Control": "no-cache",
        "Pragma": "no-cache",
        "Upgrade-Insecure-Requests": "1",
    }


class PageFetcher:
    """
    Fetches product pages over a shared httpx client.

    Retries only transport errors and 5xx within one call; schedule-level
    backoff after a failed cycle is the monitor's job.
    """

    def __init__(self, client: Optional[httpx.AsyncClient] = None, max_attempts: int = 2):
        self._client = client
        self._owns_client = client is None
        self.max_attempts = max_attempts

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(settings.fetch_timeout_seconds, connect=10.0),
                follow_redirects=True,
            )
        return self._client

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def fetch(self, url: str, headers: Optional[dict[str, str]] = None) -> FetchedPage:
        """
        Fetch a URL.

        Raises:
            BlockedError: access refused (401, 403, /blocked redirect)
            TransientFetchError: 404, 5xx or transport errors after retries
        """
        hdrs = default_headers()
        if headers:
            hdrs.update(headers)

        last_exc: Exception | None = None
        for attempt in range(1, self.max_attempts + 1):
            start = time.monotonic()
            try:
                resp = await self.client.get(url, headers=hdrs)
            except RETRYABLE_EXC as e:
                last_exc = e
                metrics.fetch_errors_total.labels(error_type=type(e).__name__).inc()
                if attempt < self.max_attempts:
                    sleep_s = (2 ** attempt) + random.random()
                    logger.warning(
                        f"Transport error ({type(e).__name__}) for {url}, "
                        f"retrying in {sleep_s:.1f}s (attempt {attempt}/{self.max_attempts})"
                    )
                    await asyncio.sleep(sleep_s)
                    continue
                raise TransientFetchError(
                    f"Transport error after {self.max_attempts} attempts: {url}"
                ) from e
            except (httpx.HTTPError, httpx.InvalidURL) as e:
                metrics.fetch_errors_total.labels(error_type=type(e).__name__).inc()
                raise TransientFetchError(f"Request failed for {url}: {e}") from e
            finally:
                metrics.fetch_duration_seconds.observe(time.monotonic() - start)

            if "/blocked" in str(resp.url).lower():
                metrics.fetch_errors_total.labels(error_type="blocked").inc()
                raise BlockedError(f"Blocked redirect: {resp.url}")

            sc = resp.status_code
            if sc in (401, 403):
                metrics.fetch_errors_total.labels(error_type="blocked").inc()
                raise BlockedError(f"{sc} for {url}")

            if 200 <= sc < 300:
                return FetchedPage(url=str(resp.url), html=resp.text, status_code=sc)

            metrics.fetch_errors_total.labels(error_type=f"http_{sc}").inc()
            last_exc = TransientFetchError(f"Status {sc} for {url}")
            if (sc == 429 or sc >= 500) and attempt < self.max_attempts:
                sleep_s = (2 ** attempt) + random.random()
                logger.warning(
                    f"Status {sc} for {url}, retrying in {sleep_s:.1f}s "
                    f"(attempt {attempt}/{self.max_attempts})"
                )
                await asyncio.sleep(sleep_s)
                continue
            raise last_exc

        raise TransientFetchError(f"Failed after {self.max_attempts} attempts: {url}") from last_exc


page_fetcher = PageFetcher()
