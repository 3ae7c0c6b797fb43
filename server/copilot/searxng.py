"""
SearXNG search provider

Queries a self-hosted SearXNG instance through its JSON API.

Usage:
    provider = SearXNGSearchProvider("http://localhost:8888")
    results = await provider.search("what is photosynthesis", max_results=5)
"""

import logging
from typing import List, Optional
from urllib.parse import urlparse

import httpx

from core.exceptions import OperationTimeoutError, RateLimitError, UpstreamError

from .models import WebSearchResult
from .providers import SearchProvider

logger = logging.getLogger("copilot.searxng")


class SearXNGSearchProvider(SearchProvider):
    """SearXNG-backed SearchProvider"""

    def __init__(
        self,
        base_url: str,
        timeout: float = 30.0,
        language: str = "en",
        engines: Optional[List[str]] = None,
        client: Optional[httpx.AsyncClient] = None
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.language = language
        self.engines = engines
        self._client = client

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client"""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=self.timeout, follow_redirects=True)
        return self._client

    async def search(self, query: str, max_results: int = 10) -> List[WebSearchResult]:
        client = await self._get_client()
        params = {"q": query, "format": "json", "language": self.language}
        if self.engines:
            params["engines"] = ",".join(self.engines)

        try:
            response = await client.get(f"{self.base_url}/search", params=params)
        except httpx.TimeoutException as e:
            raise OperationTimeoutError("searxng-search", self.timeout * 1000, query=query) from e
        except httpx.HTTPError as e:
            raise UpstreamError("searxng", f"request failed: {e}", query=query) from e

        if response.status_code == 429:
            retry_after = response.headers.get("Retry-After")
            raise RateLimitError(
                "searxng",
                retry_after=float(retry_after) if retry_after and retry_after.isdigit() else None,
            )
        if response.status_code >= 400:
            raise UpstreamError("searxng", f"HTTP {response.status_code}", query=query)

        try:
            items = response.json().get("results", [])
        except ValueError as e:
            raise UpstreamError("searxng", "invalid JSON payload", query=query) from e

        results = []
        for item in items:
            url = item.get("url") or ""
            if not url:
                continue
            results.append(WebSearchResult(
                title=item.get("title") or url,
                url=url,
                snippet=item.get("content") or "",
                source_domain=urlparse(url).netloc.replace("www.", ""),
            ))
            if len(results) >= max_results:
                break

        logger.debug(f"SearXNG query '{query[:30]}': {len(results)} results")
        return results

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
