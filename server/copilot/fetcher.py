"""
HTTP content fetcher

Downloads a page with httpx and reduces it to readable text with
BeautifulSoup, dropping scripts, styles and page chrome.
"""

import logging
import re
from typing import Optional

import httpx
from bs4 import BeautifulSoup

from core.exceptions import OperationTimeoutError, RateLimitError, UpstreamError

from .providers import ContentFetcher, FetchedPage

logger = logging.getLogger("copilot.fetcher")

USER_AGENT = "Mozilla/5.0 (compatible; CopilotSearch/1.0)"
STRIP_TAGS = ["script", "style", "nav", "header", "footer", "aside", "noscript", "form"]


def html_to_text(html: str) -> tuple:
    """(title, text) of an HTML document"""
    soup = BeautifulSoup(html, "html.parser")
    title = soup.title.get_text(strip=True) if soup.title else ""

    for tag in soup(STRIP_TAGS):
        tag.decompose()

    root = soup.find("main") or soup.find("article") or soup.body or soup
    text = re.sub(r"\s+", " ", root.get_text(" ")).strip()
    return title, text


class HttpContentFetcher(ContentFetcher):
    """ContentFetcher over plain HTTP GET"""

    def __init__(
        self,
        timeout: float = 20.0,
        max_content_length: int = 50000,
        client: Optional[httpx.AsyncClient] = None
    ):
        self.timeout = timeout
        self.max_content_length = max_content_length
        self._client = client

    async def _get_session(self) -> httpx.AsyncClient:
        """Get or create HTTP session"""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=self.timeout,
                follow_redirects=True,
                headers={"User-Agent": USER_AGENT}
            )
        return self._client

    async def fetch(self, url: str) -> FetchedPage:
        client = await self._get_session()
        try:
            response = await client.get(url)
        except httpx.TimeoutException as e:
            raise OperationTimeoutError("page-fetch", self.timeout * 1000, url=url) from e
        except httpx.HTTPError as e:
            raise UpstreamError("fetcher", f"request failed: {e}", url=url) from e

        if response.status_code == 429:
            raise RateLimitError("fetcher", url=url)
        if response.status_code >= 400:
            raise UpstreamError("fetcher", f"HTTP {response.status_code}", url=url)

        content_type = response.headers.get("content-type", "")
        if "html" in content_type:
            title, text = html_to_text(response.text)
            kind = "html"
        elif content_type.startswith("text/") or not content_type:
            title, text = "", response.text.strip()
            kind = "text"
        else:
            raise UpstreamError("fetcher", f"unsupported content type {content_type}", url=url)

        if not text:
            raise UpstreamError("fetcher", "page has no readable text", url=url)

        logger.debug(f"Fetched {url[:60]}: {len(text)} chars")
        return FetchedPage(url=url, title=title, text=text[:self.max_content_length], content_type=kind)

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
