from __future__ import annotations

from typing import Protocol
from urllib.parse import urljoin, urlparse

import httpx
from bs4 import BeautifulSoup

from autoapply.core.errors import TransientNetworkError, raise_for_upstream_status
from autoapply.core.urls import normalize_url
from autoapply.services.automation_client import AutomationClient


class LinkSource(Protocol):
    async def fetch_links(self, url: str) -> list[str]: ...


def extract_posting_links(html: str, base_url: str) -> list[str]:
    links: list[str] = []
    seen: set[str] = set()
    for anchor in BeautifulSoup(html, "html.parser").find_all("a", href=True):
        href = urljoin(base_url, anchor["href"])
        if not urlparse(href).path.partition("/view/")[2]:
            continue
        link = normalize_url(href.split("#", 1)[0].split("?", 1)[0])
        if link not in seen:
            seen.add(link)
            links.append(link)
    return links


class BoardPageLinkSource:
    """Fetches one paginated board result page and pulls posting links out of it."""

    def __init__(self, *, timeout_seconds: float = 30.0, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self.timeout_seconds = timeout_seconds
        self._transport = transport

    async def fetch_links(self, url: str) -> list[str]:
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout_seconds,
                follow_redirects=True,
                transport=self._transport,
            ) as client:
                response = await client.get(url, headers={"Accept": "text/html"})
        except httpx.TransportError as exc:
            raise TransientNetworkError(f"search page request failed: {exc}") from exc
        raise_for_upstream_status(response)
        return extract_posting_links(response.text, url)


class ScrollLinkSource:
    """Asks the automation worker to scroll a search page and stream back posting links."""

    def __init__(self, client: AutomationClient, *, max_scrolls: int = 50) -> None:
        self._client = client
        self.max_scrolls = max_scrolls

    async def fetch_links(self, url: str) -> list[str]:
        links = await self._client.collect_links(url, max_scrolls=self.max_scrolls)
        return list(dict.fromkeys(normalize_url(link) for link in links))
