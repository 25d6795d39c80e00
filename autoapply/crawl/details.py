from __future__ import annotations

import asyncio
import json
import logging
import re
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

import httpx
from bs4 import BeautifulSoup

from autoapply.core.errors import MalformedResponseError, TransientNetworkError, raise_for_upstream_status
from autoapply.core.urls import posting_id
from autoapply.crawl.rate_governor import RateGovernor

logger = logging.getLogger(__name__)

_SPACE_RE = re.compile(r"\s+")


@dataclass(slots=True)
class PostingDetail:
    url: str
    external_job_id: str
    title: str
    company: str | None = None
    location: str | None = None
    description: str | None = None
    remote: bool = False


@dataclass(slots=True)
class JobListing:
    url: str
    external_job_id: str
    match_score: float
    detail: PostingDetail | None = None


DetailExtractor = Callable[[str, str], PostingDetail | None]


def extract_posting_detail(url: str, page: str) -> PostingDetail | None:
    """Read a posting page's schema.org JobPosting block, falling back to the page title."""
    soup = BeautifulSoup(page, "html.parser")
    for script in soup.find_all("script", attrs={"type": "application/ld+json"}):
        try:
            decoded = json.loads(script.get_text(strip=True) or "{}")
        except json.JSONDecodeError:
            continue
        posting = _find_job_posting(decoded)
        if posting is None:
            continue
        title = _clean_text(posting.get("title"))
        if not title:
            continue
        organization = posting.get("hiringOrganization")
        company = _clean_text(organization.get("name")) if isinstance(organization, dict) else None
        return PostingDetail(
            url=url,
            external_job_id=posting_id(url),
            title=title,
            company=company,
            location=_location_text(posting.get("jobLocation")),
            description=_clean_text(posting.get("description")),
            remote=str(posting.get("jobLocationType", "")).upper() == "TELECOMMUTE",
        )

    title = _clean_text(soup.title.get_text()) if soup.title is not None else None
    if not title:
        return None
    return PostingDetail(url=url, external_job_id=posting_id(url), title=title)


class PostingDetailFetcher:
    """Fetches posting pages through the shared governor, each under its own timeout."""

    def __init__(
        self,
        governor: RateGovernor,
        *,
        timeout_seconds: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
        extractor: DetailExtractor = extract_posting_detail,
    ) -> None:
        self._governor = governor
        self.timeout_seconds = timeout_seconds
        self._transport = transport
        self._extractor = extractor

    async def fetch(self, url: str) -> PostingDetail:
        async with self._governor.slot():
            try:
                return await asyncio.wait_for(self._fetch(url), timeout=self.timeout_seconds)
            except asyncio.TimeoutError as exc:
                raise TransientNetworkError(f"detail fetch timed out after {self.timeout_seconds}s") from exc

    async def fetch_many(self, urls: list[str]) -> tuple[list[PostingDetail], int]:
        """Fetch all details concurrently; failures are counted and dropped."""
        results = await asyncio.gather(*(self.fetch(url) for url in urls), return_exceptions=True)
        details: list[PostingDetail] = []
        failures = 0
        for url, result in zip(urls, results):
            if isinstance(result, BaseException):
                if not isinstance(result, Exception):
                    raise result
                failures += 1
                logger.info("posting detail dropped url=%s error=%s", url, result)
                continue
            details.append(result)
        return details, failures

    async def _fetch(self, url: str) -> PostingDetail:
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout_seconds,
                follow_redirects=True,
                transport=self._transport,
            ) as client:
                response = await client.get(url, headers={"Accept": "text/html"})
        except httpx.TransportError as exc:
            raise TransientNetworkError(f"detail request failed: {exc}") from exc
        raise_for_upstream_status(response)
        detail = self._extractor(url, response.text)
        if detail is None:
            raise MalformedResponseError(f"no posting detail found at {url}")
        return detail


def _find_job_posting(value: Any) -> dict[str, Any] | None:
    if isinstance(value, list):
        for item in value:
            found = _find_job_posting(item)
            if found is not None:
                return found
        return None
    if not isinstance(value, dict):
        return None
    kind = value.get("@type")
    if kind == "JobPosting" or (isinstance(kind, list) and "JobPosting" in kind):
        return value
    graph = value.get("@graph")
    if graph is not None:
        return _find_job_posting(graph)
    return None


def _location_text(value: Any) -> str | None:
    if isinstance(value, list):
        value = value[0] if value else None
    if not isinstance(value, dict):
        return None
    address = value.get("address")
    if not isinstance(address, dict):
        return None
    parts = [
        _clean_text(address.get(key))
        for key in ("addressLocality", "addressRegion", "addressCountry")
        if isinstance(address.get(key), str)
    ]
    joined = ", ".join(part for part in parts if part)
    return joined or None


def _clean_text(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    text = value
    if "<" in text or "&" in text:
        text = BeautifulSoup(text, "html.parser").get_text(" ")
    text = _SPACE_RE.sub(" ", text).strip()
    return text or None
