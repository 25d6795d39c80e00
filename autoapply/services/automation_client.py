from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncIterator, Awaitable, Callable, Sequence
from typing import Any

import httpx
from pydantic import ValidationError

from autoapply.core.errors import (
    AutomationNotConfiguredError,
    MalformedResponseError,
    RateLimitedError,
    TransientNetworkError,
    parse_retry_after,
    raise_for_upstream_status,
)
from autoapply.core.urls import ensure_scheme
from autoapply.schemas.automation import FormField, SubmitResult, WorkerStatus

logger = logging.getLogger(__name__)

_SUBMIT_STATUS_OUTCOMES = {
    "accepted": "processing",
    "processing": "processing",
    "success": "success",
    "skipped": "skipped",
    "error": "error",
}


class AutomationClient:
    """HTTP client for the browser-automation worker (`/scrape`, `/introspect`, `/submit`, `/status`)."""

    def __init__(
        self,
        base_url: str | None,
        *,
        timeout_seconds: float = 60.0,
        submit_timeouts_seconds: Sequence[float] = (90.0, 180.0, 300.0, 480.0),
        retry_delay_seconds: float = 5.0,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.base_url = ensure_scheme(base_url) if base_url and base_url.strip() else None
        self.timeout_seconds = timeout_seconds
        self.submit_timeouts_seconds = tuple(submit_timeouts_seconds) or (timeout_seconds,)
        self.retry_delay_seconds = retry_delay_seconds
        self._transport = transport
        self._sleep = sleep

    @property
    def configured(self) -> bool:
        return self.base_url is not None

    async def stream_links(
        self,
        url: str,
        *,
        max_scrolls: int = 50,
        selector: str | None = None,
    ) -> AsyncIterator[list[str]]:
        """Yield batches of posting links as the worker scrolls a search page."""
        base_url = self._require_base_url()
        payload: dict[str, Any] = {"url": url, "scroll": True, "maxScrolls": max_scrolls}
        if selector:
            payload["selector"] = selector

        try:
            async with self._client(self.timeout_seconds) as client:
                async with client.stream(
                    "POST",
                    f"{base_url}/scrape",
                    json=payload,
                    headers={"Accept": "text/event-stream"},
                ) as response:
                    raise_for_upstream_status(response)
                    async for line in response.aiter_lines():
                        event = _parse_sse_line(line)
                        if event is None:
                            continue
                        status = event.get("status")
                        if status == "links":
                            links = event.get("links")
                            if isinstance(links, list):
                                yield [link for link in links if isinstance(link, str)]
                        elif status == "complete":
                            return
                        elif status == "error":
                            raise TransientNetworkError(str(event.get("error") or "scrape stream failed"))
        except httpx.TransportError as exc:
            raise TransientNetworkError(f"scrape request failed: {exc}") from exc

    async def collect_links(self, url: str, *, max_scrolls: int = 50) -> list[str]:
        links: list[str] = []
        seen: set[str] = set()
        async for batch in self.stream_links(url, max_scrolls=max_scrolls):
            for link in batch:
                if link not in seen:
                    seen.add(link)
                    links.append(link)
        return links

    async def introspect(self, apply_url: str) -> list[FormField]:
        base_url = self._require_base_url()
        try:
            async with self._client(self.timeout_seconds) as client:
                response = await client.post(f"{base_url}/introspect", json={"job": {"applyUrl": apply_url}})
        except httpx.TransportError as exc:
            raise TransientNetworkError(f"introspect request failed: {exc}") from exc

        if response.status_code == 429:
            raise RateLimitedError(retry_after=parse_retry_after(response.headers.get("retry-after")))
        if response.is_error:
            raise MalformedResponseError(f"introspect failed status={response.status_code}")

        try:
            body = response.json()
        except ValueError as exc:
            raise MalformedResponseError("introspect returned non-json body") from exc

        raw_fields = _extract_fields(body)
        if not raw_fields:
            raise MalformedResponseError("introspect returned no form fields")
        try:
            return [FormField.model_validate(field) for field in raw_fields if isinstance(field, dict)]
        except ValidationError as exc:
            raise MalformedResponseError(f"introspect returned invalid fields: {exc}") from exc

    async def submit(self, payload: dict[str, Any]) -> SubmitResult:
        """Submit an application, retrying timeouts with a growing timeout progression."""
        base_url = self._require_base_url()
        response: httpx.Response | None = None
        attempts = len(self.submit_timeouts_seconds)

        for attempt, timeout in enumerate(self.submit_timeouts_seconds, start=1):
            try:
                async with self._client(timeout) as client:
                    response = await client.post(f"{base_url}/submit", json=payload)
                break
            except httpx.TimeoutException:
                logger.warning("submit attempt timed out attempt=%s/%s timeout=%.0fs", attempt, attempts, timeout)
                if attempt < attempts:
                    await self._sleep(self.retry_delay_seconds)
            except httpx.HTTPError as exc:
                logger.warning("submit request failed: %s", exc)
                return SubmitResult(outcome="error", message=f"submit request failed: {exc}")

        if response is None:
            return await self._status_fallback()
        return _interpret_submit_response(response)

    async def status(self) -> WorkerStatus:
        base_url = self._require_base_url()
        async with self._client(10.0) as client:
            response = await client.get(f"{base_url}/status")
            response.raise_for_status()
            try:
                return WorkerStatus.model_validate(response.json())
            except (ValueError, ValidationError) as exc:
                raise MalformedResponseError("status returned an unexpected body") from exc

    async def _status_fallback(self) -> SubmitResult:
        try:
            worker_status = await self.status()
        except (httpx.HTTPError, MalformedResponseError) as exc:
            logger.warning("status check after submit timeouts failed: %s", exc)
            return SubmitResult(outcome="error", message="submission timed out on every attempt")

        if worker_status.idle and worker_status.last_job_successful:
            logger.info("worker idle with successful last job after submit timeouts; treating as success")
            return SubmitResult(outcome="success", message="completed per worker status after timeouts")
        return SubmitResult(outcome="error", message="submission timed out on every attempt")

    def _require_base_url(self) -> str:
        if self.base_url is None:
            raise AutomationNotConfiguredError("automation worker URL is not configured")
        return self.base_url

    def _client(self, timeout: float) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=timeout, transport=self._transport)


def _parse_sse_line(line: str) -> dict[str, Any] | None:
    if not line.startswith("data:"):
        return None
    raw = line[len("data:") :].strip()
    if not raw:
        return None
    try:
        decoded = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("ignoring malformed scrape event: %s", raw[:200])
        return None
    return decoded if isinstance(decoded, dict) else None


def _extract_fields(body: Any) -> list[Any]:
    if isinstance(body, list):
        return body
    if not isinstance(body, dict):
        return []
    nested = body.get("formSchema")
    if isinstance(nested, dict) and isinstance(nested.get("fields"), list):
        return nested["fields"]
    if isinstance(body.get("fields"), list):
        return body["fields"]
    return []


def _interpret_submit_response(response: httpx.Response) -> SubmitResult:
    try:
        body = response.json()
    except ValueError:
        body = None

    status = body.get("status") if isinstance(body, dict) else None
    message = None
    if isinstance(body, dict):
        message = body.get("message") or body.get("error")

    if response.is_error:
        if status == "skipped":
            return SubmitResult(outcome="skipped", message=message or "skipped by worker")
        return SubmitResult(outcome="error", message=message or f"submit failed status={response.status_code}")

    outcome = _SUBMIT_STATUS_OUTCOMES.get(status) if isinstance(status, str) else None
    if outcome is None:
        logger.warning("malformed submit response status=%s body=%s", response.status_code, str(body)[:200])
        return SubmitResult(outcome="error", message="malformed response from automation worker")
    return SubmitResult(outcome=outcome, message=message)
