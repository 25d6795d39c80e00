from __future__ import annotations

import httpx


class AutoApplyError(Exception):
    """Base error for crawl and submission failures."""


class TransientNetworkError(AutoApplyError):
    """Raised for timeouts and connection failures that are worth retrying."""


class RateLimitedError(AutoApplyError):
    """Raised when an upstream answers 429."""

    def __init__(self, message: str = "rate limited", *, retry_after: float = 10.0) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class ResourceGoneError(AutoApplyError):
    """Raised when an upstream answers 410 for a posting."""


class FormValidationError(AutoApplyError):
    """Raised when a required application field cannot be populated."""

    def __init__(self, message: str, *, field_names: list[str] | None = None) -> None:
        super().__init__(message)
        self.field_names = field_names or []


class MalformedResponseError(AutoApplyError):
    """Raised when the automation worker answers with an unexpected shape."""


class AutomationNotConfiguredError(AutoApplyError):
    """Raised when no automation worker endpoint is configured."""


def parse_retry_after(raw: str | None, *, default: float = 10.0) -> float:
    if raw is None:
        return default
    try:
        value = float(raw.strip())
    except ValueError:
        return default
    return value if value >= 0 else default


def raise_for_upstream_status(response: httpx.Response) -> None:
    """Map board and worker HTTP statuses onto the crawl error taxonomy."""
    if response.status_code == 429:
        raise RateLimitedError(retry_after=parse_retry_after(response.headers.get("retry-after")))
    if response.status_code == 410:
        raise ResourceGoneError(f"gone: {response.request.url}")
    if response.is_error:
        raise TransientNetworkError(f"upstream failed status={response.status_code}")
