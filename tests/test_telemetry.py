from __future__ import annotations

import logging

from fastapi import FastAPI

from autoapply.core.config import Settings
from autoapply.core.telemetry import (
    EMPTY_SPAN_ID,
    EMPTY_TRACE_ID,
    _parse_headers,
    configure_logging,
    setup_telemetry,
    shutdown_telemetry,
)


def test_parse_headers_drops_malformed_pairs() -> None:
    assert _parse_headers(" authorization = Bearer abc ,broken,=orphan,x-team=jobs") == {
        "authorization": "Bearer abc",
        "x-team": "jobs",
    }
    assert _parse_headers(None) == {}


def test_disabled_telemetry_is_a_noop() -> None:
    settings = Settings(otel_enabled=False)
    app = FastAPI()

    api_runtime = setup_telemetry(settings, app)
    worker_runtime = setup_telemetry(settings)

    assert not api_runtime.enabled
    assert api_runtime.component == "api"
    assert worker_runtime.component == "worker"
    assert api_runtime.provider is None
    shutdown_telemetry(api_runtime, app)


def test_log_records_carry_empty_ids_outside_spans() -> None:
    configure_logging()
    record = logging.getLogRecordFactory()("autoapply.test", logging.INFO, __file__, 1, "hello", (), None)
    assert record.trace_id == EMPTY_TRACE_ID
    assert record.span_id == EMPTY_SPAN_ID
