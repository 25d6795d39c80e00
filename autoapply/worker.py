from __future__ import annotations

import asyncio
import logging

from autoapply.core.config import get_settings
from autoapply.core.telemetry import configure_logging, setup_telemetry, shutdown_telemetry
from autoapply.services.runtime import build_runtime

logger = logging.getLogger(__name__)


async def run_worker() -> None:
    settings = get_settings()
    configure_logging()
    telemetry_runtime = setup_telemetry(settings)
    runtime = build_runtime(settings)
    if not runtime.automation.configured:
        logger.warning("automation worker url not set; submissions will fail")
    logger.info("standalone queue worker starting tick=%.1fs", settings.worker_tick_seconds)
    try:
        await runtime.supervisor.run_forever()
    finally:
        await runtime.repository.close()
        shutdown_telemetry(telemetry_runtime)


def main() -> None:
    asyncio.run(run_worker())


if __name__ == "__main__":
    main()
