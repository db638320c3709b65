from __future__ import annotations

import asyncio
import logging

from ingest_core.logging import setup_logging
from ingest_core.scheduling import ApschedulerTrigger

from .config import settings
from .factory import build_engine
from .health_http import start_health_server


async def serve() -> None:
    log = logging.getLogger(__name__)
    engine = build_engine(settings)
    if isinstance(engine.trigger, ApschedulerTrigger):
        engine.trigger.start()
    runner = None
    if settings.health_http_port:
        runner = await start_health_server(engine, settings.health_http_port)
        log.info("Health server listening on :%d", settings.health_http_port)
    engine.start()
    try:
        # Keep running
        while True:
            await asyncio.sleep(3600)
    finally:
        await engine.stop(wait=False)
        if isinstance(engine.trigger, ApschedulerTrigger):
            engine.trigger.shutdown()
        if runner is not None:
            await runner.cleanup()


def main() -> None:
    setup_logging(settings.log_level)
    try:
        asyncio.run(serve())
    except KeyboardInterrupt:
        logging.getLogger(__name__).info("Shutting down")
