from __future__ import annotations

import logging
import os
from typing import Iterable

# apscheduler logs every trigger fire at INFO; boto and urllib3 log each request
_NOISY_LOGGERS = ("apscheduler", "botocore", "boto3", "urllib3")


def setup_logging(
    default_level: str | None = None,
    quiet: Iterable[str] = _NOISY_LOGGERS,
) -> None:
    level_name = (default_level or os.getenv("INGEST_LOG_LEVEL") or "INFO").upper()
    level = getattr(logging, level_name, logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
    floor = max(level, logging.WARNING)
    for name in quiet:
        logging.getLogger(name).setLevel(floor)
