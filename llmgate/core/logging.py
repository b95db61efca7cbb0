"""Centralized logging configuration.

Gateway modules log through ``logging.getLogger(__name__)`` and attach
``provider``, ``step_type`` and ``batch_round`` as ``extra`` fields; the JSON
formatter lifts them to top-level keys.
"""

import json
import logging
import sys
from datetime import datetime, timezone

from llmgate.core.config import settings

GATEWAY_LOGGER = "llmgate"
CONTEXT_FIELDS = ("provider", "step_type", "batch_round")
TEXT_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"


class JSONFormatter(logging.Formatter):
    """One JSON object per record, with the gateway context fields."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for attr in CONTEXT_FIELDS:
            if hasattr(record, attr):
                log_data[attr] = getattr(record, attr)
        if record.exc_info and record.exc_info[1]:
            log_data["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_data, ensure_ascii=False)


def _level(name: str, default: int) -> int:
    return getattr(logging, name.upper(), default) if name else default


def setup_logging() -> None:
    """Install one stdout handler on the root logger.

    ``gateway_log_level`` lets the llmgate loggers run more (or less) verbose
    than the rest of the process; httpx/httpcore follow ``httpx_log_level``.
    """
    level = _level(settings.log_level, logging.INFO)
    gateway_level = _level(settings.gateway_log_level, level)

    root = logging.getLogger()
    root.setLevel(level)
    for handler in root.handlers[:]:
        root.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    if settings.log_json:
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(logging.Formatter(TEXT_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
    root.addHandler(handler)

    logging.getLogger(GATEWAY_LOGGER).setLevel(gateway_level)

    library_level = _level(settings.httpx_log_level, logging.WARNING)
    for name in ("httpx", "httpcore"):
        logging.getLogger(name).setLevel(library_level)
