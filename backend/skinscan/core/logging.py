"""
Log output for the API process and the Celery worker.

One line per record:

    <utc ts> | LEVEL | skinscan.<module>:<func>:<line> | message | key=value ...

Call sites attach request context (shop, jobId, userId) with
`extra=log_context(shop=...)`; the pairs are appended to the line.
"""

import logging
import sys
from datetime import datetime, timezone

from skinscan.core.config import get_settings

ROOT_LOGGER = "skinscan"

_NOISY_LOGGERS = ("uvicorn.access", "httpx", "httpcore", "botocore", "boto3", "celery.redirected")


def log_context(**fields) -> dict:
    """`extra=` payload carrying key/value context; None values are dropped."""
    return {"context": {k: v for k, v in fields.items() if v is not None}}


class StructuredFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        timestamp = datetime.fromtimestamp(record.created, timezone.utc).isoformat()
        parts = [
            timestamp,
            f"{record.levelname:<8}",
            f"{record.name}:{record.funcName}:{record.lineno}",
            record.getMessage(),
        ]
        context = getattr(record, "context", None)
        if context:
            parts.append(" ".join(f"{k}={v}" for k, v in sorted(context.items())))
        line = " | ".join(parts)
        if record.exc_info and record.exc_info[1]:
            line += f" | EXCEPTION: {self.formatException(record.exc_info)}"
        return line


def setup_logging(level: str | None = None) -> None:
    """Install the structured handler on the root logger. Safe to call twice."""
    settings = get_settings()
    level_name = (level or settings.LOG_LEVEL).upper()

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level_name, logging.INFO))

    if not any(isinstance(h.formatter, StructuredFormatter) for h in root_logger.handlers):
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(StructuredFormatter())
        root_logger.addHandler(handler)

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    logging.getLogger(ROOT_LOGGER).info("Logging initialized (level=%s)", level_name)


def get_logger(name: str) -> logging.Logger:
    """`get_logger("health")` -> the `skinscan.health` logger."""
    return logging.getLogger(f"{ROOT_LOGGER}.{name}")
