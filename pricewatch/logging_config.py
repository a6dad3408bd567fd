"""Structured logging configuration.

Console output stays human readable; logs/app.log and logs/error.log get
one JSON object per line. Records emitted while a product check is running
carry the product id and URL of that check.
"""

import logging
import sys
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from pythonjsonlogger import jsonlogger

from pricewatch.config import settings

_check_context: ContextVar[dict] = ContextVar("check_context", default={})


@contextmanager
def check_context(**fields):
    """Attach fields (product_id, url, trigger) to every record logged inside the block."""
    token = _check_context.set({**_check_context.get(), **fields})
    try:
        yield
    finally:
        _check_context.reset(token)


class CheckContextFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        for key, value in _check_context.get().items():
            if not hasattr(record, key):
                setattr(record, key, value)
        return True


class CustomJsonFormatter(jsonlogger.JsonFormatter):
    """JSON formatter with timestamp, level and source location fields."""

    def add_fields(self, log_record, record, message_dict):
        super().add_fields(log_record, record, message_dict)

        log_record['timestamp'] = datetime.now(timezone.utc).isoformat()
        log_record['level'] = record.levelname
        log_record['logger'] = record.name
        log_record['source'] = f"{record.filename}:{record.lineno}"


class ConsoleFormatter(logging.Formatter):
    """Plain text format with a [product N] prefix inside check cycles."""

    def format(self, record: logging.LogRecord) -> str:
        product_id = getattr(record, "product_id", None)
        record.check = f"[product {product_id}] " if product_id is not None else ""
        try:
            return super().format(record)
        finally:
            del record.check


def setup_logging(base_dir: Optional[str | Path] = None) -> logging.Logger:
    """Configure root logging.

    Args:
        base_dir: Directory to place the logs/ folder in. Falls back to
                  settings.log_dir, then the working directory.
    """
    base = base_dir or settings.log_dir or None
    logs_dir = (Path(base) if base else Path.cwd()) / "logs"
    logs_dir.mkdir(parents=True, exist_ok=True)

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, settings.log_level.upper()))
    root_logger.handlers.clear()

    context_filter = CheckContextFilter()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(
        ConsoleFormatter("%(asctime)s - %(name)s - %(levelname)s - %(check)s%(message)s")
    )
    console_handler.addFilter(context_filter)
    root_logger.addHandler(console_handler)

    json_formatter = CustomJsonFormatter("%(timestamp)s %(level)s %(name)s %(message)s")
    for filename, level in (("app.log", logging.DEBUG), ("error.log", logging.ERROR)):
        handler = logging.FileHandler(logs_dir / filename)
        handler.setLevel(level)
        handler.setFormatter(json_formatter)
        handler.addFilter(context_filter)
        root_logger.addHandler(handler)

    # Request lines and scheduler chatter at INFO drown out check logs
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("apscheduler.executors.default").setLevel(logging.WARNING)

    return root_logger
