"""
Central logging configuration.

- Rich console output by default, single-line JSON when LOG_JSON is set.
- LOG_LEVEL from env (default INFO).
"""
import json
import logging
import os
from typing import Any

from rich.console import Console
from rich.logging import RichHandler


def _json_serial(obj: Any):
    if hasattr(obj, "isoformat"):
        return obj.isoformat()
    return str(obj)


class JsonFormatter(logging.Formatter):
    """Format log records as single-line JSON for log aggregators."""

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "ts": self.formatTime(record, "%Y-%m-%dT%H:%M:%S"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info and record.exc_info[0]:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=_json_serial)


def configure_logging(level: str | None = None, json_output: bool | None = None) -> None:
    """Configure the root logger.

    Args:
        level: Level name. Defaults to LOG_LEVEL, then INFO.
        json_output: Emit JSON lines. Defaults to LOG_JSON.
    """
    level_name = (level or os.getenv("LOG_LEVEL") or "INFO").upper()
    numeric_level = getattr(logging, level_name, logging.INFO)

    if json_output is None:
        json_output = os.getenv("LOG_JSON", "").lower() in ("1", "true", "yes")

    root = logging.getLogger()
    root.setLevel(numeric_level)
    # Avoid duplicate handlers when called twice
    for h in root.handlers[:]:
        root.removeHandler(h)

    handler: logging.Handler
    if json_output:
        handler = logging.StreamHandler()
        handler.setFormatter(JsonFormatter())
    else:
        handler = RichHandler(console=Console(stderr=True), show_path=False)
        handler.setFormatter(logging.Formatter("%(message)s"))
    handler.setLevel(numeric_level)
    root.addHandler(handler)

    # Reduce noise from third-party libs
    logging.getLogger("yfinance").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)
