"""Logging setup for the labengine command line and embedding applications."""
import json
import logging
import sys
from datetime import datetime, timezone

# Extras engine modules attach through ``extra={...}``.
CONTEXT_FIELDS = ("test_type", "record_id", "row_id")


class JSONFormatter(logging.Formatter):
    """One JSON object per log line."""

    def format(self, record):
        log_entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }
        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)
        for name in CONTEXT_FIELDS:
            if hasattr(record, name):
                log_entry[name] = getattr(record, name)
        return json.dumps(log_entry)


def setup_logging(level: str = "INFO", json_output: bool = False):
    """Configure the ``labengine`` logger tree.

    Output goes to stderr so the command line can keep stdout for results.
    """
    logger = logging.getLogger("labengine")
    logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    handler = logging.StreamHandler(sys.stderr)
    if json_output:
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(logging.Formatter("%(asctime)s [%(name)s] %(levelname)s: %(message)s"))

    logger.handlers = [handler]
    logger.propagate = False
    return logger
