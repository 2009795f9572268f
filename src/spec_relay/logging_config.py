"""Logging setup for the CLI, MCP server and dashboard.

Records go to stderr: on the MCP stdio transport stdout carries protocol
frames and must stay clean.
"""

import json
import logging
import sys
import time

_TEXT_FORMAT = "%(asctime)s [%(name)s] %(levelname)s: %(message)s"


class JSONFormatter(logging.Formatter):
    """Emit log records as single-line JSON."""

    converter = time.gmtime

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": self.formatTime(record, "%Y-%m-%dT%H:%M:%S") + f".{int(record.msecs):03d}Z",
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info and record.exc_info[0] is not None:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


def setup_logging(level: str = "INFO", fmt: str = "text") -> logging.Logger:
    """Configure the ``spec_relay`` logger hierarchy.

    Args:
        level: Log level name (DEBUG, INFO, WARNING, ERROR).
        fmt: "json" for structured output, "text" for human-readable.
    """
    root = logging.getLogger("spec_relay")
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    # Replace rather than stack: sys.stderr may have been swapped since the last call.
    for old in list(root.handlers):
        root.removeHandler(old)

    handler = logging.StreamHandler(sys.stderr)
    if fmt == "json":
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(logging.Formatter(_TEXT_FORMAT, datefmt="%H:%M:%S"))
    root.addHandler(handler)

    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    return root
