from __future__ import annotations

import logging
import sys

from .context import request_id_ctx


class RequestIdFilter(logging.Filter):
    """Stamp each record with the id of the HTTP request being served."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not getattr(record, "request_id", None):
            record.request_id = request_id_ctx.get() or "-"
        return True


def configure_logging(level: int = logging.INFO) -> None:
    """Configure stdout logging for the scheduling service.

    One handler and one formatter with timestamp, level, logger name and
    request id. Structured fields are passed through ``extra`` by the callers.
    """
    root = logging.getLogger()
    if root.handlers:
        # Assume logging already configured (uvicorn, pytest).
        return

    handler = logging.StreamHandler(sys.stdout)
    handler.addFilter(RequestIdFilter())
    formatter = logging.Formatter(
        fmt="%(asctime)s %(levelname)s %(name)s [%(request_id)s] %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
    )
    handler.setFormatter(formatter)
    root.addHandler(handler)
    root.setLevel(level)
