from __future__ import annotations

import logging
import sys

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

_installed = False
_handler: logging.Handler | None = None


def _attach_handler(logger: logging.Logger, handler: logging.Handler) -> None:
    for existing in logger.handlers:
        if existing is handler:
            return
    logger.addHandler(handler)


def configure_logging(level: str = "INFO") -> logging.Handler:
    global _installed, _handler
    resolved = logging.getLevelName(level.upper())
    if not isinstance(resolved, int):
        resolved = logging.INFO

    if not _installed:
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        _handler = handler
        _attach_handler(logging.getLogger(), handler)
        _installed = True

    logging.getLogger().setLevel(resolved)
    # uvicorn keeps its own handlers; only align the level.
    for name in ("uvicorn", "uvicorn.error"):
        logging.getLogger(name).setLevel(resolved)
    # per-request access lines and connection chatter stay at WARNING
    for name in ("uvicorn.access", "httpx", "httpcore", "PIL"):
        logging.getLogger(name).setLevel(max(resolved, logging.WARNING))
    return _handler
