import json
import logging
import os
from typing import Any


def get_logger(name: str = "tutor_memory") -> logging.Logger:
    """Return an application logger that emits under Uvicorn.

    - honors LOG_LEVEL (default INFO)
    - attaches a StreamHandler to the root app logger if none is present
    - disables propagation to avoid duplicate lines with Uvicorn's handlers
    """
    root = logging.getLogger("tutor_memory")
    if not root.handlers:
        lvl = getattr(logging, os.getenv("LOG_LEVEL", "INFO").strip().upper(), logging.INFO)
        if not isinstance(lvl, int):
            lvl = logging.INFO
        root.setLevel(lvl)
        h = logging.StreamHandler()
        h.setLevel(lvl)
        h.setFormatter(logging.Formatter("%(message)s"))
        root.addHandler(h)
        root.propagate = False
    if name == "tutor_memory":
        return root
    return logging.getLogger(name)


def log_event(logger: logging.Logger, level: int, event: str, **fields: Any) -> None:
    """Emit a single-line JSON event: {"event": ..., **fields}."""
    if not logger.isEnabledFor(level):
        return
    logger.log(level, json.dumps({"event": event, **fields}, default=str))
