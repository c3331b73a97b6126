"""Process-wide logging setup, applied once by the composition root."""

import logging

LOG_FORMAT = "[%(asctime)s: %(levelname)s/%(threadName)s] %(name)s: %(message)s"


def configure_logging(level: str = "INFO"):
    """
    Configure the root logger.

    Safe to call more than once; existing handlers are left in place so test
    runners and uvicorn keep their own output.
    """
    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    if not root.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        root.addHandler(handler)
