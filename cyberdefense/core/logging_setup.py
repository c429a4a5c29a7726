"""
Logging setup. Text output for development, JSON lines for everything else
that asks for it.
"""
import logging
import sys

from pythonjsonlogger import jsonlogger

from .config import Settings

TEXT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
JSON_FORMAT = "%(asctime)s %(name)s %(levelname)s %(message)s"
HANDLER_NAME = "cyberdefense"


def configure_logging(settings: Settings) -> None:
    """Install a single stream handler on the root logger."""
    handler = logging.StreamHandler(sys.stdout)
    if settings.LOG_FORMAT.lower() == "json":
        handler.setFormatter(
            jsonlogger.JsonFormatter(JSON_FORMAT, static_fields={"service": "cyberdefense-sim"})
        )
    else:
        handler.setFormatter(logging.Formatter(TEXT_FORMAT))

    handler.set_name(HANDLER_NAME)

    root = logging.getLogger()
    for existing in list(root.handlers):
        if existing.get_name() == HANDLER_NAME:
            root.removeHandler(existing)
    root.addHandler(handler)
    root.setLevel(getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO))
