import logging.config
import os
import sys

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
LOG_FILE = os.getenv("LOG_FILE", "/tmp/airdrop.log")

_HANDLERS = ["console", "file"]

# Third-party loggers that are only interesting when something breaks.
_QUIET = ("uvicorn.access", "xrpl", "httpx")


def _logger(level: str) -> dict:
    return {"level": level, "handlers": list(_HANDLERS), "propagate": False}


LOGGING_CONFIG = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "default": {
            "format": "%(asctime)s %(levelname)-6s %(name)s:%(lineno)d %(message)s",
            "datefmt": "%Y-%m-%d %H:%M:%S",
        },
    },
    "handlers": {
        "console": {"class": "logging.StreamHandler", "formatter": "default", "stream": sys.stdout},
        "file": {"class": "logging.FileHandler", "formatter": "default", "filename": LOG_FILE, "mode": "a"},
    },
    "loggers": {
        "airdrop": _logger(LOG_LEVEL),
        **{name: _logger("WARNING") for name in _QUIET},
    },
    "root": {"level": "WARNING", "handlers": list(_HANDLERS)},
}


def setup_logging():
    logging.config.dictConfig(LOGGING_CONFIG)
