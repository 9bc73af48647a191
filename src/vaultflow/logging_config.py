import logging
import logging.config
import os
import sys
from typing import Any

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
# empty disables the file handler
LOG_FILE = os.getenv("LOG_FILE", "/tmp/vaultflow.log")
# e.g. "vaultflow.scheduler=DEBUG,vaultflow.wallet=WARNING"
LOG_LEVELS = os.getenv("LOG_LEVELS", "")

# libraries that log once per request or receipt poll
QUIET_LOGGERS = ("httpx", "httpcore", "uvicorn.access")


def parse_levels(text: str) -> dict[str, str]:
    """Parse "name=LEVEL,..." into per-logger overrides, ignoring malformed entries."""
    levels = {}
    for part in text.split(","):
        name, sep, level = part.partition("=")
        if sep and name.strip() and level.strip():
            levels[name.strip()] = level.strip().upper()
    return levels


def build_logging_config(
    level: str = LOG_LEVEL,
    log_file: str | None = LOG_FILE,
    overrides: dict[str, str] | None = None,
) -> dict[str, Any]:
    handlers: dict[str, Any] = {
        "console": {
            "class": "logging.StreamHandler",
            "formatter": "console",
            "stream": sys.stdout,
        },
    }
    if log_file:
        handlers["file"] = {
            "class": "logging.FileHandler",
            "formatter": "file",
            "filename": log_file,
            "mode": "a",
        }
    names = list(handlers)

    loggers: dict[str, Any] = {
        "vaultflow": {"level": level, "handlers": names, "propagate": False},
        "fastapi": {"level": "INFO", "handlers": names, "propagate": False},
    }
    for name in QUIET_LOGGERS:
        loggers[name] = {"level": "WARNING", "handlers": names, "propagate": False}
    # children of vaultflow inherit its handlers
    for name, lvl in (overrides or {}).items():
        loggers.setdefault(name, {"propagate": True})["level"] = lvl

    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "console": {
                "format": "%(asctime)s %(levelname)-7s %(name)s: %(message)s",
                "datefmt": "%H:%M:%S",
            },
            "file": {
                "format": "%(asctime)s %(levelname)-7s %(name)s:%(lineno)d [%(threadName)s] %(message)s",
                "datefmt": "%Y-%m-%d %H:%M:%S",
            },
        },
        "handlers": handlers,
        "loggers": loggers,
        "root": {"level": "WARNING", "handlers": names},
    }


def setup_logging():
    logging.config.dictConfig(build_logging_config(overrides=parse_levels(LOG_LEVELS)))
    os.environ.setdefault("PYTHONUNBUFFERED", "1")
