import logging
import logging.config
import os
import sys

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
# Unset keeps logging on stdout only
LOG_FILE = os.getenv("LOG_FILE")

QUIET_LOGGERS = {
    "httpx": "WARNING",  # Every request is logged at INFO otherwise
    "uvicorn.access": "WARNING",
}


def build_logging_config(level: str = LOG_LEVEL, log_file: str | None = LOG_FILE) -> dict:
    handlers = {
        "console": {
            "class": "logging.StreamHandler",
            "formatter": "default",
            "stream": sys.stdout,
        },
    }
    if log_file:
        handlers["file"] = {
            "class": "logging.FileHandler",
            "formatter": "default",
            "filename": log_file,
            "mode": "a",
        }
    names = list(handlers)

    loggers = {
        "fundbridge": {
            "level": level,
            "handlers": names,
            "propagate": False,  # Don't pass 'fundbridge' logs up to the root logger
        },
    }
    for name, quiet in QUIET_LOGGERS.items():
        loggers[name] = {"level": quiet, "handlers": names, "propagate": False}

    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "default": {
                "format": "%(asctime)s %(levelname)-6s %(name)8s:%(lineno)d %(message)s",
                "datefmt": "%Y-%m-%d %H:%M:%S",
            },
        },
        "handlers": handlers,
        "loggers": loggers,
        # Default for all other loggers
        "root": {"level": "WARNING", "handlers": names},
    }


def setup_logging(log_file: str | None = LOG_FILE) -> None:
    """Apply the logging configuration."""
    logging.config.dictConfig(build_logging_config(log_file=log_file))
    os.environ.setdefault("PYTHONUNBUFFERED", "1")
