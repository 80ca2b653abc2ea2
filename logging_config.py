"""
Logging configuration.

Components take a `logging.Logger` at construction; this module only decides
where records go and how they are rendered (JSON or plain text).
"""

import logging.config
import sys

from pythonjsonlogger.json import JsonFormatter

COMPONENT_LOGGERS = (
    "activation_engine",
    "license_store",
    "license_client",
    "activation_state",
    "machine_identity",
    "main",
    "cli",
)


def get_logging_config(level: str = "INFO", json_format: bool = False) -> dict:
    """
    Build a dictConfig for the service.

    Args:
        level: Level for the service's own loggers
        json_format: Render records as JSON instead of plain text

    Returns:
        logging.config.dictConfig dictionary
    """
    formatter = "json" if json_format else "simple"
    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "json": {
                "()": JsonFormatter,
                "format": "%(asctime)s %(name)s %(levelname)s %(message)s",
            },
            "simple": {
                "format": "[{asctime}] {levelname} {name}: {message}",
                "style": "{",
            },
        },
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "formatter": formatter,
                "stream": sys.stdout,
            },
        },
        "root": {
            "handlers": ["console"],
            "level": "WARNING",
        },
        "loggers": {
            **{
                name: {"handlers": ["console"], "level": level.upper(), "propagate": False}
                for name in COMPONENT_LOGGERS
            },
            "uvicorn.access": {"handlers": ["console"], "level": "WARNING", "propagate": False},
        },
    }


def configure_logging(level: str = "INFO", json_format: bool = False) -> None:
    logging.config.dictConfig(get_logging_config(level, json_format))
