"""Logging setup for processes embedding the tone-learning engine."""

import logging

from tonelearn.core.config import Settings, get_settings


def configure_logging(config: Settings | None = None) -> None:
    """Set up root logging based on LOG_FORMAT / LOG_LEVEL.

    json: Structured JSON via python-json-logger (for production workers).
    text: Human-readable format (for local development).

    Args:
        config: Settings to read from. Defaults to the cached settings.
    """
    config = config or get_settings()
    log_format = config.LOG_FORMAT.lower()
    log_level = config.LOG_LEVEL.upper()

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, log_level, logging.INFO))

    # Remove existing handlers to avoid duplicate output
    root_logger.handlers.clear()

    handler = logging.StreamHandler()

    if log_format == "json":
        from pythonjsonlogger.json import JsonFormatter

        formatter = JsonFormatter(
            fmt="%(asctime)s %(levelname)s %(name)s %(message)s",
            rename_fields={
                "asctime": "timestamp",
                "levelname": "level",
                "name": "service",
            },
            static_fields={"app": "tonelearn"},
        )
        handler.setFormatter(formatter)
    else:
        handler.setFormatter(
            logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
        )

    root_logger.addHandler(handler)
