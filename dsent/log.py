"""
Logging setup for applications using dsent.

Library modules only create loggers; handlers are installed by the
application through setup_logging().
"""

from __future__ import annotations

import logging

import json_log_formatter

from .config import DsEntConfig


def setup_logging(config: DsEntConfig) -> None:
    """Configure logging based on configuration.

    Args:
        config: dsent configuration
    """
    level = getattr(logging, config.observability.log_level.upper(), logging.INFO)

    if config.observability.log_format == "json":
        formatter: logging.Formatter = json_log_formatter.JSONFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers = [handler]

    # Reduce noise from libraries
    logging.getLogger("google").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("grpc").setLevel(logging.WARNING)
