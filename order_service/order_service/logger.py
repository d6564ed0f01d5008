"""Logger module for logging messages."""

import os

from logging_utils.config import setup_service_logger

SERVICE_NAME = "order-service"

logger = setup_service_logger(
    SERVICE_NAME,
    log_level=os.getenv("LOG_LEVEL", "INFO"),
    log_file=os.getenv("LOG_FILE") or None,
)

__all__ = ["logger", "SERVICE_NAME"]
