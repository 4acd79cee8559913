"""Logging setup shared by the API and the worker."""

import logging

from services.shared.config import Settings

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def configure_logging(settings: Settings) -> None:
    """Configure root logging with the shared format and configured level.

    Args:
        settings: Application settings providing log_level
    """
    logging.basicConfig(level=settings.log_level, format=LOG_FORMAT)
