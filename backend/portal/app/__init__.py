"""Session and step-up authentication pipeline for the Travelsphere portal."""

from .config import settings
from .logging import setup_logging

setup_logging(level=settings.logging.level)

__all__ = ["setup_logging"]
