"""
Logging configuration for applications embedding markdeco.

Library modules only ever call ``logging.getLogger(__name__)``; this helper is
for the host application's entry point.
"""

import logging
from typing import Optional

from markdeco.config import get_settings

LOG_FORMAT: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def configure_logging(level: Optional[str] = None) -> None:
    """Configure the root logger with the project format.

    Args:
        level: Level name; defaults to ``Settings.log_level``.
    """
    logging.basicConfig(
        level=level or get_settings().log_level,
        format=LOG_FORMAT,
    )
