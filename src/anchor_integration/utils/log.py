"""
Logging setup for the integration pipeline.
"""

import logging

from anchor_integration.config.settings import get_settings

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def setup_logging(level=None):
    """
    Configure root logging for scripts.

    Parameters
    ----------
    level : str or int, optional
        Log level. Uses ``Settings.LOG_LEVEL`` if None.
    """
    if level is None:
        level = get_settings().LOG_LEVEL
    if isinstance(level, str):
        level = getattr(logging, level.upper(), logging.INFO)

    logging.basicConfig(level=level, format=LOG_FORMAT)
    logging.getLogger("anchor_integration").setLevel(level)
    return logging.getLogger("anchor_integration")
