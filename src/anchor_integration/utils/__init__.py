"""Shared helpers: neighbour search and logging setup."""

from anchor_integration.utils.log import setup_logging
from anchor_integration.utils.neighbors import knn, l2_normalize

__all__ = ["knn", "l2_normalize", "setup_logging"]
