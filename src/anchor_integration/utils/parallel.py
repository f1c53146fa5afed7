"""Order-stable thread-pool map for independent dataset pairs."""

import logging
from concurrent.futures import ThreadPoolExecutor

logger = logging.getLogger(__name__)


def parallel_map(func, items, n_jobs=1):
    """
    Apply ``func`` to every item, returning results in input order.

    Threads share read-only inputs; numpy and scipy release the GIL in the
    heavy linear algebra, so pairs overlap in practice. The first exception
    raised by any call propagates to the caller.
    """
    items = list(items)
    jobs = max(1, int(n_jobs))
    if jobs == 1 or len(items) <= 1:
        return [func(item) for item in items]

    logger.debug(f"Running {len(items)} tasks on {min(jobs, len(items))} threads")
    with ThreadPoolExecutor(max_workers=min(jobs, len(items))) as executor:
        return list(executor.map(func, items))
