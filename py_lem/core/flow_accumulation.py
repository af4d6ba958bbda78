"""Upstream drainage area accumulation along the drainage order."""

from concurrent.futures import Executor
from typing import Optional

import numpy as np
import structlog
from numba import njit

from .drainage_order import DrainageOrder
from .flow_router import NO_RECEIVER

logger = structlog.get_logger()


@njit(cache=True, nogil=True)
def _accumulate_sites(sites, receivers, area):
    for k in range(len(sites)):
        i = sites[k]
        r = receivers[i]
        if r != NO_RECEIVER:
            area[r] += area[i]


def accumulate_flow(order: DrainageOrder, receivers: np.ndarray,
                    local_area: Optional[np.ndarray] = None,
                    executor: Optional[Executor] = None) -> np.ndarray:
    """
    Sum contributing drainage area at every site.

    Each site starts with its local contribution and passes its running total
    to its receiver, walking the order upstream first. Every outlet ends up
    holding the total of its basin.

    Args:
        order: Drainage order built from ``receivers``
        receivers: Receiver per site
        local_area: Local contribution per site; unit area if omitted
        executor: If given, basins are accumulated as independent tasks

    Returns:
        Accumulated drainage area per site
    """
    n_sites = len(receivers)
    receivers = np.asarray(receivers, dtype=np.int64)
    if local_area is None:
        area = np.ones(n_sites, dtype=np.float64)
    else:
        area = np.array(local_area, dtype=np.float64)

    if executor is None or len(order.basins) < 2:
        _accumulate_sites(order.upstream_first(), receivers, area)
    else:
        futures = [
            executor.submit(_accumulate_sites, order.basin_sites(basin), receivers, area)
            for basin in order.basins
        ]
        # join every basin before the caller reads the result
        for future in futures:
            future.result()

    logger.debug("Flow accumulated", max_area=float(np.max(area)))
    return area
