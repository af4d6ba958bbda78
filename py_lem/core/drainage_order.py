"""
Topological ordering of the receiver forest.

The order lists every site after all sites upstream of it and before its own
receiver. Flow accumulation walks it forwards (upstream first); the implicit
erosion solver walks it backwards (outlets first) because each site needs its
receiver's already-updated elevation.
"""

from dataclasses import dataclass
from typing import Iterator, List, Optional, Tuple

import numpy as np
import structlog

from .errors import CyclicDrainageError
from .flow_router import NO_RECEIVER

logger = structlog.get_logger()


@dataclass
class DrainageBasin:
    """All sites draining to one outlet, as a slice of the drainage order."""
    outlet: int
    start: int
    stop: int

    @property
    def size(self) -> int:
        return self.stop - self.start


@dataclass
class DrainageOrder:
    """Upstream-first order over all sites, partitioned into basins."""
    order: np.ndarray              # upstream-first site indices
    basins: List[DrainageBasin]    # one per outlet, in ascending outlet order
    donor_offsets: np.ndarray      # CSR offsets into donors, length n + 1
    donors: np.ndarray             # sites grouped by receiver

    def upstream_first(self) -> np.ndarray:
        """Leaves first, outlets last. Used by flow accumulation."""
        return self.order

    def downstream_first(self) -> np.ndarray:
        """Outlets first, leaves last. Used by the erosion solver."""
        return self.order[::-1]

    def basin_sites(self, basin: DrainageBasin) -> np.ndarray:
        """Upstream-first sites of a single basin."""
        return self.order[basin.start:basin.stop]

    def donors_of(self, site: int) -> np.ndarray:
        """Sites whose receiver is ``site``."""
        return self.donors[self.donor_offsets[site]:self.donor_offsets[site + 1]]

    def __len__(self) -> int:
        return len(self.order)

    def __iter__(self) -> Iterator[int]:
        return iter(self.order)


def build_donors(receivers: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """
    Invert the receiver graph in linear time.

    Returns:
        Tuple of (donor_offsets, donors) in CSR layout; donors of each site
        are listed in ascending index order
    """
    n_sites = len(receivers)
    has_receiver = receivers != NO_RECEIVER
    counts = np.bincount(receivers[has_receiver], minlength=n_sites)

    offsets = np.zeros(n_sites + 1, dtype=np.int64)
    np.cumsum(counts, out=offsets[1:])

    donors = np.empty(offsets[-1], dtype=np.int64)
    fill = offsets[:-1].copy()
    for i in np.flatnonzero(has_receiver):
        r = receivers[i]
        donors[fill[r]] = i
        fill[r] += 1

    return offsets, donors


def build_drainage_order(receivers: np.ndarray,
                         outlets: Optional[np.ndarray] = None) -> DrainageOrder:
    """
    Build the upstream-first drainage order.

    Each outlet's basin is listed with an explicit stack (receivers before
    donors) and then reversed, so no recursion depth is involved regardless
    of mesh size.

    Args:
        receivers: Receiver per site, NO_RECEIVER for outlets
        outlets: Root sites; defaults to every site without a receiver

    Returns:
        DrainageOrder covering every site exactly once

    Raises:
        CyclicDrainageError: if some sites cannot be reached from an outlet,
            or an outlet has a receiver of its own
    """
    receivers = np.asarray(receivers, dtype=np.int64)
    n_sites = len(receivers)
    if outlets is None:
        outlets = np.flatnonzero(receivers == NO_RECEIVER)

    outlets = np.asarray(outlets, dtype=np.int64)
    not_roots = outlets[receivers[outlets] != NO_RECEIVER]
    if len(not_roots) or len(np.unique(outlets)) != len(outlets):
        raise CyclicDrainageError(
            n_sites,
            f"outlets must be distinct sites without a receiver; offending: {not_roots.tolist()}",
        )

    offsets, donors = build_donors(receivers)

    order = np.empty(n_sites, dtype=np.int64)
    basins = []
    position = 0

    for outlet in outlets:
        start = position
        stack = [int(outlet)]
        while stack:
            i = stack.pop()
            order[position] = i
            position += 1
            stack.extend(donors[offsets[i]:offsets[i + 1]].tolist())

        order[start:position] = order[start:position][::-1]
        basins.append(DrainageBasin(outlet=int(outlet), start=start, stop=position))

    if position != n_sites:
        raise CyclicDrainageError(n_sites - position)

    logger.debug("Drainage order built", sites=n_sites, basins=len(basins))

    return DrainageOrder(order=order, basins=basins,
                         donor_offsets=offsets, donors=donors)


def is_topological(order: np.ndarray, receivers: np.ndarray) -> bool:
    """
    Check that every site precedes its receiver in ``order``.

    Also requires ``order`` to be a permutation of all site indices.
    """
    order = np.asarray(order)
    receivers = np.asarray(receivers)
    n_sites = len(receivers)
    if len(order) != n_sites:
        return False

    rank = np.full(n_sites, -1, dtype=np.int64)
    rank[order] = np.arange(n_sites)
    if np.any(rank < 0):
        return False

    has_receiver = receivers != NO_RECEIVER
    sites = np.flatnonzero(has_receiver)
    return bool(np.all(rank[sites] < rank[receivers[sites]]))
