"""Receive-size discovery.

Both strategies return the same thing: a dense ``int64`` vector of length P
whose entry ``r`` is the number of elements this rank will receive from rank
``r``.

``alltoall`` is one dense collective round; O(P) words per rank and O(P^2) in
aggregate, which is the scalability ceiling of the exchange for large groups.
``nbx`` (non-blocking consensus) only sends to actual destinations and
terminates with a non-blocking barrier, so its traffic scales with the number
of real messages.
"""

from __future__ import annotations

import os
import warnings
from typing import Callable

import numpy as np

from .constants import EXCHANGE_TAG, discovery_tag
from .plan import SendPlan

DISCOVERY_STRATEGIES = ("alltoall", "nbx", "auto")


def dense_alltoall_sizes(transport, plan: SendPlan, *, tag: int | None = None) -> np.ndarray:
    # the collective carries no tag
    ssizes = plan.dense_sizes(transport.size)
    rsizes = np.zeros_like(ssizes)
    transport.alltoall(ssizes, rsizes)
    return rsizes


def nbx_sizes(
    transport, plan: SendPlan, *, tag: int = discovery_tag(EXCHANGE_TAG, 0)
) -> np.ndarray:
    """NBX discovery on ``tag``.

    A rank may leave its barrier while a peer already posts counts for the
    next call on the same channel, so successive calls of one channel must
    alternate tags (see ``discovery_tag``).
    """
    rsizes = np.zeros((int(transport.size),), dtype=np.int64)
    # Issend payloads must stay alive until their requests complete.
    keepalive: list[np.ndarray] = []
    reqs = []
    for dest, count, _displ in plan:
        if count == 0:
            continue
        buf = np.array([count], dtype=np.int64)
        keepalive.append(buf)
        reqs.append(transport.issend(buf, 1, np.int64, dest, tag))

    incoming = np.empty((1,), dtype=np.int64)
    barrier = None
    while True:
        src = transport.iprobe(tag)
        if src is not None:
            transport.recv(incoming, 1, np.int64, src, tag)
            rsizes[src] += int(incoming[0])
        if barrier is None:
            if all(transport.test(r) for r in reqs):
                barrier = transport.ibarrier()
        elif transport.test(barrier):
            break
    return rsizes


_STRATEGIES: dict[str, Callable[..., np.ndarray]] = {
    "alltoall": dense_alltoall_sizes,
    "nbx": nbx_sizes,
}


def resolve_discovery(name: str = "alltoall", transport=None) -> Callable[..., np.ndarray]:
    req = str(name or "alltoall").strip().lower()
    env_val = os.environ.get("DSDE_DISCOVERY", "").strip().lower()
    if env_val:
        req = env_val
    if req not in DISCOVERY_STRATEGIES:
        raise ValueError(f"discovery must be one of: {', '.join(DISCOVERY_STRATEGIES)}")

    nbx_ok = bool(getattr(transport, "supports_nbx", False)) if transport is not None else True
    if req == "auto":
        return nbx_sizes if nbx_ok else dense_alltoall_sizes
    if req == "nbx" and not nbx_ok:
        warnings.warn(
            "nbx discovery requested but transport has no non-blocking barrier; "
            "falling back to alltoall",
            RuntimeWarning,
        )
        return dense_alltoall_sizes
    return _STRATEGIES[req]
