from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Iterator

import numpy as np

from .errors import PreconditionError


@dataclass(frozen=True, eq=False)
class SendPlan:
    """Sparse send list: element ``count`` starting at ``displ`` goes to ``rank``.

    Counts and displacements are in elements of the send dtype.  The plan is
    read-only to the exchange.
    """

    ranks: np.ndarray
    counts: np.ndarray
    displs: np.ndarray

    def __post_init__(self):
        ranks = np.asarray(self.ranks, dtype=np.int32).reshape(-1)
        counts = np.asarray(self.counts, dtype=np.int64).reshape(-1)
        displs = np.asarray(self.displs, dtype=np.int64).reshape(-1)
        if not (ranks.size == counts.size == displs.size):
            raise PreconditionError(
                f"plan arrays differ in length: ranks={ranks.size} counts={counts.size} displs={displs.size}"
            )
        for arr in (ranks, counts, displs):
            arr.setflags(write=False)
        object.__setattr__(self, "ranks", ranks)
        object.__setattr__(self, "counts", counts)
        object.__setattr__(self, "displs", displs)

    @classmethod
    def empty(cls) -> "SendPlan":
        return cls(np.empty((0,), np.int32), np.empty((0,), np.int64), np.empty((0,), np.int64))

    @classmethod
    def contiguous(cls, ranks: Iterable[int], counts: Iterable[int]) -> "SendPlan":
        """Plan whose per-destination blocks are packed back to back in plan order."""
        c = np.asarray(list(counts), dtype=np.int64)
        displs = np.zeros_like(c)
        if c.size:
            displs[1:] = np.cumsum(c)[:-1]
        return cls(np.asarray(list(ranks), dtype=np.int32), c, displs)

    def __len__(self) -> int:
        return int(self.ranks.size)

    def __iter__(self) -> Iterator[tuple[int, int, int]]:
        for r, c, d in zip(self.ranks, self.counts, self.displs):
            yield int(r), int(c), int(d)

    @property
    def total_elements(self) -> int:
        return int(self.counts.sum())

    @property
    def extent_elements(self) -> int:
        """Smallest send-buffer length (in elements) that covers every entry."""
        if not len(self):
            return 0
        return int((self.displs + self.counts).max())

    def validate(self, *, size: int, n_elements: int) -> None:
        if len(self) == 0:
            return
        bad = (self.ranks < 0) | (self.ranks >= int(size))
        if bad.any():
            raise PreconditionError(
                f"destination rank(s) {self.ranks[bad].tolist()} outside group of size {int(size)}"
            )
        if (self.counts < 0).any():
            raise PreconditionError("send counts must be >= 0")
        if (self.displs < 0).any():
            raise PreconditionError("send displacements must be >= 0")
        uniq, hits = np.unique(self.ranks, return_counts=True)
        if (hits > 1).any():
            raise PreconditionError(
                f"duplicate destination rank(s) in plan: {uniq[hits > 1].tolist()}"
            )
        need = self.extent_elements
        if need > int(n_elements):
            raise PreconditionError(
                f"plan reaches element {need} but send buffer holds {int(n_elements)}"
            )

    def dense_sizes(self, size: int) -> np.ndarray:
        """Dense per-destination counts of length ``size``."""
        out = np.zeros((int(size),), dtype=np.int64)
        if len(self):
            out[self.ranks] = self.counts
        return out
