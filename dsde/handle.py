"""Exchange handles and the single-block allocator.

A handle owns exactly one ``uint8`` block laid out as::

    [ header | payload | ranks (int32) | counts (int64) | displs (int64) ]

The header holds the handle kind (int32) and the number of sources (int32).
Each section starts on a ``LAYOUT_ALIGN`` boundary.  Callers get numpy views
into the block; the handle stays the only owner.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import IntEnum
from typing import Callable, Iterator, NamedTuple

import numpy as np

from .constants import HEADER_NBYTES, LAYOUT_ALIGN, SUCCESS
from .errors import AllocationError, HandleReleasedError, PreconditionError


class HandleKind(IntEnum):
    NULL = 0
    BUF = 1


def _align(n: int) -> int:
    return (int(n) + LAYOUT_ALIGN - 1) // LAYOUT_ALIGN * LAYOUT_ALIGN


@dataclass(frozen=True)
class HandleLayout:
    extent: int
    num_incoming: int
    total_elements: int
    payload_offset: int
    ranks_offset: int
    counts_offset: int
    displs_offset: int
    nbytes: int

    @classmethod
    def for_sizes(cls, rsizes: np.ndarray, extent: int) -> "HandleLayout":
        rs = np.asarray(rsizes, dtype=np.int64)
        num_incoming = int(np.count_nonzero(rs))
        total = int(rs.sum())
        payload = _align(HEADER_NBYTES)
        ranks = _align(payload + total * int(extent))
        counts = _align(ranks + 4 * num_incoming)
        displs = counts + 8 * num_incoming
        return cls(
            extent=int(extent),
            num_incoming=num_incoming,
            total_elements=total,
            payload_offset=payload,
            ranks_offset=ranks,
            counts_offset=counts,
            displs_offset=displs,
            nbytes=displs + 8 * num_incoming,
        )


class RecvEntry(NamedTuple):
    rank: int
    count: int
    displ: int
    data: np.ndarray


class ExchangeHandle:
    """Owning reference to the memory produced by one exchange.

    ``release()`` frees the block and turns the handle into the null
    sentinel; releasing again is a no-op.
    """

    __slots__ = ("_block", "_layout", "_dtype")

    def __init__(self, block: np.ndarray | None, layout: HandleLayout | None, dtype):
        self._block = block
        self._layout = layout
        self._dtype = np.dtype(dtype) if dtype is not None else None

    @classmethod
    def null(cls) -> "ExchangeHandle":
        return cls(None, None, None)

    @property
    def kind(self) -> HandleKind:
        if self._block is None:
            return HandleKind.NULL
        return HandleKind(int(self._header[0]))

    @property
    def is_null(self) -> bool:
        return self.kind == HandleKind.NULL

    @property
    def nbytes(self) -> int:
        return 0 if self._block is None else int(self._block.nbytes)

    @property
    def dtype(self) -> np.dtype | None:
        return self._dtype

    @property
    def layout(self) -> HandleLayout:
        self._require_live()
        return self._layout

    @property
    def _header(self) -> np.ndarray:
        return self._block[:HEADER_NBYTES].view(np.int32)

    def _require_live(self) -> None:
        if self._block is None:
            raise HandleReleasedError("handle has been released (or was never allocated)")

    def _section(self, start: int, nbytes: int, dtype) -> np.ndarray:
        self._require_live()
        return self._block[start : start + nbytes].view(dtype)

    @property
    def payload_bytes(self) -> np.ndarray:
        lay = self.layout
        return self._block[lay.payload_offset : lay.payload_offset + lay.total_elements * lay.extent]

    @property
    def recvbuf(self) -> np.ndarray:
        return self.payload_bytes.view(self._dtype)

    @property
    def rrankcount(self) -> int:
        self._require_live()
        return int(self._header[1])

    @property
    def rranks(self) -> np.ndarray:
        lay = self.layout
        return self._section(lay.ranks_offset, 4 * lay.num_incoming, np.int32)

    @property
    def recvcounts(self) -> np.ndarray:
        lay = self.layout
        return self._section(lay.counts_offset, 8 * lay.num_incoming, np.int64)

    @property
    def rdispls(self) -> np.ndarray:
        lay = self.layout
        return self._section(lay.displs_offset, 8 * lay.num_incoming, np.int64)

    def sources(self) -> Iterator[RecvEntry]:
        buf = self.recvbuf
        for r, c, d in zip(self.rranks, self.recvcounts, self.rdispls):
            yield RecvEntry(int(r), int(c), int(d), buf[int(d) : int(d) + int(c)])

    def data_from(self, rank: int) -> np.ndarray:
        """Elements received from ``rank`` (empty when it sent nothing)."""
        ranks = self.rranks
        idx = np.searchsorted(ranks, int(rank))
        if idx < ranks.size and int(ranks[idx]) == int(rank):
            d = int(self.rdispls[idx])
            return self.recvbuf[d : d + int(self.recvcounts[idx])]
        return self.recvbuf[:0]

    def release(self) -> int:
        if self._block is None:
            return SUCCESS
        releaser = _RELEASERS.get(self.kind)
        if releaser is None:
            raise HandleReleasedError(f"unknown handle kind {int(self._header[0])}")
        releaser(self)
        return SUCCESS

    def __enter__(self) -> "ExchangeHandle":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()

    def __repr__(self) -> str:
        if self._block is None:
            return "ExchangeHandle(NULL)"
        return (
            f"ExchangeHandle(kind={self.kind.name}, sources={self.rrankcount}, "
            f"elements={self._layout.total_elements}, dtype={self._dtype}, nbytes={self.nbytes})"
        )


def _release_buf(handle: ExchangeHandle) -> None:
    # The block is the only allocation; dropping it is the whole free.
    handle._header[0] = int(HandleKind.NULL)
    handle._block = None
    handle._layout = None
    handle._dtype = None


_RELEASERS: dict[HandleKind, Callable[[ExchangeHandle], None]] = {
    HandleKind.BUF: _release_buf,
}

HANDLE_NULL = ExchangeHandle.null()


def release(handle: ExchangeHandle | None) -> int:
    """Release ``handle`` if it owns memory; ``None`` and null handles are no-ops."""
    if handle is None:
        return SUCCESS
    return handle.release()


def allocate_handle(rsizes: np.ndarray, dtype, extent: int) -> ExchangeHandle:
    """Allocate the single block for a receive shape and tag it ``BUF``.

    Descriptor arrays are left for the transfer engine to fill.
    """
    dt = np.dtype(dtype)
    if int(extent) != dt.itemsize:
        raise PreconditionError(
            f"transport extent {int(extent)} differs from dtype {dt} itemsize {dt.itemsize}"
        )
    layout = HandleLayout.for_sizes(rsizes, extent)
    try:
        block = np.zeros((layout.nbytes,), dtype=np.uint8)
    except MemoryError as exc:
        raise AllocationError(layout.nbytes, exc) from exc
    handle = ExchangeHandle(block, layout, dt)
    header = handle._header
    header[0] = int(HandleKind.BUF)
    header[1] = layout.num_incoming
    return handle
