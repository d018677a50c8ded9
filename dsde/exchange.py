from __future__ import annotations

import threading
from contextlib import contextmanager
from dataclasses import dataclass, fields
from typing import Iterator

import numpy as np

from .constants import EXCHANGE_TAG, MAX_TAG, discovery_tag
from .discovery import resolve_discovery
from .errors import ChannelBusyError, PreconditionError
from .handle import ExchangeHandle, allocate_handle
from .plan import SendPlan
from .trace import ExchangeTraceLogger
from .transport import as_transport


@dataclass
class RecvSlots:
    """Caller-supplied output slots; all must be empty when passed in.

    On success they are populated with views into the returned handle.
    """

    recvbuf: np.ndarray | None = None
    rrankcount: int | None = None
    rranks: np.ndarray | None = None
    recvcounts: np.ndarray | None = None
    rdispls: np.ndarray | None = None
    handle: ExchangeHandle | None = None

    def occupied(self) -> list[str]:
        return [f.name for f in fields(self) if getattr(self, f.name) is not None]

    def fill(self, handle: ExchangeHandle) -> None:
        self.recvbuf = handle.recvbuf
        self.rrankcount = handle.rrankcount
        self.rranks = handle.rranks
        self.recvcounts = handle.recvcounts
        self.rdispls = handle.rdispls
        self.handle = handle


class ChannelGuard:
    """Process-wide registry of channels with an exchange in flight."""

    def __init__(self):
        self._lock = threading.Lock()
        self._active: dict[object, int] = {}
        self._rounds: dict[object, int] = {}
        self._seq = 0

    @contextmanager
    def claim(self, key: object) -> Iterator[int]:
        with self._lock:
            if key in self._active:
                raise ChannelBusyError(key)
            self._seq += 1
            seq = self._seq
            self._active[key] = seq
        try:
            yield seq
        finally:
            with self._lock:
                self._active.pop(key, None)

    def next_round(self, key: object) -> int:
        """Number of earlier calls on ``key``; every rank counts its own channel."""
        with self._lock:
            n = self._rounds.get(key, 0)
            self._rounds[key] = n + 1
            return n

    def active(self) -> list[object]:
        with self._lock:
            return list(self._active)


_CHANNELS = ChannelGuard()


@contextmanager
def _unguarded() -> Iterator[int]:
    yield 0


def _send_bytes(sendbuf) -> np.ndarray:
    arr = np.ascontiguousarray(sendbuf).reshape(-1)
    return arr.view(np.uint8)


def _post_and_wait(
    transport,
    handle: ExchangeHandle,
    sbytes: np.ndarray,
    plan: SendPlan,
    rsizes: np.ndarray,
    *,
    dtype: np.dtype,
    extent: int,
    tag: int,
    trace: ExchangeTraceLogger | None = None,
    seq: int = 0,
) -> int:
    reqs = []
    for dest, count, displ in plan:
        if count == 0:
            continue
        chunk = sbytes[extent * displ : extent * (displ + count)]
        reqs.append(transport.isend(chunk, count, dtype, dest, tag))
    n_sends = len(reqs)

    payload = handle.payload_bytes
    rranks = handle.rranks
    recvcounts = handle.recvcounts
    rdispls = handle.rdispls
    offset = 0
    for index, src in enumerate(np.flatnonzero(rsizes)):
        count = int(rsizes[src])
        chunk = payload[extent * offset : extent * (offset + count)]
        reqs.append(transport.irecv(chunk, count, dtype, int(src), tag))
        rranks[index] = int(src)
        recvcounts[index] = count
        rdispls[index] = offset
        offset += count

    if trace is not None:
        trace.log(seq=seq, event="post", peers=len(reqs), detail=f"sends={n_sends} tag={tag}")
    # Sends and receives complete as one set.
    transport.waitall(reqs)
    return n_sends


def exchange(
    transport,
    sendbuf,
    plan: SendPlan,
    *,
    dtype=None,
    out: RecvSlots | None = None,
    tag: int = EXCHANGE_TAG,
    discovery: str = "alltoall",
    trace: ExchangeTraceLogger | None = None,
    guard: bool = True,
) -> ExchangeHandle:
    """Collective dynamic sparse exchange.

    Every rank of the group must call this together.  Each rank sends the
    plan's sub-ranges of ``sendbuf`` and receives from whichever ranks target
    it, in one freshly allocated block owned by the returned handle.  Sources
    are listed in ascending rank order and packed contiguously.

    Any failure releases the block and leaves ``out`` untouched; the caller
    owns nothing unless the call returns.
    """
    transport = as_transport(transport)
    if out is not None:
        occupied = out.occupied()
        if occupied:
            raise PreconditionError(f"output slots must be empty on entry: {', '.join(occupied)}")
    tag = int(tag)
    if tag < 0 or tag > MAX_TAG:
        raise PreconditionError(f"tag must be in [0, {MAX_TAG}], got {tag}")

    # an explicit dtype converts the buffer, never reinterprets its bytes
    sarr = np.asarray(sendbuf) if dtype is None else np.asarray(sendbuf, dtype=dtype)
    dt = sarr.dtype
    extent = int(transport.extent(dt))
    sbytes = _send_bytes(sarr)
    plan.validate(size=transport.size, n_elements=sbytes.size // extent)
    discover = resolve_discovery(discovery, transport)

    key = transport.channel_key(tag)
    claim = _CHANNELS.claim(key) if guard else _unguarded()
    with claim as seq:
        rank = int(transport.rank)
        handle = None
        try:
            rsizes = discover(transport, plan, tag=discovery_tag(tag, _CHANNELS.next_round(key)))
            if trace is not None:
                trace.log(
                    seq=seq, event="discover", peers=int(np.count_nonzero(rsizes)),
                    elements=int(rsizes.sum()), detail=getattr(discover, "__name__", ""),
                )
            handle = allocate_handle(rsizes, dt, extent)
            if trace is not None:
                trace.log(
                    seq=seq, event="allocate", peers=handle.rrankcount,
                    elements=handle.layout.total_elements, nbytes=handle.nbytes,
                )
            n_sends = _post_and_wait(
                transport, handle, sbytes, plan, rsizes,
                dtype=dt, extent=extent, tag=tag, trace=trace, seq=seq,
            )
            if trace is not None:
                trace.log(
                    seq=seq, event="complete", peers=n_sends + handle.rrankcount,
                    elements=plan.total_elements + handle.layout.total_elements,
                    nbytes=extent * (plan.total_elements + handle.layout.total_elements),
                )
        except Exception as exc:
            if handle is not None:
                handle.release()
            if trace is not None:
                trace.log(seq=seq, event="fail", detail=f"rank {rank}: {type(exc).__name__}: {exc}")
            raise

    if out is not None:
        out.fill(handle)
    return handle
