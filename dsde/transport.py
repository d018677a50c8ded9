"""Point-to-point and collective transport used by the exchange.

The exchange core only talks to objects with the interface of
``MPITransport``; tests substitute an in-process loopback with the same
methods.  Buffers handed to the transport are contiguous numpy arrays, counts
are in elements of ``dtype``.
"""

from __future__ import annotations

from typing import Any, Callable

import numpy as np

from .errors import TransportError

try:
    import mpi4py

    mpi4py.rc.initialize = False
    mpi4py.rc.finalize = False
    from mpi4py import MPI
    from mpi4py.util.dtlib import from_numpy_dtype
except Exception:
    MPI = None
    from_numpy_dtype = None


def init_mpi() -> bool:
    """Initialize MPI if needed; returns True when this call owns the init."""
    if MPI is None:
        raise RuntimeError("mpi4py required")
    if MPI.Is_initialized():
        return False
    MPI.Init()
    return True


def finalize_mpi(owns_mpi_init: bool) -> None:
    if not owns_mpi_init or MPI is None:
        return
    if MPI.Is_initialized() and not MPI.Is_finalized():
        MPI.COMM_WORLD.Barrier()
        MPI.Finalize()


def _call(op: str, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
    try:
        return fn(*args, **kwargs)
    except MPI.Exception as exc:
        raise TransportError(op, exc.Get_error_code(), exc.Get_error_string()) from exc


class MPITransport:
    """Thin adapter from the exchange core onto an ``mpi4py`` communicator.

    Every MPI failure surfaces as ``TransportError`` carrying the MPI error
    code unmodified.
    """

    def __init__(self, comm):
        if MPI is None:
            raise RuntimeError("mpi4py required")
        self.comm = comm
        self.rank = int(comm.Get_rank())
        self.size = int(comm.Get_size())
        self._types: dict[np.dtype, object] = {}

    @classmethod
    def world(cls) -> "MPITransport":
        init_mpi()
        return cls(MPI.COMM_WORLD)

    @property
    def supports_nbx(self) -> bool:
        # MPI_Ibarrier arrived with MPI-3.0
        return tuple(MPI.Get_version()) >= (3, 0)

    def channel_key(self, tag: int) -> tuple:
        return ("mpi", int(self.comm.py2f()), self.rank, int(tag))

    def mpi_type(self, dtype) -> object:
        dt = np.dtype(dtype)
        t = self._types.get(dt)
        if t is None:
            t = from_numpy_dtype(dt)
            if not t.is_predefined:
                t.Commit()
            self._types[dt] = t
        return t

    def extent(self, dtype) -> int:
        _lb, extent = _call("Type_get_extent", self.mpi_type(dtype).Get_extent)
        return int(extent)

    def alltoall(self, sendbuf: np.ndarray, recvbuf: np.ndarray) -> None:
        t = self.mpi_type(sendbuf.dtype)
        _call("Alltoall", self.comm.Alltoall, [sendbuf, 1, t], [recvbuf, 1, t])

    def isend(self, buf: np.ndarray, count: int, dtype, dest: int, tag: int):
        msg = [buf, int(count), self.mpi_type(dtype)]
        return _call("Isend", self.comm.Isend, msg, dest=int(dest), tag=int(tag))

    def issend(self, buf: np.ndarray, count: int, dtype, dest: int, tag: int):
        msg = [buf, int(count), self.mpi_type(dtype)]
        return _call("Issend", self.comm.Issend, msg, dest=int(dest), tag=int(tag))

    def irecv(self, buf: np.ndarray, count: int, dtype, source: int, tag: int):
        msg = [buf, int(count), self.mpi_type(dtype)]
        return _call("Irecv", self.comm.Irecv, msg, source=int(source), tag=int(tag))

    def recv(self, buf: np.ndarray, count: int, dtype, source: int, tag: int) -> None:
        msg = [buf, int(count), self.mpi_type(dtype)]
        _call("Recv", self.comm.Recv, msg, source=int(source), tag=int(tag))

    def iprobe(self, tag: int) -> int | None:
        status = MPI.Status()
        found = _call("Iprobe", self.comm.Iprobe, source=MPI.ANY_SOURCE, tag=int(tag), status=status)
        if not found:
            return None
        return int(status.Get_source())

    def ibarrier(self):
        return _call("Ibarrier", self.comm.Ibarrier)

    def test(self, req) -> bool:
        return bool(_call("Test", req.Test))

    def waitall(self, reqs: list) -> None:
        if reqs:
            _call("Waitall", MPI.Request.Waitall, reqs)

    def free_types(self) -> None:
        for t in self._types.values():
            if not t.is_predefined:
                t.Free()
        self._types.clear()


def as_transport(obj) -> Any:
    """Accept a transport object or a raw mpi4py communicator."""
    if hasattr(obj, "isend") and hasattr(obj, "waitall"):
        return obj
    if MPI is not None and isinstance(obj, MPI.Comm):
        return MPITransport(obj)
    raise TypeError(f"expected a transport or mpi4py communicator, got {type(obj).__name__}")
