from __future__ import annotations


class DSDEError(Exception):
    """Base class for every error raised by the exchange primitive."""


class PreconditionError(DSDEError, ValueError):
    """Caller violated a documented precondition (bad plan, non-empty slots)."""


class ChannelBusyError(PreconditionError):
    """Another exchange is already outstanding on the same channel."""

    def __init__(self, key: object):
        super().__init__(
            f"an exchange is already outstanding on channel {key!r}; "
            "use a distinct tag or wait for the previous exchange to return"
        )
        self.key = key


class HandleReleasedError(DSDEError, RuntimeError):
    """A view was requested from a handle that no longer owns memory."""


class TransportError(DSDEError, RuntimeError):
    """An underlying send/receive/collective failed.

    ``code`` is the transport's own error code, passed through unmodified.
    """

    def __init__(self, op: str, code: int, message: str = ""):
        msg = f"{op} failed with transport error code {int(code)}"
        if message:
            msg = f"{msg}: {message}"
        super().__init__(msg)
        self.op = str(op)
        self.code = int(code)


class AllocationError(DSDEError, MemoryError):
    """The single backing block of a handle could not be allocated."""

    def __init__(self, nbytes: int, cause: BaseException | None = None):
        msg = f"failed to allocate exchange block of {int(nbytes)} bytes"
        if cause is not None:
            msg = f"{msg} ({cause})"
        super().__init__(msg)
        self.nbytes = int(nbytes)
