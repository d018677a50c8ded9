"""DSDE: dynamic sparse data exchange over MPI.

Version is single-sourced from the repository root VERSION file.
"""

from __future__ import annotations
from pathlib import Path

from .constants import EXCHANGE_TAG, SUCCESS
from .errors import (
    AllocationError,
    ChannelBusyError,
    DSDEError,
    HandleReleasedError,
    PreconditionError,
    TransportError,
)
from .exchange import RecvSlots, exchange
from .handle import HANDLE_NULL, ExchangeHandle, HandleKind, release
from .plan import SendPlan

def _read_version() -> str:
    repo_root = Path(__file__).resolve().parents[1]
    try:
        return (repo_root / "VERSION").read_text(encoding="utf-8").strip()
    except Exception:
        return "0.3.0"

__version__ = _read_version()

__all__ = [
    "AllocationError",
    "ChannelBusyError",
    "DSDEError",
    "EXCHANGE_TAG",
    "ExchangeHandle",
    "HANDLE_NULL",
    "HandleKind",
    "HandleReleasedError",
    "PreconditionError",
    "RecvSlots",
    "SUCCESS",
    "SendPlan",
    "TransportError",
    "exchange",
    "release",
]
