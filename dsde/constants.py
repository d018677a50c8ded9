"""Named constants for DSDE.

Categories
----------
SUCCESS
    Status returned by ``release``.  Matches ``MPI.SUCCESS`` (0) so callers
    mixing raw mpi4py codes and DSDE statuses can compare them directly.

EXCHANGE_TAG
    Default message tag for payload transfers.  Every transfer of one
    exchange uses the same tag, so at most one exchange may be outstanding
    per (communicator, tag) pair.

MAX_TAG
    Largest exchange tag a caller may pass.  Tags above it are reserved for
    the sparse (NBX) size discovery, which uses two tags per exchange tag,
    alternating on successive calls of a channel.  The highest reserved tag
    stays within 32767, the smallest MPI_TAG_UB an implementation may have.

DISCOVERY_TAG_BASE
    First tag of the reserved discovery range.

LAYOUT_ALIGN
    Byte alignment of each section inside a handle block.
"""

from __future__ import annotations

# ---------------------------------------------------------------------------
# Status codes
# ---------------------------------------------------------------------------
SUCCESS: int = 0

# ---------------------------------------------------------------------------
# Message tags
# ---------------------------------------------------------------------------
EXCHANGE_TAG: int = 999
MAX_TAG: int = 10921
DISCOVERY_TAG_BASE: int = MAX_TAG + 1


def discovery_tag(tag: int, parity: int) -> int:
    """NBX count-message tag for exchange ``tag`` on an even (0) or odd (1) call."""
    return DISCOVERY_TAG_BASE + 2 * int(tag) + (int(parity) & 1)


# ---------------------------------------------------------------------------
# Handle block layout
# ---------------------------------------------------------------------------
LAYOUT_ALIGN: int = 8
HEADER_NBYTES: int = 8
