"""Deterministic exchange workloads for smoke runs and tests.

Every rank can regenerate every other rank's plan from the workload config, so
expected receive shapes and contents are checked locally without extra
communication.
"""

from __future__ import annotations

import numpy as np

from .config import WorkloadConfig
from .handle import ExchangeHandle
from .plan import SendPlan

_ENCODE_MOD = 2048


def build_plan(workload: WorkloadConfig, rank: int, size: int) -> SendPlan:
    kind = workload.kind
    rank = int(rank)
    size = int(size)
    n = int(workload.elements)
    if kind == "scenario_a":
        if size < 4:
            raise ValueError("scenario_a requires at least 4 ranks")
        if rank == 0:
            return SendPlan.contiguous([2, 3], [3, 5])
        return SendPlan.empty()
    if kind == "ring":
        return SendPlan.contiguous([(rank + 1) % size], [n])
    if kind == "all_pairs":
        dests = [r for r in range(size) if r != rank]
        return SendPlan.contiguous(dests, [n] * len(dests))
    if kind == "random":
        rng = np.random.default_rng([int(workload.seed), rank])
        mask = rng.random(size) < float(workload.density)
        dests = rng.permutation(np.flatnonzero(mask))
        if n > 0:
            counts = rng.integers(1, n + 1, size=dests.size)
        else:
            counts = np.zeros((dests.size,), dtype=np.int64)
        return SendPlan.contiguous(dests.tolist(), counts.tolist())
    raise ValueError(f"unknown workload kind: {kind!r}")


def encode_values(src: int, dst: int, count: int, dtype) -> np.ndarray:
    base = int(src) * 7919 + int(dst) * 104729
    raw = (base + np.arange(int(count), dtype=np.int64)) % _ENCODE_MOD
    return raw.astype(np.dtype(dtype))


def fill_send_buffer(plan: SendPlan, rank: int, dtype) -> np.ndarray:
    buf = np.zeros((plan.extent_elements,), dtype=np.dtype(dtype))
    for dest, count, displ in plan:
        buf[displ : displ + count] = encode_values(rank, dest, count, dtype)
    return buf


def expected_sizes(workload: WorkloadConfig, rank: int, size: int) -> np.ndarray:
    out = np.zeros((int(size),), dtype=np.int64)
    for src in range(int(size)):
        plan = build_plan(workload, src, size)
        out[src] = plan.dense_sizes(size)[int(rank)]
    return out


def verify_handle(
    handle: ExchangeHandle, workload: WorkloadConfig, *, rank: int, size: int
) -> list[str]:
    """Check a received handle against the workload; returns problem strings."""
    problems: list[str] = []
    rsizes = expected_sizes(workload, rank, size)
    want_ranks = np.flatnonzero(rsizes)
    if handle.rrankcount != want_ranks.size:
        problems.append(f"rrankcount={handle.rrankcount} expected {want_ranks.size}")
    if not np.array_equal(handle.rranks, want_ranks):
        problems.append(f"rranks={handle.rranks.tolist()} expected {want_ranks.tolist()}")
        return problems
    want_counts = rsizes[want_ranks]
    if not np.array_equal(handle.recvcounts, want_counts):
        problems.append(f"recvcounts={handle.recvcounts.tolist()} expected {want_counts.tolist()}")
        return problems
    want_displs = np.concatenate([[0], np.cumsum(want_counts)[:-1]]) if want_counts.size else want_counts
    if not np.array_equal(handle.rdispls, want_displs):
        problems.append(f"rdispls={handle.rdispls.tolist()} expected {want_displs.tolist()}")
    if handle.recvbuf.size != int(rsizes.sum()):
        problems.append(f"recvbuf holds {handle.recvbuf.size} elements, expected {int(rsizes.sum())}")
    for entry in handle.sources():
        want = encode_values(entry.rank, rank, entry.count, handle.dtype)
        if not np.array_equal(entry.data, want):
            problems.append(f"payload from rank {entry.rank} differs")
    return problems
