from __future__ import annotations

import numpy as np
import pytest

from dsde.config import WorkloadConfig
from dsde.workloads import build_plan, encode_values, expected_sizes, fill_send_buffer


def test_scenario_a_plans():
    wl = WorkloadConfig(kind="scenario_a")
    p0 = build_plan(wl, 0, 4)
    assert list(p0) == [(2, 3, 0), (3, 5, 3)]
    assert len(build_plan(wl, 1, 4)) == 0
    assert expected_sizes(wl, 2, 4).tolist() == [3, 0, 0, 0]
    assert expected_sizes(wl, 3, 4).tolist() == [5, 0, 0, 0]
    assert expected_sizes(wl, 1, 4).sum() == 0
    with pytest.raises(ValueError, match="at least 4"):
        build_plan(wl, 0, 3)


def test_all_pairs_and_ring():
    ap = WorkloadConfig(kind="all_pairs", elements=1)
    assert [d for d, _, _ in build_plan(ap, 1, 4)] == [0, 2, 3]
    assert expected_sizes(ap, 2, 4).tolist() == [1, 1, 0, 1]
    ring = WorkloadConfig(kind="ring", elements=3)
    assert list(build_plan(ring, 3, 4)) == [(0, 3, 0)]
    assert expected_sizes(ring, 0, 4).tolist() == [0, 0, 0, 3]


def test_random_is_deterministic_per_rank_and_seed():
    wl = WorkloadConfig(kind="random", elements=5, density=0.5, seed=4)
    a = build_plan(wl, 2, 8)
    b = build_plan(wl, 2, 8)
    assert list(a) == list(b)
    assert all(1 <= c <= 5 for _, c, _ in a)
    zero = build_plan(WorkloadConfig(kind="random", elements=0, density=1.0), 0, 3)
    assert len(zero) == 3 and zero.total_elements == 0


def test_fill_send_buffer_encodes_destination():
    plan = build_plan(WorkloadConfig(kind="scenario_a"), 0, 4)
    buf = fill_send_buffer(plan, 0, np.float64)
    assert buf.shape == (8,)
    np.testing.assert_array_equal(buf[:3], encode_values(0, 2, 3, np.float64))
    np.testing.assert_array_equal(buf[3:], encode_values(0, 3, 5, np.float64))
    assert not np.array_equal(encode_values(0, 2, 3, np.int32), encode_values(1, 2, 3, np.int32))
