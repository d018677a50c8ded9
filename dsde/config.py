from __future__ import annotations
from dataclasses import dataclass, field
from typing import Any, Dict, Literal
import numpy as np
import yaml

from .constants import EXCHANGE_TAG, MAX_TAG

DiscoveryType = Literal["alltoall", "nbx", "auto"]
WorkloadKind = Literal["random", "ring", "all_pairs", "scenario_a"]

_DISCOVERY_KINDS = {"alltoall", "nbx", "auto"}
_WORKLOAD_KINDS = {"random", "ring", "all_pairs", "scenario_a"}

@dataclass
class ExchangeConfig:
    tag: int = EXCHANGE_TAG
    discovery: DiscoveryType = "alltoall"
    guard_channels: bool = True
    dtype: str = "float64"

@dataclass
class WorkloadConfig:
    kind: WorkloadKind = "random"
    elements: int = 16       # random: max count per destination; others: fixed count
    density: float = 0.5     # random: probability of sending to each peer
    seed: int = 1
    repeats: int = 1
    verify: bool = True

@dataclass
class TraceConfig:
    enabled: bool = False
    out: str = "dsde_trace.csv"

@dataclass
class Config:
    exchange: ExchangeConfig = field(default_factory=ExchangeConfig)
    workload: WorkloadConfig = field(default_factory=WorkloadConfig)
    trace: TraceConfig = field(default_factory=TraceConfig)


def _section(root: Dict[str, Any], key: str, allowed: set[str]) -> Dict[str, Any]:
    sec = root.get(key, None)
    if sec is None:
        return {}
    if not isinstance(sec, dict):
        raise ValueError(f"{key} must be a mapping")
    extra = sorted(set(sec.keys()) - allowed)
    if extra:
        raise ValueError(f"{key} contains unsupported keys: {extra}")
    return sec


def _parse_exchange(root: Dict[str, Any]) -> ExchangeConfig:
    d = _section(root, "exchange", {"tag", "discovery", "guard_channels", "dtype"})
    tag = int(d.get("tag", EXCHANGE_TAG))
    if tag < 0 or tag > MAX_TAG:
        raise ValueError(f"exchange.tag must be in [0, {MAX_TAG}]")
    discovery = str(d.get("discovery", "alltoall")).strip().lower()
    if discovery not in _DISCOVERY_KINDS:
        raise ValueError(f"exchange.discovery must be one of {sorted(_DISCOVERY_KINDS)}")
    dtype = str(d.get("dtype", "float64")).strip()
    try:
        np.dtype(dtype)
    except TypeError as exc:
        raise ValueError(f"exchange.dtype is not a numpy dtype: {dtype!r}") from exc
    return ExchangeConfig(
        tag=tag,
        discovery=discovery,
        guard_channels=bool(d.get("guard_channels", True)),
        dtype=dtype,
    )


def _parse_workload(root: Dict[str, Any]) -> WorkloadConfig:
    d = _section(root, "workload", {"kind", "elements", "density", "seed", "repeats", "verify"})
    kind = str(d.get("kind", "random")).strip().lower()
    if kind not in _WORKLOAD_KINDS:
        raise ValueError(f"workload.kind must be one of {sorted(_WORKLOAD_KINDS)}")
    elements = int(d.get("elements", 16))
    if elements < 0:
        raise ValueError("workload.elements must be >= 0")
    density = float(d.get("density", 0.5))
    if not (0.0 <= density <= 1.0):
        raise ValueError("workload.density must be in [0, 1]")
    repeats = int(d.get("repeats", 1))
    if repeats < 1:
        raise ValueError("workload.repeats must be >= 1")
    return WorkloadConfig(
        kind=kind,
        elements=elements,
        density=density,
        seed=int(d.get("seed", 1)),
        repeats=repeats,
        verify=bool(d.get("verify", True)),
    )


def _parse_trace(root: Dict[str, Any]) -> TraceConfig:
    d = _section(root, "trace", {"enabled", "out"})
    return TraceConfig(
        enabled=bool(d.get("enabled", False)),
        out=str(d.get("out", "dsde_trace.csv")),
    )


def config_from_dict(d: Dict[str, Any] | None) -> Config:
    root = {} if d is None else d
    if not isinstance(root, dict):
        raise ValueError("config root must be a mapping")
    extra = sorted(set(root.keys()) - {"exchange", "workload", "trace"})
    if extra:
        raise ValueError(f"config contains unsupported sections: {extra}")
    return Config(
        exchange=_parse_exchange(root),
        workload=_parse_workload(root),
        trace=_parse_trace(root),
    )


def load_config(path: str) -> Config:
    with open(path, "r", encoding="utf-8") as f:
        d = yaml.safe_load(f)
    return config_from_dict(d)
