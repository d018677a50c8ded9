from __future__ import annotations
import csv
import os
import time
import warnings

TRACE_COLUMNS = ["wall_time", "rank", "seq", "event", "peers", "elements", "nbytes", "detail"]

class ExchangeTraceLogger:
    """Per-rank CSV trace of exchange phases (discover/allocate/post/complete/fail/release)."""

    def __init__(self, path: str, *, rank: int, enabled: bool = True):
        self.enabled = bool(enabled)
        self.rank = int(rank)
        self.start = time.perf_counter()
        self.path = path
        if not self.enabled:
            self._f = None
            self._w = None
            return
        os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
        self._f = open(path, "w", newline="", encoding="utf-8")
        self._w = csv.writer(self._f)
        self._w.writerow(TRACE_COLUMNS)
        self._f.flush()

    @classmethod
    def for_rank(cls, path: str, *, rank: int, size: int, enabled: bool = True) -> "ExchangeTraceLogger":
        """One file per rank when running with more than one process."""
        if int(size) > 1:
            root, ext = os.path.splitext(path)
            path = f"{root}.rank{int(rank)}{ext or '.csv'}"
        return cls(path, rank=rank, enabled=enabled)

    def log(self, *, seq: int, event: str, peers: int = 0, elements: int = 0,
            nbytes: int = 0, detail: str = ""):
        if not self.enabled or self._w is None:
            return
        wall = time.perf_counter() - self.start
        self._w.writerow([
            f"{wall:.6f}",
            int(self.rank),
            int(seq),
            str(event),
            int(peers),
            int(elements),
            int(nbytes),
            str(detail),
        ])
        self._f.flush()

    def close(self):
        try:
            if self._f is not None:
                self._f.close()
        except Exception as exc:
            warnings.warn(
                f"ExchangeTraceLogger.close() failed for {self.path!r}: {exc!r}",
                RuntimeWarning,
            )
        self._f = None
        self._w = None
