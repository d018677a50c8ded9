from __future__ import annotations

import itertools
import threading
from collections import defaultdict, deque

import numpy as np
import pytest

from dsde.errors import TransportError


_GROUP_IDS = itertools.count()


class _Msg:
    __slots__ = ("data", "matched")

    def __init__(self, data: bytes):
        self.data = data
        self.matched = False


class _DoneRequest:
    def test(self) -> bool:
        return True

    def wait(self) -> None:
        return None


class _SyncSendRequest:
    def __init__(self, group: "LoopbackGroup", msg: _Msg):
        self._g = group
        self._msg = msg

    def test(self) -> bool:
        with self._g._cv:
            return self._msg.matched

    def wait(self) -> None:
        with self._g._cv:
            if not self._g._cv.wait_for(lambda: self._msg.matched, timeout=self._g.timeout):
                raise TimeoutError("synchronous send never matched")


class _RecvRequest:
    def __init__(self, group: "LoopbackGroup", key: tuple[int, int, int], buf: np.ndarray, nbytes: int):
        self._g = group
        self._key = key
        self._buf = buf
        self._nbytes = int(nbytes)
        self.done = False

    def _try_match(self) -> bool:
        if self.done:
            return True
        q = self._g._mail.get(self._key)
        if not q:
            return False
        msg = q.popleft()
        if len(msg.data) != self._nbytes:
            raise AssertionError(f"message size {len(msg.data)} != posted receive {self._nbytes}")
        if self._nbytes:
            self._buf.reshape(-1).view(np.uint8)[: self._nbytes] = np.frombuffer(msg.data, dtype=np.uint8)
        msg.matched = True
        self.done = True
        self._g._cv.notify_all()
        return True

    def test(self) -> bool:
        with self._g._cv:
            return self._try_match()

    def wait(self) -> None:
        with self._g._cv:
            if not self._g._cv.wait_for(self._try_match, timeout=self._g.timeout):
                raise TimeoutError(f"receive {self._key} never matched")


class _BarrierRequest:
    def __init__(self, group: "LoopbackGroup", target: int):
        self._g = group
        self._target = target

    def test(self) -> bool:
        with self._g._cv:
            return self._g._ib_arrived >= self._target

    def wait(self) -> None:
        with self._g._cv:
            if not self._g._cv.wait_for(lambda: self._g._ib_arrived >= self._target, timeout=self._g.timeout):
                raise TimeoutError("ibarrier never completed")


class LoopbackTransport:
    """One rank of an in-process group; same interface as MPITransport."""

    supports_nbx = True

    def __init__(self, group: "LoopbackGroup", rank: int):
        self.group = group
        self.rank = int(rank)
        self.size = group.size
        self.calls: list[str] = []

    def _enter(self, op: str) -> None:
        self.calls.append(op)
        g = self.group
        if g.fail_op == op and (g.fail_ranks is None or self.rank in g.fail_ranks):
            raise TransportError(op, g.fail_code, "injected failure")

    def channel_key(self, tag: int) -> tuple:
        return ("loopback", self.group.uid, self.rank, int(tag))

    def extent(self, dtype) -> int:
        self._enter("extent")
        return int(np.dtype(dtype).itemsize)

    def alltoall(self, sendbuf: np.ndarray, recvbuf: np.ndarray) -> None:
        self._enter("alltoall")
        g = self.group
        g._a2a_rows[self.rank] = np.array(sendbuf, copy=True)
        g._a2a_barrier.wait(g.timeout)
        for src in range(self.size):
            recvbuf[src] = g._a2a_rows[src][self.rank]
        g._a2a_barrier.wait(g.timeout)

    def _post(self, buf: np.ndarray, count: int, dtype, dest: int, tag: int) -> _Msg:
        nbytes = int(count) * np.dtype(dtype).itemsize
        data = np.ascontiguousarray(buf).reshape(-1).view(np.uint8)[:nbytes].tobytes()
        msg = _Msg(data)
        g = self.group
        with g._cv:
            g._mail[(self.rank, int(dest), int(tag))].append(msg)
            g.sent_messages += 1
            g._cv.notify_all()
        return msg

    def isend(self, buf, count, dtype, dest, tag):
        self._enter("isend")
        self._post(buf, count, dtype, dest, tag)
        return _DoneRequest()

    def issend(self, buf, count, dtype, dest, tag):
        self._enter("issend")
        return _SyncSendRequest(self.group, self._post(buf, count, dtype, dest, tag))

    def irecv(self, buf, count, dtype, source, tag):
        self._enter("irecv")
        nbytes = int(count) * np.dtype(dtype).itemsize
        return _RecvRequest(self.group, (int(source), self.rank, int(tag)), buf, nbytes)

    def recv(self, buf, count, dtype, source, tag) -> None:
        self.irecv(buf, count, dtype, source, tag).wait()

    def iprobe(self, tag: int) -> int | None:
        g = self.group
        with g._cv:
            for src in range(self.size):
                if g._mail.get((src, self.rank, int(tag))):
                    return src
        return None

    def ibarrier(self):
        self._enter("ibarrier")
        g = self.group
        with g._cv:
            g._ib_arrived += 1
            target = ((g._ib_arrived - 1) // self.size + 1) * self.size
            g._cv.notify_all()
        return _BarrierRequest(g, target)

    def test(self, req) -> bool:
        return bool(req.test())

    def waitall(self, reqs: list) -> None:
        self._enter("waitall")
        for r in reqs:
            r.wait()


class LoopbackGroup:
    """Threaded in-process process group: rank r runs in thread r."""

    def __init__(self, size: int, *, timeout: float = 20.0, fail_op: str = "",
                 fail_code: int = 17, fail_ranks: set[int] | None = None):
        self.uid = next(_GROUP_IDS)
        self.size = int(size)
        self.timeout = float(timeout)
        self.fail_op = fail_op
        self.fail_code = int(fail_code)
        self.fail_ranks = fail_ranks
        self.sent_messages = 0
        self._cv = threading.Condition()
        self._mail: dict[tuple[int, int, int], deque] = defaultdict(deque)
        self._a2a_barrier = threading.Barrier(self.size)
        self._a2a_rows: list[np.ndarray | None] = [None] * self.size
        self._ib_arrived = 0
        self.transports = [LoopbackTransport(self, r) for r in range(self.size)]

    def pending_messages(self) -> int:
        with self._cv:
            return sum(len(q) for q in self._mail.values())

    def run(self, fn, *, return_exceptions: bool = False) -> list:
        results: list = [None] * self.size
        errors: list[BaseException | None] = [None] * self.size

        def target(rank: int) -> None:
            try:
                results[rank] = fn(self.transports[rank])
            except BaseException as exc:
                errors[rank] = exc
                self._a2a_barrier.abort()

        threads = [threading.Thread(target=target, args=(r,), daemon=True) for r in range(self.size)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(self.timeout * 3)
        if any(t.is_alive() for t in threads):
            raise TimeoutError("loopback group did not finish")
        if return_exceptions:
            return [e if e is not None else r for r, e in zip(results, errors)]
        real = [e for e in errors if e is not None and not isinstance(e, threading.BrokenBarrierError)]
        if real:
            raise real[0]
        for e in errors:
            if e is not None:
                raise e
        return results


@pytest.fixture
def loopback():
    return LoopbackGroup
