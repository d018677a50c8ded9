from __future__ import annotations

import argparse
import sys
import time

import numpy as np

from .cli_parser import build_parser
from .config import load_config
from .exchange import exchange
from .trace import ExchangeTraceLogger
from .transport import MPI, MPITransport, finalize_mpi, init_mpi
from .workloads import build_plan, expected_sizes, fill_send_buffer, verify_handle


def _cmd_plan(args) -> None:
    cfg = load_config(args.config)
    size = int(args.size)
    if size < 1:
        raise SystemExit("--size must be >= 1")
    for rank in range(size):
        plan = build_plan(cfg.workload, rank, size)
        rsizes = expected_sizes(cfg.workload, rank, size)
        sends = ",".join(f"{d}:{c}@{o}" for d, c, o in plan)
        srcs = ",".join(f"{int(r)}:{int(rsizes[r])}" for r in np.flatnonzero(rsizes))
        print(
            f"[plan] rank={rank} sends=[{sends}] recv=[{srcs}] "
            f"recv_sources={int(np.count_nonzero(rsizes))} recv_elements={int(rsizes.sum())}",
            flush=True,
        )


def _cmd_run(args) -> None:
    cfg = load_config(args.config)
    if args.discovery:
        cfg.exchange.discovery = str(args.discovery)
    if args.repeats and args.repeats > 0:
        cfg.workload.repeats = int(args.repeats)
    if args.no_verify:
        cfg.workload.verify = False
    if args.trace:
        cfg.trace.enabled = True
    if args.trace_out:
        cfg.trace.out = str(args.trace_out)

    owns_mpi_init = init_mpi()
    transport = MPITransport(MPI.COMM_WORLD)
    rank, size = transport.rank, transport.size
    trace = None
    if cfg.trace.enabled:
        trace = ExchangeTraceLogger.for_rank(cfg.trace.out, rank=rank, size=size)

    dtype = np.dtype(cfg.exchange.dtype)
    failures = 0
    received = 0
    try:
        plan = build_plan(cfg.workload, rank, size)
        sendbuf = fill_send_buffer(plan, rank, dtype)
        transport.comm.Barrier()
        t0 = time.perf_counter()
        for rep in range(int(cfg.workload.repeats)):
            handle = exchange(
                transport,
                sendbuf,
                plan,
                dtype=dtype,
                tag=cfg.exchange.tag,
                discovery=cfg.exchange.discovery,
                trace=trace,
                guard=cfg.exchange.guard_channels,
            )
            with handle:
                received += int(handle.recvbuf.size)
                if cfg.workload.verify:
                    for problem in verify_handle(handle, cfg.workload, rank=rank, size=size):
                        print(f"[dsde] rank={rank} repeat={rep} {problem}", file=sys.stderr, flush=True)
                        failures += 1
                if trace is not None:
                    trace.log(seq=rep + 1, event="release", nbytes=handle.nbytes)
        elapsed = time.perf_counter() - t0
        total_failures = int(transport.comm.allreduce(failures, op=MPI.SUM))
        total_received = int(transport.comm.allreduce(received, op=MPI.SUM))
        max_elapsed = float(transport.comm.allreduce(elapsed, op=MPI.MAX))
        if rank == 0:
            print(
                f"[dsde] ranks={size} workload={cfg.workload.kind} discovery={cfg.exchange.discovery} "
                f"repeats={cfg.workload.repeats} elements={total_received} "
                f"failures={total_failures} wall_s={max_elapsed:.6f}",
                flush=True,
            )
    finally:
        if trace is not None:
            trace.close()
        transport.free_types()
        finalize_mpi(owns_mpi_init)
    if total_failures:
        raise SystemExit(1)


def _build_parser() -> argparse.ArgumentParser:
    return build_parser(cmd_run=_cmd_run, cmd_plan=_cmd_plan)


def main(argv: list[str] | None = None) -> None:
    p = _build_parser()
    args = p.parse_args(argv)
    func = getattr(args, "func", None)
    if func is None:
        raise SystemExit(f"unsupported cmd: {getattr(args, 'cmd', None)}")
    func(args)


if __name__ == "__main__":
    main()
