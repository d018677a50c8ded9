from __future__ import annotations

import argparse
from typing import Callable


def build_parser(*, cmd_run: Callable, cmd_plan: Callable) -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="dsde")
    sub = p.add_subparsers(dest="cmd", required=True)

    pr = sub.add_parser("run", help="Run the configured exchange workload under MPI")
    pr.add_argument("config", help="YAML config (exchange/workload/trace)")
    pr.add_argument("--discovery", choices=["alltoall", "nbx", "auto"], default="", help="Size discovery override")
    pr.add_argument("--repeats", type=int, default=0, help="Number of exchanges (overrides workload.repeats)")
    pr.add_argument("--no-verify", action="store_true", help="Skip payload/descriptor verification")
    pr.add_argument("--trace", action="store_true", help="Enable per-rank exchange trace")
    pr.add_argument("--trace-out", default="", help="Trace CSV path (rank suffix added when size > 1)")
    pr.set_defaults(func=cmd_run)

    pp = sub.add_parser("plan", help="Print per-rank plans and expected receive shapes (no MPI)")
    pp.add_argument("config")
    pp.add_argument("--size", type=int, required=True, help="Group size to plan for")
    pp.set_defaults(func=cmd_plan)

    return p
