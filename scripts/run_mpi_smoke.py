from __future__ import annotations

import argparse
import os
from pathlib import Path
import shutil
import subprocess
import sys

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from dsde.config import load_config  # noqa: E402

# scenario_a addresses ranks 2 and 3
_MIN_RANKS = {"scenario_a": 4}
_LAUNCHERS = ("mpiexec.hydra", "mpiexec", "mpirun")


def _launcher(explicit: str) -> str | None:
    for cand in (explicit, os.environ.get("MPIRUN", "").strip()):
        if cand:
            return cand
    for name in _LAUNCHERS:
        found = shutil.which(name)
        if found:
            return found
    return None


def default_ranks(cfg_path: Path) -> int:
    kind = load_config(str(cfg_path)).workload.kind
    return _MIN_RANKS.get(kind, 2)


def build_command(mpirun: str, n: int, cfg_path: Path, discovery: str = "") -> list[str]:
    cmd = [mpirun, "-n", str(int(n)), sys.executable, "-m", "dsde.main", "run", str(cfg_path)]
    if discovery:
        cmd += ["--discovery", discovery]
    return cmd


def main() -> int:
    p = argparse.ArgumentParser(description="Launch one dsde config under mpirun")
    p.add_argument("--config", default="examples/scenario_a.yaml")
    p.add_argument("--n", type=int, default=None, help="MPI ranks (default: what the workload needs)")
    p.add_argument("--discovery", choices=["", "alltoall", "nbx", "auto"], default="")
    p.add_argument("--mpirun", default="", help="Path to mpirun/mpiexec")
    p.add_argument("--timeout", type=int, default=60)
    args = p.parse_args()

    cfg_path = Path(args.config)
    if not cfg_path.is_absolute():
        cfg_path = ROOT / cfg_path
    if not cfg_path.exists():
        print(f"[mpi-smoke] no such config: {cfg_path}", file=sys.stderr)
        return 2

    mpirun = _launcher(args.mpirun)
    if mpirun is None:
        print("[mpi-smoke] no MPI launcher on PATH (set MPIRUN or --mpirun)", file=sys.stderr)
        return 2

    n = args.n if args.n is not None else default_ranks(cfg_path)
    cmd = build_command(mpirun, n, cfg_path, args.discovery)
    env = dict(os.environ, PYTHONUNBUFFERED=os.environ.get("PYTHONUNBUFFERED", "1"))
    print("[mpi-smoke] " + " ".join(cmd), flush=True)
    try:
        proc = subprocess.run(cmd, cwd=str(ROOT), env=env, timeout=int(args.timeout))
    except subprocess.TimeoutExpired:
        print(f"[mpi-smoke] no result after {args.timeout}s", file=sys.stderr)
        return 3
    return int(proc.returncode)


if __name__ == "__main__":
    raise SystemExit(main())
