from __future__ import annotations
from pathlib import Path
from typing import Dict, List, Optional
import os, signal, time

import structlog

from ..core.errors import SandboxStartError
from ..core.models import ResourceLimits

log = structlog.get_logger(__name__)

CGROOT = Path("/sys/fs/cgroup")


def _write_then_check(p: Path, val: str | int) -> None:
    val = str(val)
    p.write_text(val)
    back = p.read_text().strip()
    if back != val:
        raise SandboxStartError(f"cgroup write {p}={val!r} but read back {back!r}", path=str(p))


def ensure_v2(root: Path = CGROOT) -> None:
    if not (root / "cgroup.controllers").exists():
        raise SandboxStartError("cgroup v2 is required for the cgroups strategy", root=str(root))


def _self_cgroup_base(root: Path = CGROOT) -> Path:
    # unified v2: '0::/<relative>'
    rel = ""
    with open("/proc/self/cgroup") as f:
        for line in f:
            if line.startswith("0::/"):
                rel = line.split("::", 1)[1].strip()
                break
    return (root / rel.lstrip("/")).resolve()


def get_judger_base(configured: Optional[Path] = None, root: Path = CGROOT) -> Path:
    """
    Parent of all per-execution leaves. Either configured explicitly
    (JUDGER_CGROUP_BASE) or a `judger` child of our own cgroup.
    """
    if configured:
        if not str(configured).startswith(str(root)):
            raise SandboxStartError(f"cgroup_base must live under {root}, got {configured}")
        return configured
    return _self_cgroup_base(root) / "judger"


def _enable_controllers(node: Path) -> None:
    """Enable controllers for children of node (v2 requires node to have no processes)."""
    cnt_file = node / "cgroup.controllers"
    if not cnt_file.exists():
        return
    have = set(cnt_file.read_text().split())
    want = [f"+{c}" for c in ("memory", "pids", "cpu") if c in have]
    if not want:
        return
    current = set((node / "cgroup.subtree_control").read_text().split()) \
        if (node / "cgroup.subtree_control").exists() else set()
    if all(w[1:] in current for w in want):
        return
    if (node / "cgroup.procs").exists() and (node / "cgroup.procs").read_text().strip():
        raise SandboxStartError(f"{node} has processes; cannot set subtree_control", node=str(node))
    (node / "cgroup.subtree_control").write_text(" ".join(want))


class CgroupLeaf:
    """One cgroup per execution: created before spawn, torn down after reap."""

    def __init__(self, path: Path):
        self.path = path

    @classmethod
    def create(cls, run_id: str, base: Path, root: Path = CGROOT) -> "CgroupLeaf":
        ensure_v2(root)
        try:
            base.mkdir(parents=True, exist_ok=True)
            _enable_controllers(base)
            leaf = base / run_id
            leaf.mkdir(parents=False, exist_ok=False)
        except OSError as e:
            raise SandboxStartError(f"cannot create cgroup leaf under {base}: {e}", base=str(base))
        return cls(leaf)

    def set_limits(self, limits: ResourceLimits) -> None:
        try:
            _write_then_check(self.path / "memory.max", limits.memory_bytes)
            swap = self.path / "memory.swap.max"
            if swap.exists():
                _write_then_check(swap, 0)
            oom_group = self.path / "memory.oom.group"
            if oom_group.exists():
                _write_then_check(oom_group, 1)
            _write_then_check(self.path / "pids.max", limits.max_processes)
            cpu_max = self.path / "cpu.max"
            if cpu_max.exists():
                # one full CPU: quota == period
                cpu_max.write_text("100000 100000")
        except OSError as e:
            raise SandboxStartError(f"cannot apply cgroup limits on {self.path}: {e}", leaf=str(self.path))

    @property
    def procs_file(self) -> Path:
        return self.path / "cgroup.procs"

    def join_preexec(self):
        """Return a callable for the child: move itself into the leaf before exec."""
        procs = str(self.procs_file)

        def _join() -> None:
            with open(procs, "w") as f:
                f.write(str(os.getpid()))
        return _join

    def pids(self) -> List[int]:
        try:
            return [int(x) for x in self.procs_file.read_text().split()]
        except (OSError, ValueError):
            return []

    def _read_int(self, name: str) -> Optional[int]:
        try:
            return int((self.path / name).read_text().strip())
        except (OSError, ValueError):
            return None

    def _read_keyed(self, name: str) -> Dict[str, int]:
        out: Dict[str, int] = {}
        try:
            for line in (self.path / name).read_text().splitlines():
                k, _, v = line.partition(" ")
                if v.strip().isdigit():
                    out[k] = int(v)
        except OSError:
            pass
        return out

    def memory_peak(self) -> int:
        # memory.peak needs 5.19+; fall back to the current usage
        peak = self._read_int("memory.peak")
        if peak is None:
            peak = self._read_int("memory.current")
        return peak or 0

    def oom_killed(self) -> bool:
        return self._read_keyed("memory.events").get("oom_kill", 0) > 0

    def cpu_time_ms(self) -> int:
        return self._read_keyed("cpu.stat").get("usage_usec", 0) // 1000

    def read_metrics(self) -> Dict[str, str]:
        out: Dict[str, str] = {}
        for name in ("memory.current", "memory.peak", "memory.events", "cpu.stat", "pids.current"):
            p = self.path / name
            if p.exists():
                out[name] = p.read_text().strip()
        return out

    def kill(self) -> None:
        kill_file = self.path / "cgroup.kill"
        if kill_file.exists():
            try:
                kill_file.write_text("1")
                return
            except OSError:
                pass
        for pid in self.pids():
            try:
                os.kill(pid, signal.SIGKILL)
            except ProcessLookupError:
                pass

    def teardown(self, attempts: int = 10) -> None:
        # leaf must be empty; kill stragglers then retry rmdir
        for _ in range(attempts):
            if self.pids():
                self.kill()
            try:
                self.path.rmdir()
                return
            except FileNotFoundError:
                return
            except OSError:
                time.sleep(0.05)
        log.warning("cgroup_teardown_failed", leaf=str(self.path))
