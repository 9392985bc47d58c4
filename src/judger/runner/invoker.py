from __future__ import annotations
import os
import signal
import subprocess
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional

import structlog

from ..core.errors import JudgeCancelled, SandboxStartError
from ..core.models import ExecutionOutcome, ExecutionRequest, ResourceLimits
from ..core.utils import bounded_text, new_run_id
from ..isolation.cgroups import CgroupLeaf, get_judger_base
from ..isolation.isolation import IsolationPipeline
from .cancel import CancelToken
from .relay import IORelay

log = structlog.get_logger(__name__)

# how long the wrapper layers may take to report readiness
START_TIMEOUT_S = 10.0


@dataclass
class RunState:
    # mutable state of one run, owned by the monitor loop
    ready: bool = False
    started_at: float = 0.0
    reaped: bool = False
    exit_code: Optional[int] = None
    signal_no: Optional[int] = None
    maxrss_bytes: int = 0
    cpu_time_ms: int = 0
    sampled_peak: int = 0
    killed_at: Optional[float] = None
    time_limit_exceeded: bool = False
    memory_limit_exceeded: bool = False


def _tree_pids(root_pid: int) -> List[int]:
    """root_pid plus every descendant, via /proc/<pid>/task/<tid>/children."""
    seen: List[int] = []
    stack = [root_pid]
    while stack:
        pid = stack.pop()
        seen.append(pid)
        try:
            tasks = os.listdir(f"/proc/{pid}/task")
        except OSError:
            continue
        for tid in tasks:
            try:
                with open(f"/proc/{pid}/task/{tid}/children") as f:
                    stack.extend(int(x) for x in f.read().split())
            except OSError:
                continue
    return seen


def _rss_bytes(pid: int) -> int:
    try:
        with open(f"/proc/{pid}/status") as f:
            for line in f:
                if line.startswith("VmRSS:"):
                    return int(line.split()[1]) * 1024
    except (OSError, ValueError, IndexError):
        pass
    return 0


def tree_rss_bytes(root_pid: int) -> int:
    return sum(_rss_bytes(pid) for pid in _tree_pids(root_pid))


class SandboxInvoker:
    """
    Runs one ExecutionRequest inside an arena under the isolation pipeline and
    actively enforces wall time, memory and cancellation until the whole
    process tree has been reaped.
    """

    def __init__(
        self,
        pipeline: IsolationPipeline,
        *,
        cgroup_base: Optional[Path] = None,
        env: Optional[Dict[str, str]] = None,
        poll_interval_ms: int = 10,
        memory_sample_interval_ms: int = 20,
        kill_grace_ms: int = 2000,
        drain_grace_ms: int = 500,
    ):
        self.pipeline = pipeline
        self.cgroup_base = cgroup_base
        self.extra_env = dict(env or {})
        self.poll_s = poll_interval_ms / 1000.0
        self.sample_s = memory_sample_interval_ms / 1000.0
        self.kill_grace_s = kill_grace_ms / 1000.0
        self.drain_grace_s = drain_grace_ms / 1000.0

    # ---------- environment ----------

    def _env(self, arena: Path) -> Dict[str, str]:
        env = {
            "PATH": os.environ.get("PATH", "/usr/local/bin:/usr/bin:/bin"),
            "HOME": str(arena),
            "LANG": "C.UTF-8",
            "ONLINE_JUDGE": "1",
        }
        env.update(self.extra_env)
        return env

    # ---------- process control ----------

    def _spawn(self, request: ExecutionRequest, arena: Path, leaf: Optional[CgroupLeaf],
               ready_w: Optional[int]) -> subprocess.Popen:
        plan = self.pipeline.build(request.command, arena, request.limits, leaf=leaf, ready_fd=ready_w)
        try:
            return subprocess.Popen(
                plan.argv,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                cwd=str(plan.cwd),
                env=self._env(arena),
                preexec_fn=plan.preexec,
                pass_fds=plan.pass_fds,
                close_fds=True,
            )
        except (OSError, subprocess.SubprocessError) as e:
            raise SandboxStartError(f"cannot start {request.command[:1]}: {e}", argv=plan.argv) from e

    @staticmethod
    def _kill_tree(proc: subprocess.Popen, leaf: Optional[CgroupLeaf]) -> None:
        if leaf is not None:
            leaf.kill()
        try:
            # the child is a session leader, so its pgid is its pid
            os.killpg(proc.pid, signal.SIGKILL)
        except ProcessLookupError:
            pass
        except PermissionError:
            proc.kill()

    def _record_status(self, proc: subprocess.Popen, state: RunState, status: int, ru) -> None:
        state.reaped = True
        if os.WIFEXITED(status):
            state.exit_code = os.WEXITSTATUS(status)
            proc.returncode = state.exit_code
        elif os.WIFSIGNALED(status):
            state.signal_no = os.WTERMSIG(status)
            proc.returncode = -state.signal_no
        state.maxrss_bytes = max(0, int(getattr(ru, "ru_maxrss", 0) or 0)) * 1024
        state.cpu_time_ms = int(((ru.ru_utime or 0.0) + (ru.ru_stime or 0.0)) * 1000)

    def _reap(self, proc: subprocess.Popen, state: RunState, block: bool = False) -> None:
        if state.reaped:
            return
        try:
            pid, status, ru = os.wait4(proc.pid, 0 if block else os.WNOHANG)
        except ChildProcessError:
            # someone else reaped it; keep whatever Popen knows
            state.reaped = True
            state.exit_code = proc.returncode if proc.returncode is not None and proc.returncode >= 0 else None
            return
        if pid == 0:
            return
        self._record_status(proc, state, status, ru)

    def _check_ready(self, ready_r: int, state: RunState, now: float) -> bool:
        """True while start-up is still pending; raises if the wrappers failed."""
        try:
            data = os.read(ready_r, 16)
        except BlockingIOError:
            if now - state.started_at > START_TIMEOUT_S:
                raise SandboxStartError("sandbox did not become ready in time")
            return True
        if data.startswith(b"ok"):
            state.ready = True
            state.started_at = now
            return False
        raise SandboxStartError("sandbox wrapper exited before starting the program")

    # ---------- main loop ----------

    def run(self, request: ExecutionRequest, arena: Path, cancel: Optional[CancelToken] = None) -> ExecutionOutcome:
        limits = request.limits
        leaf: Optional[CgroupLeaf] = None
        ready_r: Optional[int] = None
        ready_w: Optional[int] = None
        bound = log.bind(submission_id=request.submission.id, testcase_id=request.testcase.id)

        try:
            if self.pipeline.uses_cgroups:
                leaf = CgroupLeaf.create(new_run_id("cg"), get_judger_base(self.cgroup_base))
                leaf.set_limits(limits)
            if "ns" in self.pipeline.strategies:
                ready_r, ready_w = os.pipe()
                os.set_blocking(ready_r, False)

            proc = self._spawn(request, arena, leaf, ready_w)
            if ready_w is not None:
                os.close(ready_w)
                ready_w = None
            bound.debug("execution_started", pid=proc.pid, command=request.command)
            return self._monitor(proc, request, leaf, ready_r, cancel, bound)
        finally:
            for fd in (ready_r, ready_w):
                if fd is not None:
                    os.close(fd)
            if leaf is not None:
                leaf.teardown()

    def _monitor(self, proc: subprocess.Popen, request: ExecutionRequest, leaf: Optional[CgroupLeaf],
                 ready_r: Optional[int], cancel: Optional[CancelToken], bound) -> ExecutionOutcome:
        limits = request.limits
        state = RunState(started_at=time.monotonic())
        state.ready = ready_r is None
        relay = IORelay(proc, request.stdin, max_stdout=limits.max_output_bytes, max_stderr=limits.max_stderr_bytes)
        deadline = state.started_at + limits.wall_time_ms / 1000.0
        next_sample = state.started_at
        drain_deadline: Optional[float] = None
        ended_at: Optional[float] = None

        try:
            while True:
                now = time.monotonic()

                if cancel is not None and cancel.cancelled:
                    self._kill_tree(proc, leaf)
                    self._reap(proc, state, block=True)
                    bound.info("execution_cancelled", reason=cancel.reason)
                    raise JudgeCancelled(reason=cancel.reason)

                if not state.ready:
                    try:
                        if self._check_ready(ready_r, state, now):
                            relay.pump(self.poll_s)
                            self._reap(proc, state)
                            if not state.reaped:
                                continue
                            # a fast program may report, run and exit between two polls
                            if self._check_ready(ready_r, state, time.monotonic()):
                                raise SandboxStartError("sandbox wrapper exited before starting the program")
                    except SandboxStartError as e:
                        self._kill_tree(proc, leaf)
                        self._reap(proc, state, block=True)
                        relay.pump(0)
                        e.context["stderr"] = bounded_text(relay.stderr.getvalue(), 500)
                        raise
                    deadline = state.started_at + limits.wall_time_ms / 1000.0
                    next_sample = state.started_at

                self._reap(proc, state)

                if not state.reaped and state.killed_at is None:
                    if now >= deadline:
                        state.time_limit_exceeded = True
                        self._kill(proc, leaf, state, now, bound, "wall_time")
                    elif now >= next_sample:
                        next_sample = now + self.sample_s
                        if self._memory_exceeded(proc, leaf, limits, state):
                            state.memory_limit_exceeded = True
                            self._kill(proc, leaf, state, now, bound, "memory")

                if state.killed_at is not None and not state.reaped and now - state.killed_at > self.kill_grace_s:
                    self._reap(proc, state, block=True)

                if state.reaped:
                    if ended_at is None:
                        ended_at = now
                        # reap stragglers: nothing may outlive the main process
                        self._kill_tree(proc, leaf)
                        drain_deadline = now + self.drain_grace_s
                    if not relay.outputs_open or now >= drain_deadline:
                        break

                if relay.outputs_open or relay.input_pending:
                    relay.pump(self.poll_s)
                else:
                    time.sleep(self.poll_s)
        finally:
            relay.close()

        return self._outcome(request, leaf, state, relay, ended_at or time.monotonic(), bound)

    def _kill(self, proc, leaf, state: RunState, now: float, bound, reason: str) -> None:
        state.killed_at = now
        bound.info("limit_exceeded", limit=reason, pid=proc.pid)
        self._kill_tree(proc, leaf)

    def _memory_exceeded(self, proc: subprocess.Popen, leaf: Optional[CgroupLeaf], limits: ResourceLimits,
                         state: RunState) -> bool:
        if leaf is not None:
            state.sampled_peak = max(state.sampled_peak, leaf.memory_peak())
            return leaf.oom_killed()
        rss = tree_rss_bytes(proc.pid)
        state.sampled_peak = max(state.sampled_peak, rss)
        return rss > limits.memory_bytes

    def _outcome(self, request: ExecutionRequest, leaf: Optional[CgroupLeaf], state: RunState,
                 relay: IORelay, ended_at: float, bound) -> ExecutionOutcome:
        limits = request.limits
        peak = max(state.sampled_peak, state.maxrss_bytes)
        cpu_ms = state.cpu_time_ms
        mle = state.memory_limit_exceeded
        tle = state.time_limit_exceeded

        if leaf is not None:
            peak = max(peak, leaf.memory_peak())
            cpu_ms = max(cpu_ms, leaf.cpu_time_ms())
            mle = mle or leaf.oom_killed()
            bound.debug("cgroup_metrics", **leaf.read_metrics())
        elif peak > limits.memory_bytes:
            mle = True

        stderr = relay.stderr.getvalue()
        if not mle and (state.exit_code or state.signal_no) and request.language.oom_markers:
            text = stderr.decode("utf-8", errors="replace")
            mle = any(marker in text for marker in request.language.oom_markers)

        if state.signal_no == signal.SIGXCPU:
            tle = True
        if limits.cpu_time_ms is not None and cpu_ms > limits.cpu_time_ms:
            tle = True

        wall_ms = int((ended_at - state.started_at) * 1000)
        if wall_ms > limits.wall_time_ms:
            tle = True

        outcome = ExecutionOutcome(
            exit_code=state.exit_code,
            signal=state.signal_no,
            wall_time_ms=wall_ms,
            cpu_time_ms=cpu_ms,
            peak_memory_bytes=peak,
            stdout=relay.stdout.getvalue(),
            stdout_truncated=relay.stdout.truncated,
            stdout_total_bytes=relay.stdout.total,
            stderr=stderr,
            stderr_truncated=relay.stderr.truncated,
            time_limit_exceeded=tle,
            memory_limit_exceeded=mle,
        )
        bound.info(
            "execution_finished",
            exit_code=outcome.exit_code,
            signal=outcome.signal,
            wall_time_ms=outcome.wall_time_ms,
            cpu_time_ms=outcome.cpu_time_ms,
            peak_memory_bytes=outcome.peak_memory_bytes,
            stdout_bytes=outcome.stdout_total_bytes,
            tle=tle,
            mle=mle,
        )
        return outcome
