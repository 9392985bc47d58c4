from __future__ import annotations
import resource

from ..core.models import ResourceLimits


def _set(kind: int, value: int) -> None:
    try:
        resource.setrlimit(kind, (value, value))
    except (ValueError, OSError):
        # not supported here, or above the hard limit we inherited: keep the default
        pass


def apply_rlimits(limits: ResourceLimits, dedicated_identity: bool = False) -> None:
    """
    Process-level limits applied in the child before exec: CPU time, file size,
    descriptors, stack, no core dumps. Memory and pids are the cgroup's job
    (RLIMIT_AS breaks the JVM's reservations).
    """
    if limits.cpu_time_ms is not None:
        # whole seconds, rounded up; the invoker compares exact CPU time afterwards
        _set(resource.RLIMIT_CPU, -(-limits.cpu_time_ms // 1000))
    _set(resource.RLIMIT_FSIZE, limits.max_output_bytes)
    _set(resource.RLIMIT_NOFILE, limits.max_open_files)
    _set(resource.RLIMIT_STACK, limits.stack_bytes)
    _set(resource.RLIMIT_CORE, 0)
    if dedicated_identity:
        # RLIMIT_NPROC counts per uid, so it is only meaningful for the sandbox user
        _set(resource.RLIMIT_NPROC, limits.max_processes)
