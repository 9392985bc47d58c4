from __future__ import annotations
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, List, Optional
import os, shutil, sys

import structlog

from ..core.errors import ConfigError
from ..core.models import ResourceLimits
from ..runner.rlimits import apply_rlimits
from .cgroups import CgroupLeaf
from .ns_chroot import Identity, rootfs_ready, wrap_with_chroot, wrap_with_ns
from .seccomp import make_seccomp_preexec

log = structlog.get_logger(__name__)

KNOWN_STRATEGIES = {"ns", "cgroups", "seccomp"}


def seccomp_entry_argv(cmd: List[str], policy: Optional[Path], ready_fd: Optional[int] = None) -> List[str]:
    """
    Install the filter from inside the namespaces, right before the program.
    The entry point reports readiness itself once the filter is loaded.
    """
    fd = "" if ready_fd is None else str(ready_fd)
    return [sys.executable, "-m", "judger.runner.seccomp_entry", str(policy or ""), fd, "--"] + list(cmd)


@dataclass
class LaunchPlan:
    argv: List[str]
    cwd: Path
    preexec: Callable[[], None]
    # set when a wrapper layer will report readiness on this fd before exec'ing the program
    ready_fd: Optional[int] = None
    pass_fds: List[int] = field(default_factory=list)


class IsolationPipeline:
    """
    Composes the isolation layers around one command:
      ns      -> unshare (+ setpriv identity drop, + chroot when a rootfs image is ready)
      cgroups -> the child joins its per-execution leaf before exec
      seccomp -> deny-list syscall filter; under ns it is installed by the innermost
                 wrapper (judger.runner.seccomp_entry), otherwise in preexec
    rlimits are always applied.
    """

    def __init__(self, strategies: set, *, identity: Optional[Identity] = None,
                 rootfs: Optional[Path] = None, seccomp_policy: Optional[Path] = None):
        unknown = set(strategies) - KNOWN_STRATEGIES
        if unknown:
            raise ConfigError(f"unknown isolation strategies: {sorted(unknown)}")
        self.strategies = set(strategies)
        self.identity = identity
        self.rootfs = rootfs
        # the child runs in its arena, so relative policy paths must be pinned now
        self.seccomp_policy = seccomp_policy.resolve() if seccomp_policy else None
        if "seccomp" in self.strategies and "ns" in self.strategies and rootfs_ready(rootfs):
            # the filter would have to be installed from inside the image
            raise ConfigError("seccomp cannot be combined with a chroot rootfs")
        self._warned_network = False

    @property
    def uses_cgroups(self) -> bool:
        return "cgroups" in self.strategies

    @property
    def dedicated_identity(self) -> bool:
        return "ns" in self.strategies and self.identity is not None and os.geteuid() == 0

    def build(self, cmd: List[str], arena: Path, limits: ResourceLimits,
              leaf: Optional[CgroupLeaf] = None, ready_fd: Optional[int] = None) -> LaunchPlan:
        argv = list(cmd)
        cwd = arena
        identity = self.identity if self.dedicated_identity else None

        seccomp = "seccomp" in self.strategies
        if "ns" in self.strategies:
            if ready_fd is None:
                raise ConfigError("namespace isolation needs a ready descriptor")
            if rootfs_ready(self.rootfs):
                argv = wrap_with_chroot(argv, arena=arena, rootfs=self.rootfs, allow_network=limits.network_enabled,
                                        identity=identity, ready_fd=ready_fd)
            else:
                trampoline_fd: Optional[int] = ready_fd
                if seccomp:
                    argv = seccomp_entry_argv(argv, self.seccomp_policy, ready_fd)
                    seccomp = False
                    trampoline_fd = None
                argv = wrap_with_ns(argv, allow_network=limits.network_enabled, identity=identity,
                                    ready_fd=trampoline_fd)
        else:
            ready_fd = None
            if not limits.network_enabled and not self._warned_network:
                self._warned_network = True
                log.warning("network_isolation_unavailable", strategies=sorted(self.strategies))

        steps: List[Callable[[], None]] = [os.setsid]
        if leaf is not None:
            steps.append(leaf.join_preexec())
        dedicated = identity is not None

        def _rlimits() -> None:
            apply_rlimits(limits, dedicated_identity=dedicated)
        steps.append(_rlimits)
        if seccomp:
            steps.append(make_seccomp_preexec(self.seccomp_policy))

        def _preexec() -> None:
            for step in steps:
                step()

        return LaunchPlan(
            argv=argv,
            cwd=cwd,
            preexec=_preexec,
            ready_fd=ready_fd,
            pass_fds=[ready_fd] if ready_fd is not None else [],
        )


def probe_capabilities(strategies: set, rootfs: Optional[Path] = None) -> dict:
    """Environment facts for debugging isolation problems."""
    return {
        "strategies": sorted(strategies),
        "euid": os.geteuid() if hasattr(os, "geteuid") else None,
        "has_unshare": bool(shutil.which("unshare")),
        "has_setpriv": bool(shutil.which("setpriv")),
        "has_chroot": bool(shutil.which("chroot")),
        "rootfs_ready": rootfs_ready(rootfs),
        "cgroup_v2": Path("/sys/fs/cgroup/cgroup.controllers").exists(),
    }
