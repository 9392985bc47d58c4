from __future__ import annotations
from typing import Callable, List
from pathlib import Path

import yaml

from ..core.errors import ConfigError, SandboxStartError

# used when the policy file is missing
DEFAULT_DENY = [
    "ptrace", "process_vm_readv", "process_vm_writev", "kexec_load", "kexec_file_load",
    "reboot", "swapon", "swapoff", "init_module", "finit_module", "delete_module",
    "bpf", "perf_event_open", "keyctl", "add_key", "request_key", "acct", "settimeofday",
]


def load_syscall_list(policy_path: Path | None) -> List[str]:
    """
    Read the deny-list from YAML: either a bare list or {syscalls: [...]}.
    """
    if not policy_path or not policy_path.exists():
        return list(DEFAULT_DENY)

    try:
        data = yaml.safe_load(policy_path.read_text(encoding="utf-8"))
    except yaml.YAMLError as e:
        raise ConfigError(f"invalid seccomp policy {policy_path}: {e}", path=str(policy_path))
    if isinstance(data, dict):
        data = data.get("syscalls", [])
    if not isinstance(data, list):
        raise ConfigError(f"seccomp policy {policy_path} must list syscalls", path=str(policy_path))
    return list(dict.fromkeys(str(x).strip() for x in data if str(x).strip()))


def make_seccomp_preexec(policy_path: Path | None) -> Callable[[], None]:
    """
    Return a preexec() installing a deny-list filter:
    - default: ALLOW every syscall
    - syscalls in the policy: fail with EPERM
    The filter survives exec, so it also binds the wrapped runtime.
    """
    try:
        import pyseccomp as sc
    except ImportError as e:
        raise SandboxStartError("seccomp strategy requested but pyseccomp is not installed") from e

    deny_syscalls = load_syscall_list(policy_path)
    eperm = 1

    def _preexec() -> None:
        f = sc.SyscallFilter(sc.ALLOW)
        for name in deny_syscalls:
            try:
                f.add_rule(sc.ERRNO(eperm), name)
            except (ValueError, RuntimeError):
                # syscall unknown on this architecture
                pass
        f.load()

    return _preexec
