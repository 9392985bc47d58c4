from __future__ import annotations
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional
import os, shlex, shutil

from ..core.errors import SandboxStartError

# where the arena is mounted inside the prepared rootfs
SANDBOX_MOUNT = "/sandbox"


@dataclass(frozen=True)
class Identity:
    uid: int
    gid: int


def _which(name: str) -> str:
    path = shutil.which(name)
    if not path:
        raise SandboxStartError(f"{name} not found on PATH; cannot enter the sandbox", tool=name)
    return path


def rootfs_ready(rootfs: Optional[Path]) -> bool:
    return bool(rootfs) and (rootfs / "bin/sh").exists() and (rootfs / SANDBOX_MOUNT.lstrip("/")).is_dir()


def unshare_argv(allow_network: bool, as_root: Optional[bool] = None) -> List[str]:
    """
    New pid/ipc/uts/mount namespaces (+ net unless allowed). Without root we
    also need a user namespace to be allowed to create the others.
    """
    as_root = (os.geteuid() == 0) if as_root is None else as_root
    flags = ["--fork", "--pid", "--mount-proc", "--ipc", "--uts", "--kill-child"]
    if not allow_network:
        flags.append("--net")
    if not as_root:
        flags = ["--user", "--map-root-user"] + flags
    return [_which("unshare")] + flags


def setpriv_argv(identity: Identity, binary: Optional[str] = None) -> List[str]:
    return [
        binary or _which("setpriv"),
        f"--reuid={identity.uid}",
        f"--regid={identity.gid}",
        "--clear-groups",
        "--no-new-privs",
    ]


def ready_trampoline(cmd: List[str], ready_fd: int, sh: str = "/bin/sh") -> List[str]:
    """
    Report on ready_fd that every wrapper layer succeeded, close it, then exec
    the real command. The submitted program never sees the descriptor.
    """
    script = f'printf ok >&{ready_fd}; exec {ready_fd}>&-; exec "$@"'
    return [sh, "-c", script, "judger-sh"] + list(cmd)


def wrap_with_ns(cmd: List[str], *, allow_network: bool, identity: Optional[Identity],
                 ready_fd: Optional[int]) -> List[str]:
    """
    Host mode: namespaces around the command, cwd stays the arena.
    With ready_fd None the command reports readiness itself.
    """
    out = unshare_argv(allow_network)
    if identity is not None:
        out += setpriv_argv(identity)
    if ready_fd is None:
        return out + list(cmd)
    return out + ready_trampoline(cmd, ready_fd, sh=_which("sh"))


def wrap_with_chroot(cmd: List[str], *, arena: Path, rootfs: Path, allow_network: bool,
                     identity: Optional[Identity], ready_fd: int) -> List[str]:
    """
    Chroot mode: only the prepared image filesystem plus the arena are visible.
    The arena is bind mounted at /sandbox inside a private mount namespace,
    so concurrent executions sharing one rootfs do not see each other.
    """
    mnt_work = str(rootfs / SANDBOX_MOUNT.lstrip("/"))
    mnt_proc = str(rootfs / "proc")
    # setpriv is resolved inside the image, not on the host
    inner = setpriv_argv(identity, binary="setpriv") if identity is not None else []
    inner += ready_trampoline(cmd, ready_fd)
    inner_cmd = " ".join(shlex.quote(x) for x in inner)

    shell = (
        f"mount --bind {shlex.quote(str(arena))} {shlex.quote(mnt_work)} || exit 121;"
        f"mount -t proc proc {shlex.quote(mnt_proc)} || exit 121;"
        f"exec chroot {shlex.quote(str(rootfs))} /bin/sh -c "
        f"{shlex.quote('cd ' + SANDBOX_MOUNT + ' && exec ' + inner_cmd)}"
    )
    flags = [f for f in unshare_argv(allow_network) if f != "--mount-proc"]
    return flags + [_which("sh"), "-c", shell]
