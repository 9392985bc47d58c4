from __future__ import annotations
import os
import sys
from pathlib import Path
from typing import List, Optional

from ..core.errors import JudgerError
from ..isolation.seccomp import make_seccomp_preexec

USAGE = "usage: python -m judger.runner.seccomp_entry <policy_path> <ready_fd> -- <cmd...>"


def main(argv: Optional[List[str]] = None) -> None:
    """
    python -m judger.runner.seccomp_entry <policy_path> <ready_fd> -- <cmd...>

    Runs innermost, after the namespace wrappers have done their mounts, so
    the filter binds only the submitted program. Readiness is reported on
    ready_fd only once the filter is loaded; an empty ready_fd reports nothing.
    """
    args = list(sys.argv[1:] if argv is None else argv)
    if len(args) < 4 or args[2] != "--":
        print(USAGE, file=sys.stderr)
        sys.exit(2)

    policy = Path(args[0]) if args[0] else None
    ready_fd = int(args[1]) if args[1] else None
    cmd = args[3:]

    try:
        # apply in this process; it survives the exec below
        make_seccomp_preexec(policy)()
    except JudgerError as e:
        # the invoker sees the ready pipe close without "ok"
        print(f"seccomp_entry: {e.detail}", file=sys.stderr)
        sys.exit(1)

    if ready_fd is not None:
        os.write(ready_fd, b"ok")
        os.close(ready_fd)
    os.execvp(cmd[0], cmd)


if __name__ == "__main__":
    main()
