from __future__ import annotations
from pathlib import Path
from typing import Iterable, Optional
import os, shutil

import structlog

from ..core.utils import new_run_id
from ..isolation.ns_chroot import Identity

log = structlog.get_logger(__name__)


class Arena:
    """
    Disposable working directory for one execution:
      <work_root>/<run_id>/
        ├─ <source_file>     (interpreted languages, or the compile arena)
        └─ <artifacts>       (copied from the submission build dir)
    Created on enter, removed on exit whatever happened inside.
    """

    def __init__(self, work_root: Path, identity: Optional[Identity] = None, prefix: str = "arena"):
        # absolute, so the path stays valid for chroot bind mounts
        self.work_root = work_root if work_root.is_absolute() else work_root.resolve()
        self.identity = identity
        self.path = self.work_root / new_run_id(prefix)

    def __enter__(self) -> "Arena":
        self.work_root.mkdir(parents=True, exist_ok=True)
        self.path.mkdir(mode=0o700)
        self._hand_over(self.path)
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.teardown()

    def _hand_over(self, p: Path) -> None:
        # the sandbox identity must be able to write its own arena
        if self.identity is not None:
            os.chown(p, self.identity.uid, self.identity.gid)

    def write(self, name: str, data: bytes, mode: int = 0o600) -> Path:
        target = self.path / name
        target.write_bytes(data)
        os.chmod(target, mode)
        self._hand_over(target)
        return target

    def install(self, files: Iterable[Path]) -> None:
        """Copy build artifacts in, keeping their permission bits."""
        for src in files:
            dst = self.path / src.name
            if src.is_dir():
                shutil.copytree(src, dst)
            else:
                shutil.copy2(src, dst)
            self._hand_over(dst)

    def teardown(self) -> None:
        try:
            shutil.rmtree(self.path)
        except FileNotFoundError:
            pass
        except OSError as e:
            log.warning("arena_teardown_failed", arena=str(self.path), error=str(e))
