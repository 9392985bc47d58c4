from __future__ import annotations
from dataclasses import replace
from pathlib import Path
from typing import List, Optional, Tuple
import shutil

import structlog

from ..core.languages import LanguageSpec
from ..core.models import CompileResult, ExecutionRequest, ResourceLimits, Submission, TestCase
from ..core.utils import bounded_text, new_run_id
from ..isolation.ns_chroot import Identity
from ..services.arena import Arena
from .cancel import CancelToken
from .invoker import SandboxInvoker

log = structlog.get_logger(__name__)

COMPILE_TESTCASE_ID = "compile"


def compile_limits(time_limit_ms: int) -> ResourceLimits:
    # toolchains need far more room than the programs they build;
    # max_output_bytes doubles as the file size cap for the emitted binaries
    return ResourceLimits(
        wall_time_ms=time_limit_ms,
        memory_bytes=1024 * 1024 * 1024,
        max_output_bytes=256 * 1024 * 1024,
        max_processes=64,
        max_stderr_bytes=64 * 1024,
        max_open_files=256,
    )


class Compiler:
    """
    Compiles a submission once in its own arena and keeps the artifacts in a
    per-submission build directory that every test-case arena copies from.
    """

    def __init__(self, invoker: SandboxInvoker, work_root: Path, *, identity: Optional[Identity] = None,
                 time_limit_ms: int = 30000):
        self.invoker = invoker
        self.work_root = work_root if work_root.is_absolute() else work_root.resolve()
        self.identity = identity
        self.time_limit_ms = time_limit_ms

    def _new_build_dir(self) -> Path:
        self.work_root.mkdir(parents=True, exist_ok=True)
        build_dir = self.work_root / new_run_id("build")
        build_dir.mkdir(mode=0o755)
        return build_dir

    @staticmethod
    def _collect(arena: Path, language: LanguageSpec) -> List[Path]:
        found: List[Path] = []
        for pattern in language.artifacts:
            found.extend(sorted(arena.glob(pattern.format(source=language.source_file))))
        return found

    def compile(self, submission: Submission, language: LanguageSpec,
                cancel: Optional[CancelToken] = None) -> Tuple[CompileResult, Submission]:
        bound = log.bind(submission_id=submission.id, language=language.name)
        source = submission.source_bytes()

        if not language.compiled:
            build_dir = self._new_build_dir()
            (build_dir / language.source_file).write_bytes(source)
            result = CompileResult(ok=True, exit_code=0, output="", artifact_dir=build_dir)
            return result, replace(submission, compiled_artifact=build_dir)

        limits = compile_limits(self.time_limit_ms)
        with Arena(self.work_root, self.identity, prefix="compile") as arena:
            arena.write(language.source_file, source)
            request = ExecutionRequest(
                submission=submission,
                testcase=TestCase(id=COMPILE_TESTCASE_ID),
                limits=limits,
                command=language.render_compile(limits.memory_mb),
                language=language,
            )
            outcome = self.invoker.run(request, arena.path, cancel)

            output = bounded_text(outcome.stderr + outcome.stdout)
            ok = (
                outcome.exit_code == 0
                and outcome.signal is None
                and not outcome.time_limit_exceeded
                and not outcome.memory_limit_exceeded
            )
            artifacts = self._collect(arena.path, language) if ok else []
            if ok and not artifacts:
                ok = False
                output = output or "compiler produced no output files"

            build_dir: Optional[Path] = None
            if ok:
                build_dir = self._new_build_dir()
                for src in artifacts:
                    if src.is_dir():
                        shutil.copytree(src, build_dir / src.name)
                    else:
                        shutil.copy2(src, build_dir / src.name)

        if outcome.time_limit_exceeded:
            output = (output + "\n" if output else "") + f"compilation exceeded {self.time_limit_ms} ms"

        result = CompileResult(
            ok=ok,
            exit_code=outcome.exit_code,
            output=output,
            wall_time_ms=outcome.wall_time_ms,
            artifact_dir=build_dir,
            timed_out=outcome.time_limit_exceeded,
        )
        bound.info("compile_finished", ok=ok, exit_code=outcome.exit_code, wall_time_ms=outcome.wall_time_ms,
                   timed_out=result.timed_out, artifacts=[p.name for p in artifacts])
        if not ok:
            bound.info("compile_output", output=bounded_text(output, 500))
            return result, submission
        return result, replace(submission, compiled_artifact=build_dir)

    @staticmethod
    def discard(submission: Submission) -> None:
        if submission.compiled_artifact is not None:
            shutil.rmtree(submission.compiled_artifact, ignore_errors=True)
