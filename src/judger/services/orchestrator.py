from __future__ import annotations
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import replace
from threading import BoundedSemaphore
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Optional, Sequence, Tuple

import structlog
from structlog.contextvars import bound_contextvars

from ..core.errors import CheckerError, JudgeCancelled, JudgerError, SandboxStartError
from ..core.languages import LanguageSpec, build_language_table, get_language
from ..core.limits import resolve_limits
from ..core.models import CheckerSpec, CompileResult, ExecutionRequest, ResourceLimits, Submission, TestCase, Verdict, VerdictKind
from ..isolation.isolation import IsolationPipeline, probe_capabilities
from ..isolation.ns_chroot import Identity
from ..runner.cancel import CancelToken
from ..runner.compiler import Compiler
from ..runner.invoker import SandboxInvoker
from ..settings import Settings, load_settings
from . import checkers
from .arena import Arena
from .summary import summarize
from .verdict import VerdictEngine

log = structlog.get_logger(__name__)

SHORT_CIRCUIT = "short_circuit"
# judge_many coordinator threads per isolation slot
COORDINATORS_PER_SLOT = 2


class ExecutionOrchestrator:
    """
    Judges submissions: compile once, then one fresh arena per test case,
    run on a shared bounded pool. Verdicts come back in test-case order.
    """

    def __init__(self, settings: Optional[Settings] = None, *,
                 languages: Optional[Mapping[str, Any]] = None,
                 invoker: Optional[SandboxInvoker] = None):
        self.s = settings or load_settings()
        self.languages: Dict[str, LanguageSpec] = build_language_table({**self.s.languages, **(languages or {})})

        identity = Identity(self.s.sandbox_uid, self.s.sandbox_gid)
        self.pipeline = IsolationPipeline(
            self.s.strategies,
            identity=identity,
            rootfs=self.s.rootfs,
            seccomp_policy=self.s.seccomp_policy,
        )
        # arenas only change hands when the sandbox really runs as that identity
        self.identity = identity if self.pipeline.dedicated_identity else None
        self.invoker = invoker or SandboxInvoker(
            self.pipeline,
            cgroup_base=self.s.cgroup_base,
            env=self.s.env,
            poll_interval_ms=self.s.poll_interval_ms,
            memory_sample_interval_ms=self.s.memory_sample_interval_ms,
            kill_grace_ms=self.s.kill_grace_ms,
            drain_grace_ms=self.s.drain_grace_ms,
        )
        self.compiler = Compiler(self.invoker, self.s.work_root, identity=self.identity,
                                 time_limit_ms=self.s.compile_time_limit_ms)
        self.verdicts = VerdictEngine(checkers.validate(CheckerSpec.parse(self.s.checker)))

        self._pool = ThreadPoolExecutor(max_workers=self.s.max_concurrency, thread_name_prefix="judger")
        # isolation slots shared by compiles and test-case runs of every submission
        self._slots = BoundedSemaphore(self.s.max_concurrency)
        log.debug("orchestrator_ready", max_concurrency=self.s.max_concurrency,
                  **probe_capabilities(self.s.strategies, self.s.rootfs))

    # ---------- lifecycle ----------

    def close(self) -> None:
        self._pool.shutdown(wait=True, cancel_futures=True)

    def __enter__(self) -> "ExecutionOrchestrator":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    # ---------- limits ----------

    def _limits_for(self, language: LanguageSpec, testcase: TestCase,
                    overrides: Optional[Mapping[str, Any]]) -> ResourceLimits:
        problem = {**(overrides or {}), **{k: v for k, v in testcase.limit_overrides().items() if v is not None}}
        return resolve_limits(self.s.limits, language.limits, problem)

    # ---------- compile ----------

    def _compile(self, submission: Submission, language: LanguageSpec,
                 token: CancelToken) -> Tuple[Optional[CompileResult], Submission, Optional[JudgerError], int]:
        attempts = 0
        while True:
            attempts += 1
            try:
                with self._slots:
                    result, compiled = self.compiler.compile(submission, language, token)
                return result, compiled, None, attempts
            except (SandboxStartError, OSError) as e:
                err = e if isinstance(e, JudgerError) else SandboxStartError(f"compile arena failed: {e}")
                if attempts > self.s.harness_retries:
                    return None, submission, err, attempts
                log.warning("harness_retry", stage="compile", attempt=attempts, error=err.detail)

    # ---------- one unit of work ----------

    def _run_unit(self, submission: Submission, testcase: TestCase, limits: ResourceLimits,
                  language: LanguageSpec, token: CancelToken) -> Optional[Verdict]:
        with bound_contextvars(submission_id=submission.id, testcase_id=testcase.id):
            attempts = 0
            while True:
                attempts += 1
                if token.cancelled:
                    return None
                try:
                    with self._slots:
                        with Arena(self.s.work_root, self.identity) as arena:
                            arena.install(sorted(submission.compiled_artifact.iterdir()))
                            request = ExecutionRequest.for_testcase(submission, testcase, limits, language)
                            outcome = self.invoker.run(request, arena.path, token)
                    verdict = self.verdicts.judge(outcome, testcase)
                    return replace(verdict, attempts=attempts) if attempts > 1 else verdict
                except JudgeCancelled:
                    return None
                except (SandboxStartError, CheckerError, OSError) as e:
                    err = e if isinstance(e, JudgerError) else SandboxStartError(f"arena failed: {e}")
                    if attempts > self.s.harness_retries:
                        log.error("harness_failed", attempts=attempts, error=err.to_dict())
                        return self.verdicts.internal_error(testcase, err, attempts)
                    log.warning("harness_retry", stage="run", attempt=attempts, error=err.detail)

    # ---------- public API ----------

    def iter_judge(self, submission: Submission, testcases: Sequence[TestCase],
                   overrides: Optional[Mapping[str, Any]] = None,
                   cancel: Optional[CancelToken] = None) -> Iterator[Verdict]:
        """
        Yield one Verdict per test case, in order. Configuration problems
        (unknown language, bad limits, bad checkers) raise before anything runs.
        """
        language = get_language(self.languages, submission.language)
        limits = [self._limits_for(language, tc, overrides) for tc in testcases]
        for tc in testcases:
            checkers.validate(tc.checker or self.verdicts.default_checker)
        token = CancelToken(parent=cancel)
        try:
            yield from self._judge_units(submission, testcases, limits, language, token)
        finally:
            token.detach()

    def _judge_units(self, submission: Submission, testcases: Sequence[TestCase], limits: List[ResourceLimits],
                     language: LanguageSpec, token: CancelToken) -> Iterator[Verdict]:
        bound = log.bind(submission_id=submission.id, language=language.name)

        owned = submission.compiled_artifact is None
        if owned:
            result, compiled, error, attempts = self._compile(submission, language, token)
        else:
            # already built by the caller, who keeps ownership of the artifacts
            result = CompileResult(ok=True, exit_code=0, output="", artifact_dir=submission.compiled_artifact)
            compiled, error, attempts = submission, None, 0
        if token.cancelled:
            if owned:
                Compiler.discard(compiled)
            raise JudgeCancelled(reason=token.reason)
        if error is not None:
            for tc in testcases:
                yield self.verdicts.internal_error(tc, error, attempts)
                if self.s.short_circuit:
                    return
            return
        if not result.ok:
            for tc in testcases:
                yield self.verdicts.compile_error(tc, result)
                if self.s.short_circuit:
                    return
            return

        futures: List[Future] = []
        try:
            for tc, lim in zip(testcases, limits):
                futures.append(self._pool.submit(self._run_unit, compiled, tc, lim, language, token))
            for fut in futures:
                verdict = fut.result()
                if verdict is None:
                    raise JudgeCancelled(reason=token.reason)
                yield verdict
                if self.s.short_circuit and verdict.kind is not VerdictKind.ACCEPTED:
                    bound.info("short_circuit", testcase_id=verdict.testcase_id, verdict=verdict.kind.value)
                    token.cancel(SHORT_CIRCUIT)
                    break
        finally:
            # an abandoned generator also lands here; stop whatever is still queued or running
            if any(not f.done() for f in futures):
                token.cancel(token.reason or SHORT_CIRCUIT)
                for f in futures:
                    f.cancel()
                wait([f for f in futures if not f.cancelled()])
            if owned:
                Compiler.discard(compiled)

    def judge(self, submission: Submission, testcases: Sequence[TestCase],
              overrides: Optional[Mapping[str, Any]] = None,
              cancel: Optional[CancelToken] = None) -> List[Verdict]:
        return list(self.iter_judge(submission, testcases, overrides, cancel))

    def judge_many(self, items: Iterable[Tuple[Submission, Sequence[TestCase]]],
                   overrides: Optional[Mapping[str, Any]] = None,
                   cancel: Optional[CancelToken] = None) -> List[List[Verdict]]:
        """Judge several submissions concurrently; results line up with `items`."""
        items = list(items)
        if not items:
            return []
        # coordinators only wait on units, so they get their own threads
        workers = min(len(items), COORDINATORS_PER_SLOT * self.s.max_concurrency)
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="judger-sub") as coord:
            futures = [coord.submit(self.judge, sub, tcs, overrides, cancel) for sub, tcs in items]
            return [f.result() for f in futures]

    @staticmethod
    def summarize(verdicts: Sequence[Verdict], max_points: float = 100.0, partial: bool = False):
        return summarize(verdicts, max_points, partial)
