from __future__ import annotations
import signal
from typing import Any, Optional

import structlog

from ..core.errors import JudgerError
from ..core.models import CheckerSpec, CompileResult, ExecutionOutcome, TestCase, Verdict, VerdictKind
from ..core.utils import bounded_text
from . import checkers

log = structlog.get_logger(__name__)


def _signal_name(signo: int) -> str:
    try:
        return signal.Signals(signo).name
    except ValueError:
        return f"signal {signo}"


class VerdictEngine:
    """
    Maps one ExecutionOutcome to exactly one Verdict. Decision order:
    harness error, time, memory, abnormal exit, then output comparison
    (with output overflow only mattering when the output does not match).
    """

    def __init__(self, default_checker: Optional[CheckerSpec] = None):
        self.default_checker = default_checker or CheckerSpec()

    def _verdict(self, testcase: TestCase, kind: VerdictKind, message: str,
                 outcome: Optional[ExecutionOutcome] = None, attempts: int = 1, **details: Any) -> Verdict:
        if outcome is not None:
            details.setdefault("exit_code", outcome.exit_code)
            details.setdefault("signal", outcome.signal)
            details.setdefault("cpu_time_ms", outcome.cpu_time_ms)
            details.setdefault("stdout_bytes", outcome.stdout_total_bytes)
        v = Verdict(testcase_id=testcase.id, kind=kind, message=message, details=details,
                    outcome=outcome, attempts=attempts)
        log.info("verdict", testcase_id=testcase.id, verdict=kind.value, time_ms=v.time_ms,
                 memory_bytes=v.memory_bytes)
        return v

    def judge(self, outcome: ExecutionOutcome, testcase: TestCase) -> Verdict:
        if outcome.harness_error:
            return self._verdict(testcase, VerdictKind.INTERNAL_ERROR, VerdictKind.INTERNAL_ERROR.description,
                                 outcome, error=outcome.harness_error)
        if outcome.time_limit_exceeded:
            return self._verdict(testcase, VerdictKind.TIME_LIMIT_EXCEEDED,
                                 VerdictKind.TIME_LIMIT_EXCEEDED.description, outcome)
        if outcome.memory_limit_exceeded:
            return self._verdict(testcase, VerdictKind.MEMORY_LIMIT_EXCEEDED,
                                 VerdictKind.MEMORY_LIMIT_EXCEEDED.description, outcome)

        if outcome.signal is not None or outcome.exit_code != 0:
            if outcome.signal is not None:
                reason = f"terminated by {_signal_name(outcome.signal)}"
            else:
                reason = f"exited with code {outcome.exit_code}"
            stderr = bounded_text(outcome.stderr, 1000)
            log.info("runtime_error", testcase_id=testcase.id, reason=reason, stderr=stderr)
            return self._verdict(testcase, VerdictKind.RUNTIME_ERROR, VerdictKind.RUNTIME_ERROR.description,
                                 outcome, reason=reason, stderr=stderr)

        spec = testcase.checker or self.default_checker
        accepted, note = checkers.check(spec, testcase.input, testcase.expected_output or b"", outcome.stdout)
        if accepted:
            return self._verdict(testcase, VerdictKind.ACCEPTED, VerdictKind.ACCEPTED.description, outcome,
                                 checker=spec.name)
        if outcome.stdout_truncated:
            return self._verdict(testcase, VerdictKind.OUTPUT_LIMIT_EXCEEDED,
                                 VerdictKind.OUTPUT_LIMIT_EXCEEDED.description, outcome, checker=spec.name)
        return self._verdict(testcase, VerdictKind.WRONG_ANSWER, VerdictKind.WRONG_ANSWER.description, outcome,
                             checker=spec.name, checker_message=note)

    def internal_error(self, testcase: TestCase, error: JudgerError, attempts: int = 1) -> Verdict:
        return self._verdict(testcase, VerdictKind.INTERNAL_ERROR, VerdictKind.INTERNAL_ERROR.description,
                             attempts=attempts, error=error.to_dict())

    def compile_error(self, testcase: TestCase, result: CompileResult) -> Verdict:
        # compiler diagnostics are the one piece of stderr a submitter gets to see
        message = bounded_text(result.output) or VerdictKind.COMPILE_ERROR.description
        return self._verdict(testcase, VerdictKind.COMPILE_ERROR, message, exit_code=result.exit_code,
                             timed_out=result.timed_out, compile_time_ms=result.wall_time_ms)
