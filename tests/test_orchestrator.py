import threading
import time

import pytest

from conftest import alive, program
from judger.core.errors import ConfigError, JudgeCancelled, SandboxStartError, UnknownLanguageError
from judger.core.models import Submission, TestCase, VerdictKind
from judger.isolation.isolation import IsolationPipeline
from judger.runner.cancel import CancelToken
from judger.runner.invoker import SandboxInvoker
from judger.services.orchestrator import COORDINATORS_PER_SLOT, ExecutionOrchestrator


class FlakyInvoker:
    """Fails to enter the sandbox `failures` times, then behaves normally."""

    def __init__(self, failures):
        self.failures = failures
        self.calls = 0
        self.real = SandboxInvoker(IsolationPipeline(set()), poll_interval_ms=5)

    def run(self, request, arena, cancel=None):
        self.calls += 1
        if self.calls <= self.failures:
            raise SandboxStartError("unshare: permission denied")
        return self.real.run(request, arena, cancel)


@pytest.fixture
def orchestrator(settings):
    with ExecutionOrchestrator(settings) as orch:
        yield orch


def test_accepts_correct_answer(orchestrator):
    sub = Submission(id="sub-1", language="python3", source=program("add.py"))
    verdicts = orchestrator.judge(sub, [TestCase(id="1", input="2 2\n", expected_output="4\n")])
    assert [v.kind for v in verdicts] == [VerdictKind.ACCEPTED]
    assert verdicts[0].attempts == 1


def test_one_verdict_per_testcase_in_order(orchestrator):
    sub = Submission(id="sub-2", language="python3", source=program("add.py"))
    cases = [
        TestCase(id="a", input="1 2\n", expected_output="3\n"),
        TestCase(id="b", input="5 5\n", expected_output="11\n"),
        TestCase(id="c", input="5 5\n", expected_output="10"),
        TestCase(id="d", input="40 2\n", expected_output="42\n"),
    ]
    verdicts = orchestrator.judge(sub, cases)
    assert [v.testcase_id for v in verdicts] == ["a", "b", "c", "d"]
    assert [v.kind for v in verdicts] == [
        VerdictKind.ACCEPTED,
        VerdictKind.WRONG_ANSWER,
        # exact comparison: the missing newline matters
        VerdictKind.WRONG_ANSWER,
        VerdictKind.ACCEPTED,
    ]


def test_lenient_checker_is_opt_in(orchestrator):
    sub = Submission(id="sub-3", language="python3", source="print('4   ')\n")
    tc = TestCase(id="1", expected_output="4", checker="lines")
    assert orchestrator.judge(sub, [tc])[0].kind is VerdictKind.ACCEPTED


def test_compile_error_for_every_testcase(orchestrator):
    sub = Submission(id="sub-4", language="python3", source="def broken(:\n")
    verdicts = orchestrator.judge(sub, [TestCase(id="1", expected_output=""), TestCase(id="2", expected_output="")])
    assert [v.kind for v in verdicts] == [VerdictKind.COMPILE_ERROR] * 2
    assert verdicts[0].message
    assert verdicts[0].outcome is None


def test_time_limit_from_testcase(orchestrator):
    sub = Submission(id="sub-5", language="py", source="import time\ntime.sleep(10)\n")
    verdicts = orchestrator.judge(sub, [TestCase(id="1", expected_output="", time_limit_ms=500)])
    assert verdicts[0].kind is VerdictKind.TIME_LIMIT_EXCEEDED


def test_harness_faults_become_internal_error(settings):
    invoker = FlakyInvoker(failures=100)
    with ExecutionOrchestrator(settings, invoker=invoker) as orch:
        sub = Submission(id="sub-6", language="py", source=program("add.py"))
        verdicts = orch.judge(sub, [TestCase(id="1", input="1 1\n", expected_output="2\n")])
    assert verdicts[0].kind is VerdictKind.INTERNAL_ERROR
    assert verdicts[0].attempts == settings.harness_retries + 1
    assert invoker.calls == settings.harness_retries + 1
    assert verdicts[0].details["error"]["error"] == "sandbox_start_error"


def test_harness_fault_is_retried(settings):
    invoker = FlakyInvoker(failures=1)
    with ExecutionOrchestrator(settings, invoker=invoker) as orch:
        sub = Submission(id="sub-7", language="py", source=program("add.py"))
        verdicts = orch.judge(sub, [TestCase(id="1", input="1 1\n", expected_output="2\n")])
    assert verdicts[0].kind is VerdictKind.ACCEPTED
    assert verdicts[0].attempts == 2


def test_program_faults_are_not_retried(settings):
    invoker = FlakyInvoker(failures=0)
    with ExecutionOrchestrator(settings, invoker=invoker) as orch:
        sub = Submission(id="sub-8", language="py", source="raise SystemExit(2)\n")
        verdicts = orch.judge(sub, [TestCase(id="1", expected_output="")])
    assert verdicts[0].kind is VerdictKind.RUNTIME_ERROR
    assert invoker.calls == 1


def test_short_circuit_stops_after_first_failure(settings):
    settings.short_circuit = True
    with ExecutionOrchestrator(settings) as orch:
        sub = Submission(id="sub-9", language="py", source=program("add.py"))
        cases = [
            TestCase(id="1", input="1 1\n", expected_output="3\n"),
            TestCase(id="2", input="1 1\n", expected_output="2\n"),
            TestCase(id="3", input="1 1\n", expected_output="2\n"),
        ]
        verdicts = orch.judge(sub, cases)
    assert [v.testcase_id for v in verdicts] == ["1"]
    assert verdicts[0].kind is VerdictKind.WRONG_ANSWER


def test_judge_many_is_deterministic(orchestrator):
    total = sum(n for n in range(2, 20000) if all(n % d for d in range(2, int(n ** 0.5) + 1)))
    cases = [TestCase(id="1", expected_output=f"sum_primes_up_to 20000 {total}\n")]
    items = [(Submission(id=f"sub-{i}", language="python3", source=program("sum_primes.py")), cases)
             for i in range(3)]
    results = orchestrator.judge_many(items)
    assert len(results) == 3
    kinds = {tuple(v.kind for v in verdicts) for verdicts in results}
    outputs = {verdicts[0].outcome.stdout for verdicts in results}
    assert kinds == {(VerdictKind.ACCEPTED,)}
    assert len(outputs) == 1


def test_arenas_are_removed(orchestrator, settings):
    sub = Submission(id="sub-10", language="python3", source=program("add.py"))
    orchestrator.judge(sub, [TestCase(id="1", input="2 3\n", expected_output="5\n")] * 3)
    assert list(settings.work_root.iterdir()) == []


def test_unknown_language_is_rejected(orchestrator):
    with pytest.raises(UnknownLanguageError):
        orchestrator.judge(Submission(id="x", language="cobol", source=""), [TestCase(id="1")])


def test_bad_limits_are_rejected_before_running(settings):
    invoker = FlakyInvoker(failures=0)
    with ExecutionOrchestrator(settings, invoker=invoker) as orch:
        with pytest.raises(ConfigError):
            orch.judge(Submission(id="x", language="py", source=""), [TestCase(id="1")],
                       overrides={"time_limit_ms": -5})
    assert invoker.calls == 0


def test_summary_reports_worst_verdict(orchestrator):
    sub = Submission(id="sub-11", language="python3", source=program("add.py"))
    verdicts = orchestrator.judge(sub, [
        TestCase(id="1", input="2 2\n", expected_output="4\n"),
        TestCase(id="2", input="2 2\n", expected_output="5\n"),
    ])
    summary = orchestrator.summarize(verdicts, max_points=50)
    assert summary.kind is VerdictKind.WRONG_ANSWER
    assert summary.passed == 1
    assert summary.points == 0.0


def test_bad_checker_is_rejected_before_running(settings):
    invoker = FlakyInvoker(failures=0)
    with ExecutionOrchestrator(settings, invoker=invoker) as orch:
        sub = Submission(id="x", language="py", source=program("add.py"))
        with pytest.raises(ConfigError):
            orch.judge(sub, [TestCase(id="1", input="1 1\n", expected_output="2\n"), TestCase(id="2", checker="nope")])
        with pytest.raises(ConfigError):
            orch.judge(sub, [TestCase(id="1", checker={"name": "program"})])
    assert invoker.calls == 0


def test_checker_failure_is_retried_then_internal_error(settings, tmp_path):
    script = tmp_path / "checker.sh"
    script.write_text("#!/bin/sh\nexit 2\n")
    script.chmod(0o755)
    invoker = FlakyInvoker(failures=0)
    with ExecutionOrchestrator(settings, invoker=invoker) as orch:
        sub = Submission(id="sub-12", language="py", source=program("add.py"))
        tc = TestCase(id="1", input="1 1\n", expected_output="2\n", checker={"path": str(script)})
        verdicts = orch.judge(sub, [tc])
    assert verdicts[0].kind is VerdictKind.INTERNAL_ERROR
    assert verdicts[0].attempts == settings.harness_retries + 1
    assert invoker.calls == settings.harness_retries + 1
    assert verdicts[0].details["error"]["error"] == "checker_error"


def test_cancel_kills_running_judgment(orchestrator, settings, tmp_path):
    pidfile = tmp_path / "child.pid"
    source = program("spawn_sleeper.py").replace('"child.pid"', repr(str(pidfile)))
    token = CancelToken()

    def cancel_once_spawned():
        deadline = time.monotonic() + 10
        while not (pidfile.exists() and pidfile.read_text()) and time.monotonic() < deadline:
            time.sleep(0.05)
        token.cancel("user")

    canceller = threading.Thread(target=cancel_once_spawned)
    canceller.start()
    started = time.monotonic()
    try:
        with pytest.raises(JudgeCancelled):
            orchestrator.judge(Submission(id="sub-13", language="py", source=source),
                               [TestCase(id="1", expected_output="", time_limit_ms=20000)], cancel=token)
    finally:
        canceller.join()
    assert time.monotonic() - started < 15

    pid = int(pidfile.read_text())
    deadline = time.monotonic() + 3
    while alive(pid) and time.monotonic() < deadline:
        time.sleep(0.05)
    assert not alive(pid)
    assert list(settings.work_root.iterdir()) == []


def test_caller_token_forgets_finished_judgments(orchestrator):
    parent = CancelToken()
    sub = Submission(id="sub-14", language="py", source=program("add.py"))
    for _ in range(5):
        orchestrator.judge(sub, [TestCase(id="1", input="1 1\n", expected_output="2\n")], cancel=parent)
    assert parent._children == []
    assert not parent.cancelled


def test_judge_many_bounds_coordinators(settings):
    settings.max_concurrency = 1
    threads = set()
    with ExecutionOrchestrator(settings) as orch:
        judge = orch.judge

        def recording_judge(*args, **kwargs):
            threads.add(threading.current_thread().name)
            return judge(*args, **kwargs)

        orch.judge = recording_judge
        cases = [TestCase(id="1", input="1 1\n", expected_output="2\n")]
        items = [(Submission(id=f"many-{i}", language="py", source=program("add.py")), cases) for i in range(6)]
        results = orch.judge_many(items)
    assert [[v.kind for v in verdicts] for verdicts in results] == [[VerdictKind.ACCEPTED]] * 6
    assert len(threads) <= COORDINATORS_PER_SLOT
