import os
from pathlib import Path

import pytest

from conftest import PYTHON, program
from judger.core.errors import ConfigError, SandboxStartError
from judger.core.limits import resolve_limits
from judger.core.models import ExecutionRequest, Submission, TestCase
from judger.isolation.isolation import IsolationPipeline
from judger.isolation.seccomp import DEFAULT_DENY, load_syscall_list
from judger.runner import seccomp_entry
from judger.runner.invoker import SandboxInvoker

SRC = Path(seccomp_entry.__file__).resolve().parents[2]


def test_policy_as_mapping(tmp_path):
    p = tmp_path / "seccomp.yaml"
    p.write_text("syscalls:\n  - ptrace\n  - mount\n  - ptrace\n")
    assert load_syscall_list(p) == ["ptrace", "mount"]


def test_policy_as_list(tmp_path):
    p = tmp_path / "seccomp.yaml"
    p.write_text("- bpf\n- keyctl\n")
    assert load_syscall_list(p) == ["bpf", "keyctl"]


def test_missing_policy_uses_defaults(tmp_path):
    assert load_syscall_list(tmp_path / "absent.yaml") == DEFAULT_DENY
    assert load_syscall_list(None) == DEFAULT_DENY


def test_bad_policy(tmp_path):
    p = tmp_path / "seccomp.yaml"
    p.write_text("syscalls: ptrace\n")
    with pytest.raises(ConfigError):
        load_syscall_list(p)


def test_entry_usage():
    with pytest.raises(SystemExit) as exc:
        seccomp_entry.main(["policy.yaml", "./main"])
    assert exc.value.code == 2
    with pytest.raises(SystemExit) as exc:
        seccomp_entry.main(["policy.yaml", "--", "./main"])
    assert exc.value.code == 2


FAKE_UNSHARE = """#!/bin/sh
# drops its flags and runs the command in the current namespaces
while [ $# -gt 0 ]; do
  case "$1" in -*) shift ;; *) break ;; esac
done
exec "$@"
"""


@pytest.fixture
def namespace_invoker(tmp_path, monkeypatch):
    """An ns+seccomp invoker whose unshare is a pass-through script."""
    bindir = tmp_path / "bin"
    bindir.mkdir()
    unshare = bindir / "unshare"
    unshare.write_text(FAKE_UNSHARE)
    unshare.chmod(0o755)
    monkeypatch.setenv("PATH", f"{bindir}{os.pathsep}{os.environ.get('PATH', '')}")

    def make(policy=None):
        pipeline = IsolationPipeline({"ns", "seccomp"}, seccomp_policy=policy)
        return SandboxInvoker(pipeline, env={"PYTHONPATH": str(SRC)}, poll_interval_ms=5, drain_grace_ms=200)
    return make


def _run_add(invoker, tmp_path):
    arena = tmp_path / "arena"
    arena.mkdir()
    (arena / PYTHON.source_file).write_text(program("add.py"))
    sub = Submission(id="s1", language="python3", source="")
    request = ExecutionRequest.for_testcase(sub, TestCase(id="t1", input=b"2 2\n"), resolve_limits(), PYTHON)
    return invoker.run(request, arena)


def test_filter_failure_is_a_start_error(namespace_invoker, tmp_path):
    policy = tmp_path / "seccomp.yaml"
    policy.write_text("syscalls: ptrace\n")
    with pytest.raises(SandboxStartError):
        _run_add(namespace_invoker(policy), tmp_path)


def test_filtered_program_runs(namespace_invoker, tmp_path):
    pytest.importorskip("pyseccomp")
    out = _run_add(namespace_invoker(), tmp_path)
    assert out.exit_code == 0
    assert out.stdout == b"4\n"


def test_entry_stays_silent_when_filter_fails(tmp_path):
    policy = tmp_path / "seccomp.yaml"
    policy.write_text("syscalls: ptrace\n")
    r, w = os.pipe()
    try:
        with pytest.raises(SystemExit) as exc:
            seccomp_entry.main([str(policy), str(w), "--", "true"])
        assert exc.value.code == 1
        os.close(w)
        w = None
        assert os.read(r, 16) == b""
    finally:
        os.close(r)
        if w is not None:
            os.close(w)
