import sys
from pathlib import Path

import pytest

from judger.core.languages import LanguageSpec
from judger.isolation.isolation import IsolationPipeline
from judger.runner.invoker import SandboxInvoker
from judger.settings import Settings

PROGRAMS = Path(__file__).parent / "programs"

# the interpreter running the tests stands in for the judging image's python3
PYTHON = LanguageSpec(
    name="python3",
    source_file="main.py",
    compile_cmd=(sys.executable, "-m", "py_compile", "{source}"),
    run_cmd=(sys.executable, "{source}"),
    artifacts=("{source}",),
    oom_markers=("MemoryError",),
)

# same runtime without a compile step
PYTHON_SCRIPT = LanguageSpec(name="py", source_file="main.py", run_cmd=(sys.executable, "{source}"))


def program(name: str) -> str:
    return (PROGRAMS / name).read_text()


@pytest.fixture
def host_invoker():
    return SandboxInvoker(IsolationPipeline(set()), poll_interval_ms=5, kill_grace_ms=1000, drain_grace_ms=200)


@pytest.fixture
def settings(tmp_path):
    return Settings(
        work_root=tmp_path / "arenas",
        iso_strategy="none",
        max_concurrency=2,
        harness_retries=2,
        poll_interval_ms=5,
        kill_grace_ms=1000,
        drain_grace_ms=200,
        languages={"python3": PYTHON, "py": PYTHON_SCRIPT},
    )


def alive(pid: int) -> bool:
    """False once pid is gone or only a zombie."""
    try:
        with open(f"/proc/{pid}/stat") as f:
            state = f.read().rsplit(")", 1)[1].split()[0]
    except (OSError, IndexError):
        return False
    return state not in ("Z", "X")
