from dataclasses import replace

from conftest import PYTHON, PYTHON_SCRIPT, program
from judger.core.models import Submission
from judger.runner.compiler import Compiler


def test_compiled_artifacts_land_in_build_dir(host_invoker, tmp_path):
    compiler = Compiler(host_invoker, tmp_path / "work", time_limit_ms=10000)
    sub = Submission(id="s1", language="python3", source=program("add.py"))
    result, compiled = compiler.compile(sub, PYTHON)
    assert result.ok
    assert result.exit_code == 0
    assert compiled.compiled_artifact == result.artifact_dir
    assert [p.name for p in compiled.compiled_artifact.iterdir()] == ["main.py"]
    assert sub.compiled_artifact is None
    Compiler.discard(compiled)
    assert not result.artifact_dir.exists()
    assert list((tmp_path / "work").iterdir()) == []


def test_compile_failure(host_invoker, tmp_path):
    compiler = Compiler(host_invoker, tmp_path / "work", time_limit_ms=10000)
    sub = Submission(id="s2", language="python3", source="print(\n")
    result, same = compiler.compile(sub, PYTHON)
    assert not result.ok
    assert result.exit_code != 0
    assert result.output
    assert result.artifact_dir is None
    assert same is sub
    assert list((tmp_path / "work").iterdir()) == []


def test_compile_timeout(host_invoker, tmp_path):
    slow = replace(PYTHON, name="slow", compile_cmd=(PYTHON.run_cmd[0], "-c", "import time; time.sleep(10)"))
    compiler = Compiler(host_invoker, tmp_path / "work", time_limit_ms=500)
    result, _ = compiler.compile(Submission(id="s3", language="slow", source=""), slow)
    assert not result.ok
    assert result.timed_out


def test_interpreted_source_is_the_artifact(host_invoker, tmp_path):
    compiler = Compiler(host_invoker, tmp_path / "work")
    result, compiled = compiler.compile(Submission(id="s4", language="py", source="print(1)\n"), PYTHON_SCRIPT)
    assert result.ok
    assert (compiled.compiled_artifact / "main.py").read_text() == "print(1)\n"
    Compiler.discard(compiled)
