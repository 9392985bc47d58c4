import os
import sys

import pytest

from judger.core.errors import CheckerError, ConfigError
from judger.core.models import CheckerSpec
from judger.services.checkers import check, check_exact, check_lines, check_tokens, validate


def test_exact_is_byte_for_byte():
    assert check_exact(b"4\n", b"4\n")[0]
    ok, msg = check_exact(b"4\n", b"4")
    assert not ok
    assert "byte 1" in msg
    assert not check_exact(b"4\n", b"4 \n")[0]


def test_lines_ignores_trailing_whitespace():
    assert check_lines(b"1 2\n3\n", b"1 2   \n3\n\n\n")[0]
    assert check_lines(b"a\r\nb", b"a\nb\n")[0]
    assert not check_lines(b"1\n2\n", b"1\n")[0]
    assert not check_lines(b"1 2\n", b"1  2\n")[0]


def test_tokens():
    assert check_tokens(b"1 2\n3\n", b"1\n2 3")[0]
    assert not check_tokens(b"1 2 3", b"1 2")[0]
    assert not check_tokens(b"1 2", b"1 3")[0]


def test_unknown_checker():
    with pytest.raises(ConfigError):
        check(CheckerSpec(name="fuzzy"), b"", b"", b"")


@pytest.fixture
def checker_script(tmp_path):
    script = tmp_path / "checker.py"
    script.write_text(
        f"#!{sys.executable}\n"
        "import sys\n"
        "inp, exp, act = (open(p, 'rb').read() for p in sys.argv[-3:])\n"
        "if b'crash' in inp:\n"
        "    sys.exit(3)\n"
        "if exp.split() == act.split():\n"
        "    sys.exit(0)\n"
        "print('numbers differ')\n"
        "sys.exit(1)\n"
    )
    os.chmod(script, 0o755)
    return script


def test_program_checker_protocol(checker_script):
    spec = CheckerSpec.parse({"path": str(checker_script)})
    assert spec.name == "program"
    assert check(spec, b"", b"1 2", b"1\n2\n") == (True, "")
    ok, msg = check(spec, b"", b"1 2", b"1 3")
    assert not ok
    assert msg == "numbers differ"


def test_program_checker_failure(checker_script):
    spec = CheckerSpec(name="program", path=checker_script)
    with pytest.raises(CheckerError):
        check(spec, b"crash", b"", b"")


def test_missing_program_checker(tmp_path):
    with pytest.raises(CheckerError):
        check(CheckerSpec(name="program", path=tmp_path / "nope"), b"", b"", b"")


def test_validate(tmp_path):
    assert validate(None) == CheckerSpec()
    assert validate(CheckerSpec(name="tokens")).name == "tokens"
    assert validate(CheckerSpec(name="program", path=tmp_path / "chk")).path == tmp_path / "chk"
    with pytest.raises(ConfigError):
        validate(CheckerSpec(name="nope"))
    with pytest.raises(ConfigError):
        validate(CheckerSpec(name="program"))
