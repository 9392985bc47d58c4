from __future__ import annotations

# Output comparison strategies. A checker returns (accepted, message); it raises
# CheckerError only when it cannot decide, which the orchestrator treats as a
# harness fault.

import subprocess
import tempfile
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple

from ..core.errors import CheckerError, ConfigError
from ..core.models import CheckerSpec
from ..core.utils import bounded_text

CheckResult = Tuple[bool, str]

CHECKER_TIMEOUT_S = 10.0


def check_exact(expected: bytes, actual: bytes) -> CheckResult:
    if expected == actual:
        return True, ""
    # first differing offset is enough for a log line
    n = min(len(expected), len(actual))
    at = next((i for i in range(n) if expected[i] != actual[i]), n)
    return False, f"output differs at byte {at} (expected {len(expected)} bytes, got {len(actual)})"


def _lines(data: bytes) -> List[bytes]:
    lines = [line.rstrip() for line in data.split(b"\n")]
    while lines and not lines[-1]:
        lines.pop()
    return lines


def check_lines(expected: bytes, actual: bytes) -> CheckResult:
    exp, act = _lines(expected), _lines(actual)
    for i, (e, a) in enumerate(zip(exp, act), start=1):
        if e != a:
            return False, f"line {i} differs"
    if len(exp) != len(act):
        return False, f"expected {len(exp)} lines, got {len(act)}"
    return True, ""


def check_tokens(expected: bytes, actual: bytes) -> CheckResult:
    exp, act = expected.split(), actual.split()
    for i, (e, a) in enumerate(zip(exp, act), start=1):
        if e != a:
            return False, f"token {i} differs"
    if len(exp) != len(act):
        return False, f"expected {len(exp)} tokens, got {len(act)}"
    return True, ""


BUILTIN_CHECKERS: Dict[str, Callable[[bytes, bytes], CheckResult]] = {
    "exact": check_exact,
    "lines": check_lines,
    "tokens": check_tokens,
}


def validate(spec: Optional[CheckerSpec]) -> CheckerSpec:
    """Reject checker configuration that could never produce an answer."""
    spec = spec or CheckerSpec()
    if spec.name == "program":
        if spec.path is None:
            raise ConfigError("program checker needs a path", checker=spec.name)
    elif spec.name not in BUILTIN_CHECKERS:
        raise ConfigError(f"unknown checker {spec.name!r}", checker=spec.name)
    return spec


def run_program_checker(spec: CheckerSpec, input_bytes: bytes, expected: bytes, actual: bytes) -> CheckResult:
    """
    External checker protocol: `checker [args] input expected actual`.
    Exit 0 accepts, exit 1 rejects, anything else is a checker failure.
    """
    validate(spec)
    with tempfile.TemporaryDirectory(prefix="judger-check-") as tmp:
        files = []
        for name, data in (("input", input_bytes), ("expected", expected), ("actual", actual)):
            p = Path(tmp) / name
            p.write_bytes(data)
            files.append(str(p))
        try:
            proc = subprocess.run(
                [str(spec.path), *spec.args, *files],
                stdin=subprocess.DEVNULL,
                capture_output=True,
                timeout=CHECKER_TIMEOUT_S,
            )
        except subprocess.TimeoutExpired:
            raise CheckerError(f"checker timed out after {CHECKER_TIMEOUT_S:.0f}s", checker=str(spec.path))
        except OSError as e:
            raise CheckerError(f"cannot run checker: {e}", checker=str(spec.path)) from e

    message = bounded_text(proc.stdout or proc.stderr, 500).strip()
    if proc.returncode == 0:
        return True, message
    if proc.returncode == 1:
        return False, message
    raise CheckerError(
        f"checker exited with {proc.returncode}",
        checker=str(spec.path),
        stderr=bounded_text(proc.stderr, 500),
    )


def check(spec: Optional[CheckerSpec], input_bytes: bytes, expected: bytes, actual: bytes) -> CheckResult:
    spec = validate(spec)
    if spec.name == "program":
        return run_program_checker(spec, input_bytes, expected, actual)
    return BUILTIN_CHECKERS[spec.name](expected, actual)
