from __future__ import annotations
from dataclasses import asdict, dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

from .errors import UnknownLanguageError
from .languages import LanguageSpec
from .utils import infer_language, new_run_id

Payload = Union[str, bytes]


def _as_bytes(value: Optional[Payload]) -> Optional[bytes]:
    if value is None or isinstance(value, bytes):
        return value
    return value.encode("utf-8")


class VerdictKind(str, Enum):
    ACCEPTED = "AC"
    WRONG_ANSWER = "WA"
    TIME_LIMIT_EXCEEDED = "TLE"
    MEMORY_LIMIT_EXCEEDED = "MLE"
    RUNTIME_ERROR = "RE"
    COMPILE_ERROR = "CE"
    OUTPUT_LIMIT_EXCEEDED = "OLE"
    INTERNAL_ERROR = "IE"

    @property
    def title(self) -> str:
        return _VERDICT_INFO[self][0]

    @property
    def description(self) -> str:
        return _VERDICT_INFO[self][1]

    @property
    def priority(self) -> int:
        """Aggregation weight: the highest priority among test verdicts wins the summary."""
        return _VERDICT_INFO[self][2]

    @property
    def is_program_fault(self) -> bool:
        return self not in (VerdictKind.ACCEPTED, VerdictKind.INTERNAL_ERROR)


_VERDICT_INFO: Dict[VerdictKind, Tuple[str, str, int]] = {
    VerdictKind.ACCEPTED: ("Accepted", "Your solution produced the correct output.", 0),
    VerdictKind.WRONG_ANSWER: ("Wrong Answer", "Your solution produced incorrect output.", 1),
    VerdictKind.OUTPUT_LIMIT_EXCEEDED: ("Output Limit Exceeded", "Your solution wrote too much output.", 2),
    VerdictKind.RUNTIME_ERROR: ("Runtime Error", "Your solution crashed during execution.", 3),
    VerdictKind.MEMORY_LIMIT_EXCEEDED: ("Memory Limit Exceeded", "Your solution exceeded the memory limit.", 4),
    VerdictKind.TIME_LIMIT_EXCEEDED: ("Time Limit Exceeded", "Your solution exceeded the time limit.", 5),
    VerdictKind.COMPILE_ERROR: ("Compilation Error", "Your solution failed to compile.", 6),
    VerdictKind.INTERNAL_ERROR: ("Internal Error", "An internal judging error occurred. Please try again.", 7),
}


@dataclass(frozen=True)
class CheckerSpec:
    name: str = "exact"          # exact | lines | tokens | program
    path: Optional[Path] = None  # executable for name == "program"
    args: Tuple[str, ...] = ()

    @classmethod
    def parse(cls, value: Union[None, str, Dict[str, Any], "CheckerSpec"]) -> Optional["CheckerSpec"]:
        if value is None or isinstance(value, CheckerSpec):
            return value
        if isinstance(value, str):
            return cls(name=value)
        path = value.get("path")
        return cls(
            name=str(value.get("name", "program" if path else "exact")),
            path=Path(path) if path else None,
            args=tuple(value.get("args") or ()),
        )


@dataclass(frozen=True)
class ResourceLimits:
    wall_time_ms: int
    memory_bytes: int
    max_output_bytes: int
    max_processes: int
    cpu_time_ms: Optional[int] = None
    network_enabled: bool = False
    max_stderr_bytes: int = 64 * 1024
    max_open_files: int = 64
    stack_bytes: int = 64 * 1024 * 1024

    @property
    def memory_mb(self) -> int:
        return max(1, self.memory_bytes // (1024 * 1024))


@dataclass(frozen=True)
class Submission:
    id: str
    language: str
    source: Union[str, bytes, Path]
    compiled_artifact: Optional[Path] = None

    @classmethod
    def from_file(cls, path: Path, language: Optional[str] = None, id: Optional[str] = None) -> "Submission":
        lang = language or infer_language(path.name)
        if lang is None:
            raise UnknownLanguageError(f"cannot infer language from {path.name!r}", filename=path.name)
        return cls(id=id or new_run_id("sub"), language=lang, source=path)

    def source_bytes(self) -> bytes:
        if isinstance(self.source, Path):
            return self.source.read_bytes()
        return _as_bytes(self.source) or b""


@dataclass(frozen=True)
class TestCase:
    __test__ = False  # keep pytest from collecting the model

    id: str
    input: Payload = b""
    expected_output: Optional[Payload] = None
    checker: Optional[CheckerSpec] = None
    time_limit_ms: Optional[int] = None
    memory_limit_bytes: Optional[int] = None

    def __post_init__(self):
        object.__setattr__(self, "input", _as_bytes(self.input) or b"")
        object.__setattr__(self, "expected_output", _as_bytes(self.expected_output))
        object.__setattr__(self, "checker", CheckerSpec.parse(self.checker))

    def limit_overrides(self) -> Dict[str, Any]:
        return {"time_limit_ms": self.time_limit_ms, "memory_limit_bytes": self.memory_limit_bytes}


@dataclass
class ExecutionRequest:
    submission: Submission
    testcase: TestCase
    limits: ResourceLimits
    command: List[str]
    language: LanguageSpec
    stdin: bytes = b""

    @classmethod
    def for_testcase(cls, submission: Submission, testcase: TestCase, limits: ResourceLimits,
                     language: LanguageSpec) -> "ExecutionRequest":
        return cls(
            submission=submission,
            testcase=testcase,
            limits=limits,
            command=language.render_run(limits),
            language=language,
            stdin=testcase.input,
        )


@dataclass(frozen=True)
class ExecutionOutcome:
    exit_code: Optional[int]
    signal: Optional[int]
    wall_time_ms: int
    cpu_time_ms: int
    peak_memory_bytes: int
    stdout: bytes = b""
    stdout_truncated: bool = False
    stdout_total_bytes: int = 0
    stderr: bytes = b""
    stderr_truncated: bool = False
    time_limit_exceeded: bool = False
    memory_limit_exceeded: bool = False
    harness_error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["stdout"] = self.stdout.decode("utf-8", errors="replace")
        d["stderr"] = self.stderr.decode("utf-8", errors="replace")
        return d


@dataclass(frozen=True)
class CompileResult:
    ok: bool
    exit_code: Optional[int]
    output: str
    wall_time_ms: int = 0
    artifact_dir: Optional[Path] = None
    timed_out: bool = False


@dataclass(frozen=True)
class Verdict:
    testcase_id: str
    kind: VerdictKind
    message: str = ""
    details: Dict[str, Any] = field(default_factory=dict)
    outcome: Optional[ExecutionOutcome] = None
    attempts: int = 1

    @property
    def time_ms(self) -> int:
        return self.outcome.wall_time_ms if self.outcome else 0

    @property
    def memory_bytes(self) -> int:
        return self.outcome.peak_memory_bytes if self.outcome else 0

    def public_view(self) -> Dict[str, Any]:
        """What a submitter is allowed to see: no exit codes, signals or host paths."""
        return {
            "testcase_id": self.testcase_id,
            "verdict": self.kind.value,
            "name": self.kind.title,
            "message": self.message,
            "time_ms": self.time_ms,
            "memory_bytes": self.memory_bytes,
        }

    def to_dict(self) -> Dict[str, Any]:
        d = self.public_view()
        d["details"] = dict(self.details)
        d["attempts"] = self.attempts
        d["outcome"] = self.outcome.to_dict() if self.outcome else None
        return d


@dataclass(frozen=True)
class JudgeSummary:
    kind: VerdictKind
    verdicts: Tuple[Verdict, ...]
    passed: int
    total: int
    time_ms: int
    memory_bytes: int
    points: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "verdict": self.kind.value,
            "passed": self.passed,
            "total": self.total,
            "time_ms": self.time_ms,
            "memory_bytes": self.memory_bytes,
            "points": self.points,
            "testcases": [v.public_view() for v in self.verdicts],
        }
