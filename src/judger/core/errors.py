from __future__ import annotations
from typing import Any, Dict, Optional


class JudgerError(Exception):
    """Base class for harness errors. Program faults are verdicts, not exceptions."""

    code: str = "judger_error"

    def __init__(self, detail: str, **context: Any):
        self.detail = detail
        self.context: Dict[str, Any] = context
        super().__init__(detail)

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.code, "detail": self.detail, "context": self.context or None}


class ConfigError(JudgerError):
    """Bad limits or configuration; rejected before anything runs."""

    code = "config_error"


class UnknownLanguageError(ConfigError):
    code = "unknown_language"


class SandboxStartError(JudgerError):
    """The isolated environment could not be entered. Retried, then reported as InternalError."""

    code = "sandbox_start_error"


class CheckerError(JudgerError):
    """A custom checker crashed or answered outside its protocol."""

    code = "checker_error"


class JudgeCancelled(JudgerError):
    code = "cancelled"

    def __init__(self, detail: str = "judgment cancelled", reason: Optional[str] = None):
        super().__init__(detail, reason=reason)
