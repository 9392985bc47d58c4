from __future__ import annotations
from typing import Any, Dict, Mapping, Optional

from .errors import ConfigError
from .models import ResourceLimits

# option name -> ResourceLimits field
_ALIASES = {
    "time_limit_ms": "wall_time_ms",
    "wall_time_ms": "wall_time_ms",
    "cpu_time_ms": "cpu_time_ms",
    "memory_limit_bytes": "memory_bytes",
    "memory_bytes": "memory_bytes",
    "max_output_bytes": "max_output_bytes",
    "max_processes": "max_processes",
    "network_enabled": "network_enabled",
    "max_stderr_bytes": "max_stderr_bytes",
    "max_open_files": "max_open_files",
    "stack_bytes": "stack_bytes",
}

DEFAULT_LIMITS: Dict[str, Any] = {
    "wall_time_ms": 2000,
    "cpu_time_ms": None,
    "memory_bytes": 256 * 1024 * 1024,
    "max_output_bytes": 16 * 1024 * 1024,
    "max_processes": 64,
    "network_enabled": False,
    "max_stderr_bytes": 64 * 1024,
    "max_open_files": 64,
    "stack_bytes": 64 * 1024 * 1024,
}


def _merge_layer(into: Dict[str, Any], layer: Optional[Mapping[str, Any]], source: str) -> None:
    for key, value in (layer or {}).items():
        if key == "checker":
            # carried by the test case, not by the limit set
            continue
        field = _ALIASES.get(key)
        if field is None:
            raise ConfigError(f"unknown limit option {key!r} in {source}", option=key, source=source)
        if value is None:
            continue
        into[field] = value


def _positive_int(name: str, value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigError(f"{name} must be an integer, got {value!r}", option=name)
    if value <= 0:
        raise ConfigError(f"{name} must be positive, got {value}", option=name)
    return value


def resolve_limits(
    defaults: Optional[Mapping[str, Any]] = None,
    language: Optional[Mapping[str, Any]] = None,
    problem: Optional[Mapping[str, Any]] = None,
) -> ResourceLimits:
    """
    Merge defaults < language defaults < problem/test-case overrides into one
    validated limit set. Pure: enforcement happens in the invoker.
    """
    merged: Dict[str, Any] = dict(DEFAULT_LIMITS)
    _merge_layer(merged, defaults, "defaults")
    _merge_layer(merged, language, "language")
    _merge_layer(merged, problem, "problem")

    resolved: Dict[str, Any] = {}
    for name, value in merged.items():
        if name == "network_enabled":
            if not isinstance(value, bool):
                raise ConfigError(f"network_enabled must be a boolean, got {value!r}", option=name)
            resolved[name] = value
        elif name == "cpu_time_ms" and value is None:
            resolved[name] = None
        else:
            resolved[name] = _positive_int(name, value)

    cpu = resolved["cpu_time_ms"]
    if cpu is not None and cpu > resolved["wall_time_ms"]:
        raise ConfigError(
            f"cpu_time_ms ({cpu}) exceeds wall_time_ms ({resolved['wall_time_ms']})",
            option="cpu_time_ms",
        )
    return ResourceLimits(**resolved)
