from __future__ import annotations
from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING, Any, Dict, List, Mapping, Optional, Tuple

from .errors import ConfigError, UnknownLanguageError

if TYPE_CHECKING:
    from .models import ResourceLimits


@dataclass(frozen=True)
class LanguageSpec:
    """
    How one language is compiled and run inside an arena.

    Commands are argv templates relative to the arena working directory.
    Placeholders: {source} (source file name), {memory_mb} (resolved memory limit).
    """
    name: str
    source_file: str
    run_cmd: Tuple[str, ...]
    compile_cmd: Optional[Tuple[str, ...]] = None
    artifacts: Tuple[str, ...] = ()
    limits: Dict[str, Any] = field(default_factory=dict)
    oom_markers: Tuple[str, ...] = ()

    @property
    def compiled(self) -> bool:
        return self.compile_cmd is not None

    def _render(self, template: Tuple[str, ...], memory_mb: int) -> List[str]:
        try:
            return [part.format(source=self.source_file, memory_mb=memory_mb) for part in template]
        except (KeyError, IndexError) as e:
            raise ConfigError(f"bad command template for {self.name}: {e}", language=self.name)

    def render_run(self, limits: "ResourceLimits") -> List[str]:
        return self._render(self.run_cmd, limits.memory_mb)

    def render_compile(self, memory_mb: int) -> List[str]:
        if self.compile_cmd is None:
            return []
        return self._render(self.compile_cmd, memory_mb)


# Mirrors the judging images: one toolchain per image, nobody user, /sandbox workdir.
BUILTIN_LANGUAGES: Dict[str, LanguageSpec] = {
    "java": LanguageSpec(
        name="java",
        source_file="Main.java",
        compile_cmd=("javac", "-J-Xmx512m", "-J-XX:+UseSerialGC", "-encoding", "UTF-8", "{source}"),
        run_cmd=("java", "-Xmx{memory_mb}m", "-Xss64m", "-XX:+UseSerialGC", "-cp", ".", "Main"),
        artifacts=("*.class",),
        # the JVM spawns GC/JIT threads which count against pids.max
        limits={"max_processes": 64, "max_open_files": 256},
        oom_markers=("java.lang.OutOfMemoryError",),
    ),
    "c": LanguageSpec(
        name="c",
        source_file="main.c",
        compile_cmd=("gcc", "-std=c99", "-O2", "-o", "main", "{source}", "-lm"),
        run_cmd=("./main",),
        artifacts=("main",),
    ),
    "c11": LanguageSpec(
        name="c11",
        source_file="main.c",
        compile_cmd=("gcc", "-std=c11", "-O2", "-o", "main", "{source}", "-lm"),
        run_cmd=("./main",),
        artifacts=("main",),
    ),
    "c++17": LanguageSpec(
        name="c++17",
        source_file="main.cpp",
        compile_cmd=("g++", "-std=c++17", "-O2", "-o", "main", "{source}"),
        run_cmd=("./main",),
        artifacts=("main",),
    ),
    "c++20": LanguageSpec(
        name="c++20",
        source_file="main.cpp",
        compile_cmd=("g++", "-std=c++20", "-O2", "-o", "main", "{source}"),
        run_cmd=("./main",),
        artifacts=("main",),
    ),
    "python3": LanguageSpec(
        name="python3",
        source_file="main.py",
        # syntax check only; the source itself is the artifact
        compile_cmd=("python3", "-m", "py_compile", "{source}"),
        run_cmd=("python3", "{source}"),
        artifacts=("{source}",),
        oom_markers=("MemoryError",),
    ),
    "javascript": LanguageSpec(
        name="javascript",
        source_file="main.js",
        run_cmd=("node", "{source}"),
    ),
}


def _spec_from_mapping(name: str, raw: Mapping[str, Any], base: Optional[LanguageSpec]) -> LanguageSpec:
    if not isinstance(raw, Mapping):
        raise ConfigError(f"language {name!r} must be a mapping", language=name)

    def _tuple(key: str) -> Optional[Tuple[str, ...]]:
        v = raw.get(key)
        if v is None:
            return None
        if isinstance(v, str):
            return tuple(v.split())
        return tuple(str(x) for x in v)

    if base is None:
        if "source_file" not in raw or "run_cmd" not in raw:
            raise ConfigError(f"language {name!r} needs source_file and run_cmd", language=name)
        base = LanguageSpec(name=name, source_file=str(raw["source_file"]), run_cmd=_tuple("run_cmd") or ())

    update: Dict[str, Any] = {}
    if "source_file" in raw:
        update["source_file"] = str(raw["source_file"])
    if "run_cmd" in raw:
        update["run_cmd"] = _tuple("run_cmd")
    if "compile_cmd" in raw:
        update["compile_cmd"] = _tuple("compile_cmd")
    if "artifacts" in raw:
        update["artifacts"] = _tuple("artifacts") or ()
    if "limits" in raw:
        update["limits"] = dict(raw.get("limits") or {})
    if "oom_markers" in raw:
        update["oom_markers"] = _tuple("oom_markers") or ()
    return replace(base, name=name, **update)


def build_language_table(overrides: Optional[Mapping[str, Any]] = None) -> Dict[str, LanguageSpec]:
    """Built-in table merged with `languages:` from YAML (partial entries patch a built-in)."""
    table = dict(BUILTIN_LANGUAGES)
    for name, raw in (overrides or {}).items():
        if isinstance(raw, LanguageSpec):
            table[name] = raw
            continue
        table[name] = _spec_from_mapping(name, raw, table.get(name))
    return table


def get_language(table: Mapping[str, LanguageSpec], name: str) -> LanguageSpec:
    try:
        return table[name]
    except KeyError:
        raise UnknownLanguageError(f"language {name!r} is not supported", language=name) from None
