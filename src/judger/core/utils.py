from __future__ import annotations
import random, string, time
from typing import Optional


def new_run_id(prefix: str = "run") -> str:
    suf = "".join(random.choice(string.hexdigits.lower()) for _ in range(8))
    return f"{prefix}-{int(time.time())}-{suf}"


def infer_language(filename: str) -> Optional[str]:
    name = filename.lower()
    if name.endswith(".java"): return "java"
    if name.endswith(".cpp") or name.endswith(".cc"): return "c++17"
    if name.endswith(".c"): return "c"
    if name.endswith(".py"): return "python3"
    if name.endswith(".js"): return "javascript"
    return None


def bounded_text(data: bytes | str, limit: int = 2000) -> str:
    """Decode and cut diagnostic text to `limit` characters for submitter-facing messages."""
    text = data.decode("utf-8", errors="replace") if isinstance(data, bytes) else data
    if len(text) <= limit:
        return text
    return text[:limit] + f"\n... [{len(text) - limit} more characters truncated]"
