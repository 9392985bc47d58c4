from __future__ import annotations
from typing import Sequence

from ..core.models import JudgeSummary, Verdict, VerdictKind


def summarize(verdicts: Sequence[Verdict], max_points: float = 100.0, partial: bool = False) -> JudgeSummary:
    """
    Overall verdict is the worst one by priority (IE > CE > TLE > MLE > RE > OLE > WA > AC).
    Points are all-or-nothing unless `partial`, which scores by fraction passed.
    """
    total = len(verdicts)
    passed = sum(1 for v in verdicts if v.kind is VerdictKind.ACCEPTED)
    if total:
        kind = max((v.kind for v in verdicts), key=lambda k: k.priority)
    else:
        kind = VerdictKind.ACCEPTED

    if partial:
        points = max_points * passed / total if total else 0.0
    else:
        points = float(max_points) if total and passed == total else 0.0

    return JudgeSummary(
        kind=kind,
        verdicts=tuple(verdicts),
        passed=passed,
        total=total,
        time_ms=sum(v.time_ms for v in verdicts),
        memory_bytes=max((v.memory_bytes for v in verdicts), default=0),
        points=points,
    )
