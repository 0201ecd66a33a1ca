"""
Quality Gate Engine
===================
Semantic checks run after a candidate is structurally valid.

A check is a plain callable `(data, context) -> iterable[QualityIssue]`;
`context` carries earlier stages' outputs for cross-stage checks
(e.g. every framework node referenced by a later stage must exist).
Checks run in registration order. A check that raises is converted into
a single blocker issue so one broken check cannot crash the gate run.

passed == no blocker issues. Warnings are reported but never block.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Mapping, Optional

from .models import IssueArea, QualityIssue, Severity, Stage, StageLike, as_stage
from .tracing import traced_quality_gate

logger = logging.getLogger("structgen.quality")

QualityContext = Mapping[str, Any]
QualityCheck = Callable[[Any, Optional[QualityContext]], Iterable[QualityIssue]]


@dataclass
class QualityGateResult:
    passed: bool
    issues: list[QualityIssue] = field(default_factory=list)

    @property
    def blockers(self) -> list[QualityIssue]:
        return [i for i in self.issues if i.severity == Severity.BLOCKER]

    @property
    def warnings(self) -> list[QualityIssue]:
        return [i for i in self.issues if i.severity == Severity.WARN]

    def to_dict(self) -> dict:
        return {"passed": self.passed, "issues": [i.to_dict() for i in self.issues]}


def blocker(area: IssueArea, hint: str, target_path: str) -> QualityIssue:
    return QualityIssue(Severity.BLOCKER, area, hint, target_path)


def warn(area: IssueArea, hint: str, target_path: str) -> QualityIssue:
    return QualityIssue(Severity.WARN, area, hint, target_path)


class QualityGateEngine:
    """
    Ordered per-stage check registry.

    Usage:
        engine = QualityGateEngine()
        engine.register("S2", check_framework_coverage)
        result = engine.run("S2", candidate, {"framework": s1_output})
    """

    def __init__(self) -> None:
        self._checks: dict[Stage, list[QualityCheck]] = defaultdict(list)

    def register(self, stage: StageLike, check: QualityCheck) -> None:
        self._checks[as_stage(stage)].append(check)

    def checks_for(self, stage: StageLike) -> list[QualityCheck]:
        return list(self._checks.get(as_stage(stage), []))

    def run(self, stage: StageLike, data: Any,
            context: Optional[QualityContext] = None) -> QualityGateResult:
        stage = as_stage(stage)
        checks = self._checks.get(stage, [])
        issues: list[QualityIssue] = []

        with traced_quality_gate(stage.value, len(checks)) as span:
            for check in checks:
                name = getattr(check, "__name__", repr(check))
                try:
                    issues.extend(check(data, context) or ())
                except Exception as e:
                    logger.error(f"[{stage.value}] quality check {name} raised: {e}")
                    issues.append(blocker(
                        IssueArea.SCHEMA, f"Quality check failed to run: {e}", name,
                    ))

            passed = not any(i.is_blocker for i in issues)
            span.set_attribute("quality.passed", passed)
            span.set_attribute("quality.issue_count", len(issues))

        if issues:
            logger.info(
                "[%s] quality gate %s: %d blocker(s), %d warning(s)",
                stage.value, "passed" if passed else "failed",
                sum(1 for i in issues if i.is_blocker),
                sum(1 for i in issues if not i.is_blocker),
            )
        return QualityGateResult(passed=passed, issues=issues)
