"""
Default per-stage schemas and quality checks.
=============================================
S0  goal clarification       {status, ai_question?, goal?, recommendations?}
S1  knowledge framework      [{id, title, summary, children?}]
S2  system dynamics          {mermaidChart, metaphor, nodes?[{id, title}]}
S3  action plan              {actionPlan[], kpis[], strategySpec?{metrics[]}, povTags?}
S4  progress analysis        {analysis, suggestions[], encouragement?, referencedMetricIds?}

Schemas are deliberately lenient about extra properties: models add
fields freely and rejecting them would only burn retries.

Cross-stage context keys understood by the default checks:
    framework          S1 output (for S2)
    nodes              S2 nodes, list of {id, ...} (for S3)
    strategy_metrics   S3 strategySpec.metrics (for S4)
"""
from __future__ import annotations

import re
from typing import Any, Iterable, Iterator, Optional

from .models import IssueArea, QualityIssue, Severity, Stage, StageLike, as_stage
from .quality import QualityContext, QualityGateEngine, blocker, warn
from .structural import StructuralValidator, schema_validator, validate_schema

# ─────────────────────────────────────────────────────────────────────────────
# Schemas
# ─────────────────────────────────────────────────────────────────────────────

_NON_EMPTY_STRING = {"type": "string", "minLength": 1}

_FRAMEWORK_NODE: dict = {
    "type": "object",
    "required": ["id", "title", "summary"],
    "properties": {
        "id": _NON_EMPTY_STRING,
        "title": _NON_EMPTY_STRING,
        "summary": {"type": "string"},
        "children": {"type": "array", "items": {"$ref": "#/definitions/node"}},
    },
}

STAGE_SCHEMAS: dict[Stage, dict] = {
    Stage.S0: {
        "type": "object",
        "required": ["status"],
        "properties": {
            "status": {"enum": ["clarification_needed", "clarified", "recommendations_provided"]},
            "ai_question": {"type": ["string", "null"]},
            "goal": {"type": ["string", "null"]},
            "recommendations": {"type": ["array", "null"]},
        },
    },
    Stage.S1: {
        "definitions": {"node": _FRAMEWORK_NODE},
        "type": "array",
        "minItems": 1,
        "items": {"$ref": "#/definitions/node"},
    },
    Stage.S2: {
        "type": "object",
        "required": ["mermaidChart", "metaphor"],
        "properties": {
            "mermaidChart": _NON_EMPTY_STRING,
            "metaphor": {"type": "string"},
            "nodes": {
                "type": "array",
                "items": {
                    "type": "object",
                    "required": ["id", "title"],
                    "properties": {"id": _NON_EMPTY_STRING, "title": {"type": "string"}},
                },
            },
        },
    },
    Stage.S3: {
        "type": "object",
        "required": ["actionPlan", "kpis"],
        "properties": {
            "actionPlan": {
                "type": "array",
                "minItems": 1,
                "items": {
                    "type": "object",
                    "required": ["id", "text", "isCompleted"],
                    "properties": {
                        "id": _NON_EMPTY_STRING,
                        "text": _NON_EMPTY_STRING,
                        "isCompleted": {"type": "boolean"},
                    },
                },
            },
            "kpis": {"type": "array", "items": {"type": "string"}},
            "strategySpec": {
                "type": "object",
                "properties": {
                    "metrics": {
                        "type": "array",
                        "items": {
                            "type": "object",
                            "required": ["metricId"],
                            "properties": {"metricId": _NON_EMPTY_STRING},
                        },
                    },
                },
            },
            "povTags": {"type": "array", "items": {"type": "string"}},
        },
    },
    Stage.S4: {
        "type": "object",
        "required": ["analysis", "suggestions"],
        "properties": {
            "analysis": _NON_EMPTY_STRING,
            "suggestions": {"type": "array", "items": {"type": "string"}},
            "encouragement": {"type": "string"},
            "referencedMetricIds": {"type": "array", "items": {"type": "string"}},
        },
    },
}


def schema_for(stage: StageLike) -> dict:
    return STAGE_SCHEMAS[as_stage(stage)]


def validator_for(stage: StageLike) -> StructuralValidator:
    """Default structural predicate for a stage (compiled JSON Schema)."""
    return schema_validator(schema_for(stage))


# ─────────────────────────────────────────────────────────────────────────────
# Id helpers
# ─────────────────────────────────────────────────────────────────────────────

def normalize_id(value: Any) -> str:
    """' Core Concept 1 ' → 'core-concept-1'; 'A/B' → 'a-b'."""
    text = str(value).strip().lower()
    text = re.sub(r"\s+", "-", text)
    return re.sub(r"[^a-z0-9\-]", "-", text)


def extract_framework_ids(framework: Any) -> list[str]:
    """Every `id` in a framework tree, depth first, walking `children`."""
    ids: list[str] = []

    def walk(node: Any) -> None:
        if isinstance(node, dict):
            if isinstance(node.get("id"), str):
                ids.append(node["id"])
            for child in node.get("children") or ():
                walk(child)

    if isinstance(framework, list):
        for node in framework:
            walk(node)
    else:
        walk(framework)
    return ids


def coverage_severity(total_ids: int, missing_count: int) -> Severity:
    """Small frameworks (≤ 8 ids) may miss one id; beyond that > 10% missing blocks."""
    if missing_count == 0:
        return Severity.WARN
    if total_ids <= 8 and missing_count <= 1:
        return Severity.WARN
    ratio = missing_count / total_ids if total_ids > 0 else 1.0
    return Severity.BLOCKER if ratio > 0.10 else Severity.WARN


# ─────────────────────────────────────────────────────────────────────────────
# Checks
# ─────────────────────────────────────────────────────────────────────────────

def make_schema_check(stage: Stage):
    schema = STAGE_SCHEMAS[stage]

    def check_schema(data: Any, context: Optional[QualityContext]) -> Iterator[QualityIssue]:
        result = validate_schema(data, schema)
        if not result.passed:
            yield blocker(IssueArea.SCHEMA, result.details, stage.value)

    check_schema.__name__ = f"check_{stage.value.lower()}_schema"
    return check_schema


def check_framework_coverage(data: Any, context: Optional[QualityContext]) -> Iterator[QualityIssue]:
    """S2 ← S1: framework ids must appear among the system nodes."""
    if not context or not context.get("framework") or not isinstance(data, dict):
        return
    nodes = data.get("nodes")
    if not isinstance(nodes, list):
        return
    framework_ids = {normalize_id(i) for i in extract_framework_ids(context["framework"])}
    node_ids = {normalize_id(n.get("id", "")) for n in nodes if isinstance(n, dict)}
    missing = sorted(framework_ids - node_ids)
    if not missing:
        return
    severity = coverage_severity(len(framework_ids), len(missing))
    yield QualityIssue(
        severity=severity,
        area=IssueArea.CONSISTENCY if severity == Severity.BLOCKER else IssueArea.COVERAGE,
        hint=(f"Framework ids not found in nodes: {', '.join(missing)} "
              f"({len(missing)}/{len(framework_ids)} missing)"),
        target_path="nodes",
    )


def _metrics(data: Any) -> Optional[list]:
    if not isinstance(data, dict):
        return None
    spec = data.get("strategySpec")
    if not isinstance(spec, dict) or not isinstance(spec.get("metrics"), list):
        return None
    return [m for m in spec["metrics"] if isinstance(m, dict)]


def check_node_coverage(data: Any, context: Optional[QualityContext]) -> Iterator[QualityIssue]:
    """S3 ← S2: every system node needs a metric."""
    metrics = _metrics(data)
    if metrics is None or not context or not context.get("nodes"):
        return
    node_ids = {normalize_id(n["id"]) for n in context["nodes"] if isinstance(n, dict) and "id" in n}
    metric_ids = {normalize_id(m.get("metricId", "")) for m in metrics}
    missing = sorted(node_ids - metric_ids)
    if missing:
        yield blocker(IssueArea.COVERAGE, f"Uncovered nodes: {', '.join(missing)}",
                      "strategySpec.metrics")


_ACTIONABILITY_FIELDS = (
    ("triggers", "metric requires at least 1 trigger"),
    ("diagnosis", "metric requires at least 1 diagnosis step"),
    ("options", "metric requires options (A/B/C)"),
)


def check_metric_actionability(data: Any, context: Optional[QualityContext]) -> Iterator[QualityIssue]:
    """S3: each metric must say when to act, how to diagnose, what to do and when to stop."""
    for metric in _metrics(data) or ():
        path = f"strategySpec.metrics({metric.get('metricId')})"
        for name, hint in _ACTIONABILITY_FIELDS:
            value = metric.get(name)
            if not isinstance(value, list) or not value:
                yield blocker(IssueArea.ACTIONABILITY, hint, f"{path}.{name}")
        if not metric.get("recovery"):
            yield blocker(IssueArea.ACTIONABILITY, "metric requires recovery window", f"{path}.recovery")
        if not metric.get("stopLoss"):
            yield blocker(IssueArea.ACTIONABILITY, "metric requires stopLoss", f"{path}.stopLoss")


def check_metric_evidence(data: Any, context: Optional[QualityContext]) -> Iterator[QualityIssue]:
    for metric in _metrics(data) or ():
        if not metric.get("evidence"):
            yield warn(IssueArea.EVIDENCE, "evidence is recommended",
                       f"strategySpec.metrics({metric.get('metricId')}).evidence")


def check_pov_tags(data: Any, context: Optional[QualityContext]) -> Iterator[QualityIssue]:
    if _metrics(data) is None:
        return
    tags = data.get("povTags")
    if not isinstance(tags, list) or len(tags) < 2:
        yield warn(IssueArea.CONSISTENCY, "At least two POVs are recommended", "povTags")


def check_metric_references(data: Any, context: Optional[QualityContext]) -> Iterable[QualityIssue]:
    """S4 ← S3: referenced metric ids must exist in the strategy."""
    if not context or context.get("strategy_metrics") is None or not isinstance(data, dict):
        return []
    referenced = data.get("referencedMetricIds")
    if not isinstance(referenced, list):
        return []
    known = {normalize_id(m.get("metricId", "")) for m in context["strategy_metrics"]
             if isinstance(m, dict)}
    unknown = [str(r) for r in referenced if normalize_id(r) not in known]
    if not unknown:
        return []
    return [warn(IssueArea.CONSISTENCY, f"References unknown metric ids: {', '.join(unknown)}",
                 "referencedMetricIds")]


def default_engine() -> QualityGateEngine:
    """Engine preloaded with the schema check for every stage plus the cross-stage checks."""
    engine = QualityGateEngine()
    for stage in Stage:
        engine.register(stage, make_schema_check(stage))
    engine.register(Stage.S2, check_framework_coverage)
    engine.register(Stage.S3, check_node_coverage)
    engine.register(Stage.S3, check_metric_actionability)
    engine.register(Stage.S3, check_metric_evidence)
    engine.register(Stage.S3, check_pov_tags)
    engine.register(Stage.S4, check_metric_references)
    return engine
