"""
Core Models & Types
===================
Shared enums and dataclasses for the structured-generation pipeline:
stages, tiers, token estimates, budget views, conversation messages,
compaction results, generation attempts, variants and quality issues.

Everything here is created and discarded inside a single pipeline
invocation, except StageBudget (static configuration).
"""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional, Union


# ─────────────────────────────────────────────
# Enums
# ─────────────────────────────────────────────

class Stage(str, Enum):
    """Pipeline stage kinds. Each has its own budget, checks and sampling."""
    S0 = "S0"   # goal clarification
    S1 = "S1"   # knowledge framework
    S2 = "S2"   # system dynamics
    S3 = "S3"   # action plan
    S4 = "S4"   # progress analysis


class RunTier(str, Enum):
    LITE = "Lite"
    PRO = "Pro"
    REVIEW = "Review"


class Role(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


class OptimizationAction(str, Enum):
    PROCEED = "proceed"
    COMPACT_NOW = "compact_now"
    REDUCE_EXAMPLES = "reduce_examples"
    USE_SHORTER_PROMPT = "use_shorter_prompt"


class Priority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class Severity(str, Enum):
    BLOCKER = "blocker"
    WARN = "warn"


class IssueArea(str, Enum):
    SCHEMA = "schema"
    COVERAGE = "coverage"
    CONSISTENCY = "consistency"
    EVIDENCE = "evidence"
    ACTIONABILITY = "actionability"


StageLike = Union[Stage, str]


def as_stage(stage: StageLike) -> Stage:
    """Coerce "S1" / Stage.S1 to Stage. Raises ValueError for unknown stages."""
    if isinstance(stage, Stage):
        return stage
    return Stage(str(stage).upper())


# ─────────────────────────────────────────────
# Budget types
# ─────────────────────────────────────────────

@dataclass(frozen=True)
class StageBudget:
    max_per_turn: int
    max_total: int
    warning_threshold: int


@dataclass(frozen=True)
class TokenBreakdown:
    system_prompt: int = 0
    context: int = 0
    examples: int = 0
    user_input: int = 0


@dataclass(frozen=True)
class TokenEstimate:
    prompt_tokens: int
    estimated_output_tokens: int
    total: int
    breakdown: TokenBreakdown = field(default_factory=TokenBreakdown)

    @classmethod
    def build(cls, system_prompt: int = 0, context: int = 0, examples: int = 0,
              user_input: int = 0, estimated_output: int = 0) -> "TokenEstimate":
        """Assemble an estimate from its parts; prompt = sum of the breakdown."""
        prompt = system_prompt + context + examples + user_input
        return cls(
            prompt_tokens=prompt,
            estimated_output_tokens=estimated_output,
            total=prompt + estimated_output,
            breakdown=TokenBreakdown(system_prompt, context, examples, user_input),
        )


@dataclass(frozen=True)
class BudgetStatus:
    """Derived view over the ledger for one (session, stage)."""
    stage: Stage
    used: int
    remaining: int
    max_total: int
    utilization_rate: float
    is_near_limit: bool


@dataclass(frozen=True)
class OptimizationStrategy:
    """A recommendation only. The ledger never applies it."""
    action: OptimizationAction
    reason: str
    expected_savings: int
    priority: Priority


# ─────────────────────────────────────────────
# Conversation types
# ─────────────────────────────────────────────

@dataclass(frozen=True)
class ConversationMessage:
    role: Role
    content: str
    id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    timestamp: float = field(default_factory=time.time)

    @classmethod
    def user(cls, content: str) -> "ConversationMessage":
        return cls(Role.USER, content)

    @classmethod
    def assistant(cls, content: str) -> "ConversationMessage":
        return cls(Role.ASSISTANT, content)


@dataclass
class CompactionResult:
    compacted_messages: list[ConversationMessage]
    summary: str
    was_compacted: bool
    original_tokens: int
    compacted_tokens: int
    compression_ratio: float

    @classmethod
    def unchanged(cls, messages: list[ConversationMessage], tokens: int) -> "CompactionResult":
        return cls(
            compacted_messages=messages,
            summary="",
            was_compacted=False,
            original_tokens=tokens,
            compacted_tokens=tokens,
            compression_ratio=1.0,
        )


# ─────────────────────────────────────────────
# Generation types
# ─────────────────────────────────────────────

@dataclass(frozen=True)
class GenerationConfig:
    temperature: float = 0.8
    max_output_tokens: int = 8192
    top_p: Optional[float] = 0.9
    top_k: Optional[int] = 40

    def with_temperature(self, temperature: float) -> "GenerationConfig":
        return GenerationConfig(
            temperature=temperature,
            max_output_tokens=self.max_output_tokens,
            top_p=self.top_p,
            top_k=self.top_k,
        )


@dataclass
class GenerationAttempt:
    """One iteration of the retry loop. Exactly one of raw_output/error is set."""
    attempt_number: int
    config: GenerationConfig
    raw_output: Optional[str] = None
    error: Optional[str] = None
    error_code: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.error is None


@dataclass(frozen=True)
class QualityIssue:
    severity: Severity
    area: IssueArea
    hint: str
    target_path: str

    @property
    def is_blocker(self) -> bool:
        return self.severity == Severity.BLOCKER

    def to_dict(self) -> dict:
        return {
            "severity": self.severity.value,
            "area": self.area.value,
            "hint": self.hint,
            "target_path": self.target_path,
        }


@dataclass
class Variant:
    """One n-best candidate, owned by the select_best() call that made it."""
    index: int
    config: GenerationConfig
    raw_text: str = ""
    parsed: Any = None
    issues: list[QualityIssue] = field(default_factory=list)
    attempts: int = 0
    passed: bool = False
    excluded_reason: Optional[str] = None

    @property
    def issue_count(self) -> int:
        return len(self.issues)
