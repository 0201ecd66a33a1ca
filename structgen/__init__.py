"""
structgen
=========
Resilient structured generation over an unreliable text-generation backend:
token budgets, history compaction, retry with structural validation and
quality-gated n-best selection.

Basic usage:
    from structgen import Pipeline, PipelineOptions, UnifiedGenerationClient, load_config

    pipeline = Pipeline(UnifiedGenerationClient(), load_config())
    result = asyncio.run(pipeline.run_pipeline(prompt, "S1",
                                               PipelineOptions(session_id="u-42")))
    if result.ok:
        print(result.data)
    else:
        print(result.error_code, result.user_message)
"""

from .models import (
    Stage, RunTier, Role, StageBudget, TokenEstimate, BudgetStatus,
    OptimizationAction, OptimizationStrategy, ConversationMessage,
    CompactionResult, GenerationConfig, GenerationAttempt, QualityIssue,
    Severity, IssueArea, Variant,
)
from .errors import (
    ErrorCode, StructGenError, ConfigurationError, TransientBackendError,
    MalformedOutputError, SemanticQualityError,
)
from .config import PipelineConfig, load_config
from .hooks import EventType, HookRegistry
from .tokens import TokenEstimator, estimate_tokens
from .session_store import SessionStore, InMemorySessionStore, SqliteSessionStore
from .budget import BudgetLedger
from .api_clients import GenerationClient, GenerationResult, UnifiedGenerationClient
from .cancellation import CancellationToken
from .history import CompactionOptions, HistoryCompactor
from .structural import decode_json, schema_validator
from .retry import RetryOptions, RetryOrchestrator, RetryOutcome
from .quality import QualityGateEngine, QualityGateResult
from .stage_checks import default_engine
from .selector import SelectionOutcome, VariantSelector
from .pipeline import Pipeline, PipelineOptions, PipelineResult

__version__ = "0.1.0"

__all__ = [
    # ── Data model ───────────────────────────────────────────────────────────
    "Stage", "RunTier", "Role", "StageBudget", "TokenEstimate", "BudgetStatus",
    "OptimizationAction", "OptimizationStrategy", "ConversationMessage",
    "CompactionResult", "GenerationConfig", "GenerationAttempt", "QualityIssue",
    "Severity", "IssueArea", "Variant",
    # ── Errors ───────────────────────────────────────────────────────────────
    "ErrorCode", "StructGenError", "ConfigurationError", "TransientBackendError",
    "MalformedOutputError", "SemanticQualityError",
    # ── Components ───────────────────────────────────────────────────────────
    "PipelineConfig", "load_config", "EventType", "HookRegistry",
    "TokenEstimator", "estimate_tokens",
    "SessionStore", "InMemorySessionStore", "SqliteSessionStore",
    "BudgetLedger", "GenerationClient", "GenerationResult", "UnifiedGenerationClient",
    "CancellationToken", "CompactionOptions", "HistoryCompactor",
    "decode_json", "schema_validator",
    "RetryOptions", "RetryOrchestrator", "RetryOutcome",
    "QualityGateEngine", "QualityGateResult", "default_engine",
    "SelectionOutcome", "VariantSelector",
    "Pipeline", "PipelineOptions", "PipelineResult",
]
