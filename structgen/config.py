"""
Pipeline configuration: YAML/JSON file + environment overrides.
================================================================
Read once at startup and treated as immutable for the process lifetime.

File format (YAML or JSON; every key optional):
    max_retries: 3
    request_timeout: 90
    stage_max_retries: {S3: 2}
    stage_budgets:
      S1: {max_per_turn: 4000, max_total: 6000, warning_threshold: 5000}
    compaction:
      max_tokens: 3000
      recent_turns_to_keep: 3
      summary_max_tokens: 500
    variant_counts: {Lite: 1, Pro: 2, Review: 1}
    backoff: {initial_delay: 1.0, max_delay: 10.0, multiplier: 2.0}

Environment overrides (a .env file is honoured via python-dotenv):
    STRUCTGEN_MAX_RETRIES, STRUCTGEN_REQUEST_TIMEOUT,
    STRUCTGEN_RECENT_TURNS, STRUCTGEN_SUMMARY_MAX_TOKENS,
    STRUCTGEN_COMPACTION_MAX_TOKENS, STRUCTGEN_VARIANTS_<TIER>

Usage:
    from structgen.config import load_config
    cfg = load_config("structgen.yml")
    cfg.budget_for("S1").max_total
"""
from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from types import MappingProxyType
from typing import Mapping, Optional

import yaml
from dotenv import load_dotenv

from .models import RunTier, Stage, StageBudget, StageLike, as_stage

logger = logging.getLogger("structgen.config")


DEFAULT_STAGE_BUDGETS: Mapping[Stage, StageBudget] = MappingProxyType({
    Stage.S0: StageBudget(max_per_turn=2000, max_total=8000, warning_threshold=6000),
    Stage.S1: StageBudget(max_per_turn=4000, max_total=6000, warning_threshold=5000),
    Stage.S2: StageBudget(max_per_turn=3000, max_total=5000, warning_threshold=4000),
    Stage.S3: StageBudget(max_per_turn=4000, max_total=8000, warning_threshold=6500),
    Stage.S4: StageBudget(max_per_turn=2000, max_total=4000, warning_threshold=3000),
})

DEFAULT_VARIANT_COUNTS: Mapping[RunTier, int] = MappingProxyType({
    RunTier.LITE: 1,
    RunTier.PRO: 2,
    RunTier.REVIEW: 1,
})


@dataclass(frozen=True)
class PipelineConfig:
    max_retries: int = 3
    request_timeout: float = 90.0
    stage_max_retries: Mapping[Stage, int] = field(default_factory=dict)
    stage_budgets: Mapping[Stage, StageBudget] = field(default_factory=lambda: DEFAULT_STAGE_BUDGETS)
    compaction_max_tokens: int = 3000
    recent_turns_to_keep: int = 3
    summary_max_tokens: int = 500
    variant_counts: Mapping[RunTier, int] = field(default_factory=lambda: DEFAULT_VARIANT_COUNTS)
    initial_delay: float = 1.0
    max_delay: float = 10.0
    backoff_multiplier: float = 2.0

    def budget_for(self, stage: StageLike) -> StageBudget:
        return self.stage_budgets[as_stage(stage)]

    def retries_for(self, stage: StageLike) -> int:
        return self.stage_max_retries.get(as_stage(stage), self.max_retries)

    def variants_for(self, tier: "RunTier | str") -> int:
        return self.variant_counts.get(RunTier(tier), 1)


def _read_file(path: Path) -> dict:
    suffix = path.suffix.lower()
    with open(path, encoding="utf-8") as fh:
        if suffix == ".json":
            data = json.load(fh)
        elif suffix in (".yaml", ".yml"):
            data = yaml.safe_load(fh)
        else:
            raise ValueError(
                f"Unsupported config file extension '{suffix}'. "
                "Supported: .json, .yaml, .yml"
            )
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"Config file '{path.name}' must contain an object at the top level.")
    return data


def config_from_dict(data: dict) -> PipelineConfig:
    """Build a PipelineConfig from a plain dict (file contents)."""
    budgets = dict(DEFAULT_STAGE_BUDGETS)
    for key, raw in (data.get("stage_budgets") or {}).items():
        budgets[as_stage(key)] = StageBudget(
            max_per_turn=int(raw["max_per_turn"]),
            max_total=int(raw["max_total"]),
            warning_threshold=int(raw["warning_threshold"]),
        )

    variants = dict(DEFAULT_VARIANT_COUNTS)
    for key, count in (data.get("variant_counts") or {}).items():
        variants[RunTier(key)] = max(1, int(count))

    stage_retries = {
        as_stage(k): int(v) for k, v in (data.get("stage_max_retries") or {}).items()
    }
    compaction = data.get("compaction") or {}
    backoff = data.get("backoff") or {}
    defaults = PipelineConfig()

    return PipelineConfig(
        max_retries=int(data.get("max_retries", defaults.max_retries)),
        request_timeout=float(data.get("request_timeout", defaults.request_timeout)),
        stage_max_retries=MappingProxyType(stage_retries),
        stage_budgets=MappingProxyType(budgets),
        compaction_max_tokens=int(compaction.get("max_tokens", defaults.compaction_max_tokens)),
        recent_turns_to_keep=int(
            compaction.get("recent_turns_to_keep", defaults.recent_turns_to_keep)
        ),
        summary_max_tokens=int(
            compaction.get("summary_max_tokens", defaults.summary_max_tokens)
        ),
        variant_counts=MappingProxyType(variants),
        initial_delay=float(backoff.get("initial_delay", defaults.initial_delay)),
        max_delay=float(backoff.get("max_delay", defaults.max_delay)),
        backoff_multiplier=float(backoff.get("multiplier", defaults.backoff_multiplier)),
    )


def _apply_env(cfg: PipelineConfig, env: Mapping[str, str]) -> PipelineConfig:
    updates: dict = {}
    if "STRUCTGEN_MAX_RETRIES" in env:
        updates["max_retries"] = int(env["STRUCTGEN_MAX_RETRIES"])
    if "STRUCTGEN_REQUEST_TIMEOUT" in env:
        updates["request_timeout"] = float(env["STRUCTGEN_REQUEST_TIMEOUT"])
    if "STRUCTGEN_RECENT_TURNS" in env:
        updates["recent_turns_to_keep"] = int(env["STRUCTGEN_RECENT_TURNS"])
    if "STRUCTGEN_SUMMARY_MAX_TOKENS" in env:
        updates["summary_max_tokens"] = int(env["STRUCTGEN_SUMMARY_MAX_TOKENS"])
    if "STRUCTGEN_COMPACTION_MAX_TOKENS" in env:
        updates["compaction_max_tokens"] = int(env["STRUCTGEN_COMPACTION_MAX_TOKENS"])

    variants = dict(cfg.variant_counts)
    touched = False
    for tier in RunTier:
        key = f"STRUCTGEN_VARIANTS_{tier.value.upper()}"
        if key in env:
            variants[tier] = max(1, int(env[key]))
            touched = True
    if touched:
        updates["variant_counts"] = MappingProxyType(variants)

    return replace(cfg, **updates) if updates else cfg


def load_config(path: "str | Path | None" = None,
                env: Optional[Mapping[str, str]] = None) -> PipelineConfig:
    """
    Load configuration: defaults ← file (if given) ← environment.

    Raises
    ------
    FileNotFoundError if path is given but does not exist
    ValueError        on an unsupported extension or malformed file
    """
    if env is None:
        load_dotenv(override=False)
        env = os.environ

    cfg = config_from_dict(_read_file(Path(path))) if path else PipelineConfig()
    cfg = _apply_env(cfg, env)
    logger.debug(
        "Config loaded: max_retries=%d timeout=%.0fs variants=%s",
        cfg.max_retries, cfg.request_timeout,
        {t.value: n for t, n in cfg.variant_counts.items()},
    )
    return cfg
