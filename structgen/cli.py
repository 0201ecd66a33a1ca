"""
Command line entry point
========================
    structgen estimate notes.txt            heuristic token count of a file ('-' = stdin)
    structgen budgets [--config cfg.yml]    configured per-stage budgets and variant counts
    structgen run --stage S1 --prompt-file p.txt [--tier Pro] [--session s1]
                  [--context ctx.json] [--sqlite sessions.db] [--tracing]
"""
from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Optional, Sequence

from .config import load_config
from .models import RunTier, Stage
from .tokens import estimate_tokens

logger = logging.getLogger("structgen.cli")


def setup_logging(verbose: bool = False):
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
        datefmt="%H:%M:%S",
        force=True,  # re-apply even if already configured
    )


def _read_text(path: str) -> str:
    if path == "-":
        return sys.stdin.read()
    return Path(path).read_text(encoding="utf-8")


# ── estimate ──────────────────────────────────────────────────────────────────

def cmd_estimate(args) -> int:
    total = 0
    for path in args.files:
        tokens = estimate_tokens(_read_text(path))
        total += tokens
        print(f"{tokens:>8}  {path}")
    if len(args.files) > 1:
        print(f"{total:>8}  total")
    return 0


# ── budgets ───────────────────────────────────────────────────────────────────

def cmd_budgets(args) -> int:
    cfg = load_config(args.config)
    print(f"{'Stage':<7} {'Per turn':>9} {'Total':>7} {'Warn at':>8} {'Retries':>8}")
    print("-" * 43)
    for stage in Stage:
        b = cfg.budget_for(stage)
        print(f"{stage.value:<7} {b.max_per_turn:>9} {b.max_total:>7} "
              f"{b.warning_threshold:>8} {cfg.retries_for(stage):>8}")
    variants = ", ".join(f"{t.value}={n}" for t, n in cfg.variant_counts.items())
    print(f"\nVariants per tier: {variants}")
    return 0


# ── run ───────────────────────────────────────────────────────────────────────

async def _async_run(args) -> int:
    from .api_clients import UnifiedGenerationClient
    from .pipeline import Pipeline, PipelineOptions
    from .session_store import SqliteSessionStore

    cfg = load_config(args.config)
    prompt = args.prompt if args.prompt is not None else _read_text(args.prompt_file)
    context = json.loads(_read_text(args.context)) if args.context else None
    store = SqliteSessionStore(Path(args.sqlite)) if args.sqlite else None

    pipeline = Pipeline(UnifiedGenerationClient(), cfg, store=store)
    try:
        result = await pipeline.run_pipeline(
            prompt, args.stage,
            PipelineOptions(
                session_id=args.session,
                tier=RunTier(args.tier),
                context=context,
                variant_count=args.variants,
            ),
        )
        status = await pipeline.ledger.remaining(args.stage, args.session)
    finally:
        if store is not None:
            await store.close()

    print(json.dumps(result.to_dict(), ensure_ascii=False, indent=2))
    logger.info(
        f"Session {args.session} {status.stage.value}: {status.used}/{status.max_total} tokens "
        f"({status.utilization_rate:.0%})"
    )
    return 0 if result.ok else 1


def cmd_run(args) -> int:
    if args.tracing:
        from .tracing import TracingConfig, configure_tracing
        configure_tracing(TracingConfig(enabled=True, otlp_endpoint=args.otlp_endpoint))
    return asyncio.run(_async_run(args))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="structgen",
        description="Resilient structured generation: budgets, compaction, retries and n-best",
    )
    parser.add_argument("--verbose", "-v", action="store_true")
    subparsers = parser.add_subparsers(dest="subcommand", metavar="SUBCOMMAND")

    ep = subparsers.add_parser("estimate", help="Heuristic token estimate for files")
    ep.add_argument("files", nargs="+", help="Files to estimate ('-' reads stdin)")
    ep.set_defaults(func=cmd_estimate)

    bp = subparsers.add_parser("budgets", help="Show configured stage budgets")
    bp.add_argument("--config", "-c", default=None, help="YAML or JSON config file")
    bp.set_defaults(func=cmd_budgets)

    rp = subparsers.add_parser("run", help="Run one pipeline stage against the configured backend")
    rp.add_argument("--stage", "-s", required=True, choices=[s.value for s in Stage])
    source = rp.add_mutually_exclusive_group(required=True)
    source.add_argument("--prompt", help="Prompt text")
    source.add_argument("--prompt-file", "-f", help="File holding the prompt ('-' reads stdin)")
    rp.add_argument("--tier", "-t", default=RunTier.PRO.value, choices=[t.value for t in RunTier])
    rp.add_argument("--session", default="cli", help="Session id for budget accounting")
    rp.add_argument("--variants", type=int, default=None,
                    help="Number of candidates (default: per-tier config)")
    rp.add_argument("--context", default=None,
                    help="JSON file with cross-stage context (framework, nodes, strategy_metrics)")
    rp.add_argument("--config", "-c", default=None, help="YAML or JSON config file")
    rp.add_argument("--sqlite", default=None, metavar="PATH",
                    help="Persist session budgets in this SQLite file")
    rp.add_argument(
        "--tracing",
        action="store_true",
        default=False,
        help="Enable OpenTelemetry tracing. Requires: pip install -e '.[tracing]'",
    )
    rp.add_argument("--otlp-endpoint", default=None, metavar="URL",
                    help="OTLP gRPC endpoint; spans go to the console when omitted")
    rp.set_defaults(func=cmd_run)
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging(args.verbose)
    if args.subcommand is None:
        parser.print_help()
        return 2
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
