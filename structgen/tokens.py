"""
Token estimation: heuristic counter with an optional precise backend.
======================================================================
estimate_tokens() is the offline heuristic: CJK ideographs cost about
1.5 characters per token, everything else about 4. It is pure, linear in
the input and never touches the network, so it is used for every
budgeting decision in the hot path.

TokenEstimator wraps the heuristic and, when given one, a precise
counter (e.g. UnifiedGenerationClient.count_tokens). Precise counting is
strictly best-effort: any failure falls back to the heuristic, nothing
raises.

Usage:
    est = TokenEstimator(counter=client.count_tokens)
    est.estimate("I want to learn Python")      # 6, heuristic
    await est.count("I want to learn Python")   # backend count or 6
"""
from __future__ import annotations

import asyncio
import logging
import math
import re
import time
from typing import Awaitable, Callable, Iterable, Optional, Sequence

from .models import ConversationMessage, TokenEstimate

logger = logging.getLogger("structgen.tokens")

TokenCounter = Callable[[str], Awaitable[int]]

_CJK_RE = re.compile(r"[一-龥]")
_CJK_CHARS_PER_TOKEN = 1.5
_OTHER_CHARS_PER_TOKEN = 4.0

_CACHE_TTL_SECONDS = 60 * 60
_CACHE_MAX_SIZE = 1000


def estimate_tokens(text: str) -> int:
    """Heuristic token count. estimate_tokens("") == 0."""
    if not text:
        return 0
    cjk = len(_CJK_RE.findall(text))
    other = len(text) - cjk
    return math.ceil(cjk / _CJK_CHARS_PER_TOKEN + other / _OTHER_CHARS_PER_TOKEN)


class TokenEstimator:
    """
    Heuristic estimator with an optional precise counter and a TTL cache.

    The cache only stores precise counts; heuristic results are cheap enough
    to recompute.
    """

    def __init__(self, counter: Optional[TokenCounter] = None,
                 cache_ttl: float = _CACHE_TTL_SECONDS,
                 cache_max_size: int = _CACHE_MAX_SIZE) -> None:
        self._counter = counter
        self._cache_ttl = cache_ttl
        self._cache_max_size = cache_max_size
        self._cache: dict[str, tuple[int, float]] = {}

    @property
    def has_precise_counter(self) -> bool:
        return self._counter is not None

    # ── Heuristic ────────────────────────────────────────────────────────────

    def estimate(self, text: str) -> int:
        return estimate_tokens(text)

    def estimate_messages(self, messages: Iterable[ConversationMessage]) -> int:
        return estimate_tokens("\n".join(m.content for m in messages))

    # ── Precise (best-effort) ────────────────────────────────────────────────

    async def count(self, text: str) -> int:
        """Precise count when a counter is configured; heuristic otherwise or on failure."""
        if not text:
            return 0
        if self._counter is None:
            return estimate_tokens(text)
        try:
            return int(await self._counter(text))
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.debug(f"Precise token count failed, using heuristic: {e}")
            return estimate_tokens(text)

    async def count_batch(self, texts: Sequence[str]) -> list[int]:
        """
        Count many texts concurrently. Each failed precise count falls back to
        the heuristic for that item only, so the batch is never less accurate
        than calling count() once per item.
        """
        if not texts:
            return []
        if self._counter is None:
            return [estimate_tokens(t) for t in texts]

        async def _one(text: str) -> int:
            if not text:
                return 0
            return int(await self._counter(text))

        results = await asyncio.gather(*(_one(t) for t in texts), return_exceptions=True)
        counts: list[int] = []
        fallbacks = 0
        for text, res in zip(texts, results):
            if isinstance(res, asyncio.CancelledError):
                raise res
            if isinstance(res, BaseException):
                fallbacks += 1
                counts.append(estimate_tokens(text))
            else:
                counts.append(res)
        if fallbacks:
            logger.debug("Batch token count: %d/%d items used heuristic", fallbacks, len(texts))
        return counts

    async def count_cached(self, text: str) -> int:
        """count() with a TTL cache keyed by the full text."""
        if not text:
            return 0
        now = time.monotonic()
        hit = self._cache.get(text)
        if hit is not None and now - hit[1] < self._cache_ttl:
            return hit[0]

        tokens = await self.count(text)
        if len(self._cache) >= self._cache_max_size:
            oldest = min(self._cache, key=lambda k: self._cache[k][1])
            del self._cache[oldest]
        self._cache[text] = (tokens, now)
        return tokens

    def clean_cache(self) -> int:
        """Drop expired cache entries; returns how many were removed."""
        now = time.monotonic()
        expired = [k for k, (_, ts) in self._cache.items() if now - ts >= self._cache_ttl]
        for k in expired:
            del self._cache[k]
        if expired:
            logger.debug("Cleaned %d expired token cache entries", len(expired))
        return len(expired)

    def cache_stats(self) -> dict:
        return {"size": len(self._cache), "max_size": self._cache_max_size,
                "ttl": self._cache_ttl}

    async def compare(self, text: str) -> dict:
        """Real vs heuristic count for one text (accuracy diagnostics)."""
        real = await self.count(text)
        heuristic = estimate_tokens(text)
        difference = abs(real - heuristic)
        return {
            "real": real,
            "heuristic": heuristic,
            "difference": difference,
            "percent_diff": (difference / real * 100) if real > 0 else 0.0,
        }

    # ── Per-stage turn estimates ─────────────────────────────────────────────

    def estimate_clarification_turn(self, history: Sequence[ConversationMessage],
                                     understanding: Sequence[str] = ()) -> TokenEstimate:
        """Goal-clarification turn: fixed ~400-token prompt, short JSON answer, no examples."""
        return TokenEstimate.build(
            system_prompt=400,
            context=self.estimate_messages(history),
            user_input=estimate_tokens(" ".join(understanding)),
            estimated_output=200,
        )

    def estimate_framework_turn(self, purpose_text: str, example_count: int = 2) -> TokenEstimate:
        """Framework generation: ~1500-token prompt, ~350 tokens per example, large output."""
        return TokenEstimate.build(
            system_prompt=1500,
            context=estimate_tokens(purpose_text),
            examples=example_count * 350,
            estimated_output=1500,
        )

    def estimate_dynamics_turn(self, node_count: int, example_count: int = 1) -> TokenEstimate:
        """System-dynamics generation: context grows ~50 tokens per framework node."""
        return TokenEstimate.build(
            system_prompt=1000,
            context=node_count * 50,
            examples=example_count * 250,
            estimated_output=800,
        )
