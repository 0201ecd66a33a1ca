"""
API Clients: GenerationClient contract + unified provider client
=================================================================
The pipeline never talks to an SDK directly. It calls an object that
satisfies the GenerationClient protocol:

    await client.generate(prompt, config, tier, stage_tag) -> GenerationResult

A GenerationResult is a tagged value: ok=True with text, or ok=False with
one of NO_API_KEY / TIMEOUT / EMPTY_RESPONSE / RATE_LIMIT / API_ERROR.
Clients never raise for backend failures; only cancellation propagates.

UnifiedGenerationClient normalizes Google GenAI (Gemini), OpenAI and
Anthropic into that contract. SDK clients are created lazily from
environment keys; a provider without a key is simply unavailable, and a
client with no provider at all answers every call with NO_API_KEY.
"""

from __future__ import annotations

import asyncio
import logging
import os
import time
from dataclasses import dataclass
from typing import AsyncIterator, Optional, Protocol, runtime_checkable

from .errors import ErrorCode, classify
from .models import GenerationConfig, RunTier

logger = logging.getLogger("structgen.api")


@dataclass
class GenerationResult:
    """Normalized outcome of one backend call."""
    ok: bool
    text: str = ""
    error_code: Optional[ErrorCode] = None
    error: Optional[str] = None
    input_tokens: int = 0
    output_tokens: int = 0
    latency_ms: float = 0.0

    @classmethod
    def success(cls, text: str, input_tokens: int = 0, output_tokens: int = 0) -> "GenerationResult":
        return cls(ok=True, text=text, input_tokens=input_tokens, output_tokens=output_tokens)

    @classmethod
    def failure(cls, code: ErrorCode, error: Optional[str] = None) -> "GenerationResult":
        return cls(ok=False, error_code=code, error=error or code.value)

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


@runtime_checkable
class GenerationClient(Protocol):
    async def generate(self, prompt: str, config: GenerationConfig,
                       tier: RunTier = RunTier.PRO,
                       stage_tag: str = "") -> GenerationResult: ...


# ─────────────────────────────────────────────────────────────────────────────
# Error mapping
# ─────────────────────────────────────────────────────────────────────────────

def classify_exception(exc: BaseException) -> ErrorCode:
    """Map an SDK exception onto the backend error codes."""
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError)):
        return ErrorCode.TIMEOUT
    status = getattr(exc, "status_code", None) or getattr(exc, "code", None)
    text = str(exc).lower()
    if status == 429 or "429" in text or "rate_limit" in text or "rate limit" in text \
            or "quota" in text or "resource_exhausted" in text:
        return ErrorCode.RATE_LIMIT
    if status in (401, 403) or "api key not valid" in text or "invalid api key" in text:
        return ErrorCode.NO_API_KEY
    if "timeout" in text or "timed out" in text or "deadline" in text:
        return ErrorCode.TIMEOUT
    return ErrorCode.API_ERROR


# ─────────────────────────────────────────────────────────────────────────────
# UnifiedGenerationClient
# ─────────────────────────────────────────────────────────────────────────────

_DEFAULT_MODELS: dict[str, dict[RunTier, str]] = {
    "google": {
        RunTier.LITE: "gemini-2.5-flash-lite",
        RunTier.PRO: "gemini-2.5-pro",
        RunTier.REVIEW: "gemini-2.5-pro",
    },
    "openai": {
        RunTier.LITE: "gpt-4o-mini",
        RunTier.PRO: "gpt-4o",
        RunTier.REVIEW: "gpt-4o",
    },
    "anthropic": {
        RunTier.LITE: "claude-3-5-haiku-latest",
        RunTier.PRO: "claude-sonnet-4-5",
        RunTier.REVIEW: "claude-sonnet-4-5",
    },
}

# Provider preference when several keys are configured
_PROVIDER_ORDER = ("google", "openai", "anthropic")


class UnifiedGenerationClient:
    """
    Async client over the configured provider SDKs.

    - Lazy SDK initialization (missing key or package → provider unavailable)
    - Tier → model mapping, overridable via GEMINI_MODEL / GEMINI_LITE_MODEL
    - Every failure folded into a GenerationResult error code
    """

    def __init__(self, provider: Optional[str] = None,
                 models: Optional[dict[RunTier, str]] = None,
                 max_concurrency: int = 3):
        self.semaphore = asyncio.Semaphore(max_concurrency)
        self._clients: dict[str, object] = {}
        self._init_clients()
        self.provider = provider or next(
            (p for p in _PROVIDER_ORDER if p in self._clients), None
        )
        self._models = dict(_DEFAULT_MODELS.get(self.provider or "google", {}))
        if self.provider == "google":
            if os.environ.get("GEMINI_MODEL"):
                self._models[RunTier.PRO] = os.environ["GEMINI_MODEL"]
                self._models[RunTier.REVIEW] = os.environ["GEMINI_MODEL"]
            if os.environ.get("GEMINI_LITE_MODEL"):
                self._models[RunTier.LITE] = os.environ["GEMINI_LITE_MODEL"]
        if models:
            self._models.update(models)

    def _init_clients(self):
        """Lazy-initialize provider SDKs. Missing keys → provider unavailable."""
        from dotenv import load_dotenv
        load_dotenv(override=False)

        # Google
        api_key = (os.environ.get("GEMINI_API_KEY") or os.environ.get("GOOGLE_AI_API_KEY")
                   or os.environ.get("GOOGLE_API_KEY"))
        if api_key:
            try:
                from google import genai
                self._clients["google"] = genai.Client(api_key=api_key)
                logger.info("Google GenAI client initialized")
            except ImportError:
                logger.warning("google-genai package not installed")

        # OpenAI
        if os.environ.get("OPENAI_API_KEY"):
            try:
                from openai import AsyncOpenAI
                self._clients["openai"] = AsyncOpenAI()
                logger.info("OpenAI client initialized")
            except ImportError:
                logger.warning("openai package not installed")

        # Anthropic
        if os.environ.get("ANTHROPIC_API_KEY"):
            try:
                from anthropic import AsyncAnthropic
                self._clients["anthropic"] = AsyncAnthropic()
                logger.info("Anthropic client initialized")
            except ImportError:
                logger.warning("anthropic package not installed")

        if not self._clients:
            logger.warning(
                "No generation API key configured. Set GEMINI_API_KEY, "
                "OPENAI_API_KEY or ANTHROPIC_API_KEY in the environment or .env"
            )

    @property
    def is_available(self) -> bool:
        return self.provider is not None and self.provider in self._clients

    def model_for(self, tier: "RunTier | str") -> str:
        return self._models[RunTier(tier)]

    # ── generate ─────────────────────────────────────────────────────────────

    async def generate(self, prompt: str, config: GenerationConfig,
                       tier: RunTier = RunTier.PRO,
                       stage_tag: str = "") -> GenerationResult:
        if not self.is_available:
            logger.warning(f"[{stage_tag or '-'}] generate called without an API key")
            return GenerationResult.failure(ErrorCode.NO_API_KEY)

        model = self.model_for(tier)
        t0 = time.monotonic()
        try:
            async with self.semaphore:
                result = await self._dispatch(model, prompt, config)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            code = classify_exception(e)
            logger.warning(f"[{stage_tag or '-'}] {self.provider}/{model} failed ({code.value}): {e}")
            return GenerationResult.failure(code, str(e))

        result.latency_ms = (time.monotonic() - t0) * 1000
        if not result.text.strip():
            logger.warning(f"[{stage_tag or '-'}] {self.provider}/{model} returned empty text")
            return GenerationResult.failure(ErrorCode.EMPTY_RESPONSE)
        logger.debug(
            "[%s] %s/%s ok in %.0fms (in=%d out=%d)",
            stage_tag or "-", self.provider, model, result.latency_ms,
            result.input_tokens, result.output_tokens,
        )
        return result

    async def _dispatch(self, model: str, prompt: str,
                        config: GenerationConfig) -> GenerationResult:
        if self.provider == "google":
            return await self._call_google(model, prompt, config)
        elif self.provider == "openai":
            return await self._call_openai(model, prompt, config)
        elif self.provider == "anthropic":
            return await self._call_anthropic(model, prompt, config)
        else:
            raise ValueError(f"Unknown provider {self.provider!r}")

    def _google_config(self, config: GenerationConfig):
        from google.genai import types
        return types.GenerateContentConfig(
            temperature=config.temperature,
            max_output_tokens=config.max_output_tokens,
            top_p=config.top_p,
            top_k=config.top_k,
        )

    async def _call_google(self, model: str, prompt: str,
                           config: GenerationConfig) -> GenerationResult:
        client = self._clients["google"]
        response = await client.aio.models.generate_content(
            model=model,
            contents=prompt,
            config=self._google_config(config),
        )
        input_tokens = 0
        output_tokens = 0
        if getattr(response, "usage_metadata", None):
            input_tokens = getattr(response.usage_metadata, "prompt_token_count", 0) or 0
            output_tokens = getattr(response.usage_metadata, "candidates_token_count", 0) or 0
        return GenerationResult.success(response.text or "", input_tokens, output_tokens)

    async def _call_openai(self, model: str, prompt: str,
                           config: GenerationConfig) -> GenerationResult:
        client = self._clients["openai"]
        response = await client.chat.completions.create(
            model=model,
            messages=[{"role": "user", "content": prompt}],
            max_tokens=config.max_output_tokens,
            temperature=config.temperature,
            top_p=config.top_p,
        )
        usage = response.usage
        return GenerationResult.success(
            response.choices[0].message.content or "",
            usage.prompt_tokens if usage else 0,
            usage.completion_tokens if usage else 0,
        )

    async def _call_anthropic(self, model: str, prompt: str,
                              config: GenerationConfig) -> GenerationResult:
        client = self._clients["anthropic"]
        response = await client.messages.create(
            model=model,
            max_tokens=config.max_output_tokens,
            temperature=min(config.temperature, 1.0),
            messages=[{"role": "user", "content": prompt}],
        )
        text = ""
        for block in response.content:
            if hasattr(block, "text"):
                text += block.text
        return GenerationResult.success(
            text, response.usage.input_tokens, response.usage.output_tokens,
        )

    # ── stream ───────────────────────────────────────────────────────────────

    async def stream(self, prompt: str, config: GenerationConfig,
                     tier: RunTier = RunTier.PRO,
                     stage_tag: str = "") -> AsyncIterator[str]:
        """
        Yield text chunks as the provider produces them.

        Unlike generate(), failures here raise StructGenError subclasses so the
        consuming producer can turn them into a distinct failure event.
        """
        if not self.is_available:
            raise classify(ErrorCode.NO_API_KEY)("No generation API key configured")

        model = self.model_for(tier)
        try:
            if self.provider == "google":
                client = self._clients["google"]
                chunks = await client.aio.models.generate_content_stream(
                    model=model, contents=prompt, config=self._google_config(config),
                )
                async for chunk in chunks:
                    if chunk.text:
                        yield chunk.text
            elif self.provider == "openai":
                client = self._clients["openai"]
                chunks = await client.chat.completions.create(
                    model=model,
                    messages=[{"role": "user", "content": prompt}],
                    max_tokens=config.max_output_tokens,
                    temperature=config.temperature,
                    stream=True,
                )
                async for chunk in chunks:
                    delta = chunk.choices[0].delta.content if chunk.choices else None
                    if delta:
                        yield delta
            else:
                client = self._clients["anthropic"]
                async with client.messages.stream(
                    model=model,
                    max_tokens=config.max_output_tokens,
                    temperature=min(config.temperature, 1.0),
                    messages=[{"role": "user", "content": prompt}],
                ) as s:
                    async for text in s.text_stream:
                        yield text
        except asyncio.CancelledError:
            raise
        except Exception as e:
            code = classify_exception(e)
            logger.warning(f"[{stage_tag or '-'}] stream from {self.provider}/{model} failed: {e}")
            raise classify(code)(str(e), code=code) from e

    # ── token counting ───────────────────────────────────────────────────────

    async def count_tokens(self, text: str) -> int:
        """Precise token count via Gemini's counter. Raises when unavailable."""
        if self.provider != "google" or "google" not in self._clients:
            raise RuntimeError("Precise token counting requires the Google GenAI client")
        client = self._clients["google"]
        response = await client.aio.models.count_tokens(
            model=self.model_for(RunTier.LITE), contents=text,
        )
        return int(response.total_tokens or 0)
