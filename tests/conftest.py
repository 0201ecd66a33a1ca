"""Shared fixtures: a scripted GenerationClient and fast retry options."""
from __future__ import annotations

import asyncio
import json
from typing import Any, Callable, Optional, Union

import pytest

from structgen.api_clients import GenerationResult
from structgen.errors import ErrorCode
from structgen.hooks import HookRegistry
from structgen.models import ConversationMessage, GenerationConfig, RunTier
from structgen.retry import RetryOptions

Scripted = Union[str, dict, list, ErrorCode, GenerationResult, Exception]


class FakeClient:
    """
    GenerationClient double. Each generate() call consumes the next scripted
    response; the last one repeats once the script runs out.

    A scripted item may be text, a dict/list (JSON-encoded), an ErrorCode
    (failure result), a GenerationResult, or an exception to raise.
    """

    def __init__(self, *responses: Scripted, delay: float = 0.0,
                 responder: Optional[Callable[[int, str, GenerationConfig], Scripted]] = None,
                 chunks: Optional[list[str]] = None,
                 usage: tuple[int, int] = (0, 0)):
        self.responses = list(responses)
        self.responder = responder
        self.delay = delay
        self.chunks = chunks or []
        self.usage = usage
        self.calls: list[dict] = []

    @property
    def call_count(self) -> int:
        return len(self.calls)

    @property
    def temperatures(self) -> list[float]:
        return [c["config"].temperature for c in self.calls]

    def _next(self, index: int, prompt: str, config: GenerationConfig) -> Scripted:
        if self.responder is not None:
            return self.responder(index, prompt, config)
        if not self.responses:
            return ErrorCode.EMPTY_RESPONSE
        return self.responses[min(index, len(self.responses) - 1)]

    async def generate(self, prompt: str, config: GenerationConfig,
                       tier: RunTier = RunTier.PRO, stage_tag: str = "") -> GenerationResult:
        index = len(self.calls)
        self.calls.append({"prompt": prompt, "config": config, "tier": tier, "stage_tag": stage_tag})
        if self.delay:
            await asyncio.sleep(self.delay)
        item = self._next(index, prompt, config)
        if isinstance(item, Exception):
            raise item
        if isinstance(item, GenerationResult):
            return item
        if isinstance(item, ErrorCode):
            return GenerationResult.failure(item)
        text = item if isinstance(item, str) else json.dumps(item)
        return GenerationResult.success(text, *self.usage)

    async def stream(self, prompt: str, config: GenerationConfig,
                     tier: RunTier = RunTier.PRO, stage_tag: str = ""):
        self.calls.append({"prompt": prompt, "config": config, "tier": tier, "stage_tag": stage_tag})
        for chunk in self.chunks:
            if self.delay:
                await asyncio.sleep(self.delay)
            if isinstance(chunk, Exception):
                raise chunk
            yield chunk


def conversation(turns: int, words_per_message: int = 60, trailing_user: bool = False):
    """Alternating user/assistant messages with distinguishable content."""
    messages = []
    for i in range(turns):
        messages.append(ConversationMessage.user(f"question {i} " + "detail " * words_per_message))
        messages.append(ConversationMessage.assistant(f"answer {i} " + "explanation " * words_per_message))
    if trailing_user:
        messages.append(ConversationMessage.user("one more thing " + "detail " * words_per_message))
    return messages


@pytest.fixture()
def hooks():
    return HookRegistry()


@pytest.fixture()
def fast_retry():
    """No backoff sleeps, no per-call timeout task."""
    return RetryOptions(initial_delay=0.0, max_delay=0.0, timeout=None)


S1_FRAMEWORK = [
    {"id": "basics", "title": "Basics", "summary": "Syntax and types",
     "children": [{"id": "control-flow", "title": "Control flow", "summary": "if/for/while"}]},
    {"id": "functions", "title": "Functions", "summary": "def, args, scope"},
]

S2_GOOD = {
    "mermaidChart": "graph TD\n  basics --> functions",
    "metaphor": "Learning Python is like building with bricks",
    "nodes": [
        {"id": "basics", "title": "Basics"},
        {"id": "control-flow", "title": "Control flow"},
        {"id": "functions", "title": "Functions"},
    ],
}
