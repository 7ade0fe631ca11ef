"""
Natural-language explanations for recommendations via OpenAI chat completions.

Any failure, a filtered completion, or a missing API key yields the
deterministic template explanation instead, so callers always get text back.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, List, Optional, Sequence

from openai import APIConnectionError, APIStatusError, APITimeoutError, AsyncOpenAI

from tastegraph.config.logger import app_logger
from tastegraph.config.settings import Settings
from tastegraph.models.domain import CulturalTheme, clamp
from tastegraph.services.cache_backend import CacheBackend
from tastegraph.services.cached_graph import NS_EXPLANATIONS, explanation_key
from tastegraph.services.retry import RetryPolicy


MEANINGFUL_WORDS = ("aesthetic", "style", "atmosphere", "vibe", "feeling", "mood", "theme")

SYSTEM_PROMPT = "You are a cultural taste expert who writes short, warm, insightful recommendation blurbs."


@dataclass
class NamedItem:
    name: str
    domain_type: str


@dataclass
class ExplanationRequest:
    input_entity: NamedItem
    recommended_entity: NamedItem
    shared_themes: List[CulturalTheme] = field(default_factory=list)
    affinity_score: float = 0.5


@dataclass
class ExplanationResult:
    explanation: str
    confidence: float
    filtered: bool = False
    fallback: bool = False
    cached: bool = False


def build_prompt(request: ExplanationRequest) -> str:
    source = request.input_entity
    target = request.recommended_entity
    theme_names = ", ".join(theme.name for theme in request.shared_themes) or "none identified"
    affinity = round(request.affinity_score * 100)
    return (
        f"Explain why someone who likes {source.name} would enjoy {target.name}.\n\n"
        "Context:\n"
        f"- Input: {source.name} ({source.domain_type})\n"
        f"- Recommendation: {target.name} ({target.domain_type})\n"
        f"- Shared themes: {theme_names}\n"
        f"- Cultural affinity: {affinity}%\n\n"
        "Write a 1-2 sentence explanation that:\n"
        "1. Connects the cultural/aesthetic themes naturally\n"
        "2. Uses conversational, human language (like a knowledgeable friend)\n"
        "3. Avoids technical jargon or obvious statements\n"
        "4. Feels insightful and makes the connection clear\n\n"
        "Generate explanation:"
    )


def fallback_explanation(request: ExplanationRequest) -> str:
    source = request.input_entity.name
    target = request.recommended_entity.name
    if request.shared_themes:
        return f"Like {source}, {target} shares a similar {request.shared_themes[0].name} aesthetic that you might appreciate."
    return f"Based on your interest in {source}, you might enjoy exploring {target} as well."


def score_explanation(affinity_score: float, explanation: str, filtered: bool) -> float:
    """Confidence of a generated explanation from the affinity and simple quality signals."""
    if filtered:
        return 0.2
    confidence = affinity_score * 0.7
    if 50 < len(explanation) < 300:
        confidence += 0.1
    lowered = explanation.lower()
    if any(word in lowered for word in MEANINGFUL_WORDS):
        confidence += 0.1
    return clamp(confidence, 0.1, 1.0)


def _is_retryable(exc: Exception) -> bool:
    if isinstance(exc, APITimeoutError):
        return False
    if isinstance(exc, APIConnectionError):
        return True
    if isinstance(exc, APIStatusError):
        return exc.status_code >= 500 or exc.status_code == 429
    return False


class ExplanationService:
    def __init__(
        self,
        client: Optional[Any] = None,
        model: str = "gpt-4o-mini",
        temperature: float = 0.7,
        max_tokens: int = 200,
        batch_size: int = 5,
        batch_delay: float = 0.2,
        retry_policy: Optional[RetryPolicy] = None,
        cache: Optional[CacheBackend] = None,
        cache_ttl: float = 7 * 24 * 60 * 60,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.client = client
        self.model = model
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.batch_size = max(1, batch_size)
        self.batch_delay = batch_delay
        self.retry_policy = retry_policy or RetryPolicy(max_retries=2)
        self.cache = cache
        self.cache_ttl = cache_ttl
        self._sleep = sleep

    @classmethod
    def from_settings(cls, settings: Settings, cache: Optional[CacheBackend] = None) -> "ExplanationService":
        client = None
        if settings.OPENAI_API_KEY:
            client = AsyncOpenAI(api_key=settings.OPENAI_API_KEY, timeout=settings.OPENAI_TIMEOUT_SECONDS, max_retries=0)
        else:
            app_logger.warning("[Explanations] OPENAI_API_KEY not set, template explanations only")
        return cls(
            client=client,
            model=settings.OPENAI_MODEL,
            temperature=settings.OPENAI_TEMPERATURE,
            max_tokens=settings.OPENAI_MAX_TOKENS,
            batch_size=settings.EXPLANATION_BATCH_SIZE,
            batch_delay=settings.EXPLANATION_BATCH_DELAY_SECONDS,
            retry_policy=RetryPolicy(
                max_retries=settings.EXPLANATION_MAX_RETRIES,
                initial_delay=settings.GRAPH_INITIAL_DELAY_SECONDS,
                multiplier=settings.GRAPH_BACKOFF_MULTIPLIER,
                max_delay=settings.GRAPH_MAX_DELAY_SECONDS,
            ),
            cache=cache,
            cache_ttl=settings.EXPLANATION_CACHE_TTL_SECONDS,
        )

    @property
    def is_configured(self) -> bool:
        return self.client is not None

    async def aclose(self) -> None:
        if self.client is not None and hasattr(self.client, "close"):
            await self.client.close()

    async def _complete(self, prompt: str) -> Any:
        state = self.retry_policy.start()
        while True:
            try:
                return await self.client.chat.completions.create(
                    model=self.model,
                    temperature=self.temperature,
                    max_tokens=self.max_tokens,
                    messages=[
                        {"role": "system", "content": SYSTEM_PROMPT},
                        {"role": "user", "content": prompt},
                    ],
                )
            except Exception as exc:
                if not state.record_failure(_is_retryable(exc), exc):
                    raise
                app_logger.warning(f"[Explanations] Attempt {state.attempt} failed ({exc}), retrying in {state.delay:.2f}s")
                await self._sleep(state.delay)

    async def explain(self, request: ExplanationRequest) -> ExplanationResult:
        """One explanation. Never raises."""
        if not self.is_configured:
            return ExplanationResult(fallback_explanation(request), 0.3, fallback=True)

        key = explanation_key(request.input_entity.name, request.recommended_entity.name)
        if self.cache is not None:
            try:
                hit = await self.cache.get(NS_EXPLANATIONS, key)
                if hit:
                    return ExplanationResult(hit["explanation"], hit["confidence"], cached=True)
            except Exception as exc:
                app_logger.error(f"[Explanations] Cache read failed: {exc}")

        try:
            completion = await self._complete(build_prompt(request))
            choice = completion.choices[0]
            text = (choice.message.content or "").strip()
            filtered = choice.finish_reason == "content_filter" or not text
        except Exception as exc:
            app_logger.error(f"[Explanations] Error generating explanation: {exc}")
            return ExplanationResult(fallback_explanation(request), 0.3, fallback=True)

        confidence = score_explanation(request.affinity_score, text, filtered)
        if filtered:
            return ExplanationResult(fallback_explanation(request), confidence, filtered=True, fallback=True)

        if self.cache is not None:
            try:
                await self.cache.set(
                    NS_EXPLANATIONS,
                    key,
                    {"explanation": text, "confidence": confidence},
                    ttl_seconds=self.cache_ttl,
                )
            except Exception as exc:
                app_logger.error(f"[Explanations] Cache write failed: {exc}")
        return ExplanationResult(text, confidence)

    async def explain_batch(self, requests: Sequence[ExplanationRequest]) -> List[ExplanationResult]:
        """Explanations in chunks of ``batch_size`` with a pause between chunks. Order is preserved."""
        results: List[ExplanationResult] = []
        chunks = [requests[i : i + self.batch_size] for i in range(0, len(requests), self.batch_size)]
        for index, chunk in enumerate(chunks):
            results.extend(await asyncio.gather(*(self.explain(r) for r in chunk)))
            if index < len(chunks) - 1 and self.batch_delay:
                await self._sleep(self.batch_delay)
        fallbacks = sum(1 for r in results if r.fallback)
        app_logger.info(f"[Explanations] Generated {len(results) - fallbacks} explanations, {fallbacks} fallbacks")
        return results
