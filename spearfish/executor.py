"""Query-execution collaborators used by the research orchestrator.

An executor takes a :class:`~spearfish.templates.RenderedQuery` and returns a
:class:`ProviderResponse`. Failures are raised as ``ExternalProviderError``
with ``retryable`` set for transient problems (rate limits, 5xx, network); the
orchestrator owns retries and backoff.
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Any, Protocol

import httpx

from spearfish.errors import ExternalProviderError, ValidationError
from spearfish.templates import RenderedQuery

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProviderResponse:
    content: str
    citations: tuple[str, ...] = ()
    related_questions: tuple[str, ...] = ()
    prompt_tokens: int = 0
    completion_tokens: int = 0
    cost_usd: float = 0.0
    model: str = ""

    @property
    def tokens_used(self) -> int:
        return self.prompt_tokens + self.completion_tokens


class QueryExecutor(Protocol):
    async def execute(self, query: RenderedQuery) -> ProviderResponse: ...

    def estimate_cost(self, query: RenderedQuery) -> float: ...


# ---------------------------------------------------------------------------
# Perplexity
# ---------------------------------------------------------------------------

PERPLEXITY_URL = "https://api.perplexity.ai/chat/completions"

# USD per 1K tokens (input, output)
PERPLEXITY_PRICING: dict[str, tuple[float, float]] = {
    "sonar": (0.0005, 0.0005),
    "sonar-pro": (0.001, 0.001),
    "sonar-medium": (0.0015, 0.0015),
}


def token_cost(pricing: dict[str, tuple[float, float]], model: str, prompt_tokens: int, completion_tokens: int) -> float:
    rate_in, rate_out = pricing.get(model, next(iter(pricing.values())))
    return round((prompt_tokens * rate_in + completion_tokens * rate_out) / 1000, 6)


# chat framing tokens added around each request
MESSAGE_OVERHEAD_TOKENS = 16


def worst_case_cost(
    pricing: dict[str, tuple[float, float]], model: str, query: RenderedQuery, max_tokens: int,
) -> float:
    """Upper bound on what *query* can cost: prompt billed at one token per UTF-8
    byte and the completion running to *max_tokens*. Never below the template
    estimate.
    """
    prompt_bytes = len(query.system_prompt.encode()) + len(query.query.encode())
    ceiling = token_cost(pricing, model, prompt_bytes + MESSAGE_OVERHEAD_TOKENS, max_tokens)
    return max(query.cost_estimate_usd, ceiling)


def _retryable_status(status: int) -> bool:
    return status == 429 or status >= 500


def _retry_after(resp: httpx.Response) -> float | None:
    value = resp.headers.get("retry-after")
    try:
        return float(value) if value else None
    except ValueError:
        return None


class PerplexityExecutor:
    """Search-grounded chat completions over httpx."""

    def __init__(
        self,
        api_key: str | None = None,
        model: str = "sonar-pro",
        timeout: float = 60.0,
        max_tokens: int = 2000,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._api_key = api_key or os.environ.get("PERPLEXITY_API_KEY")
        if not self._api_key:
            raise ValidationError("PERPLEXITY_API_KEY is not configured")
        self.model = model
        self._timeout = timeout
        self._max_tokens = max_tokens
        self._transport = transport

    def estimate_cost(self, query: RenderedQuery) -> float:
        return worst_case_cost(PERPLEXITY_PRICING, self.model, query, self._max_tokens)

    def _payload(self, query: RenderedQuery) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": query.system_prompt},
                {"role": "user", "content": query.query},
            ],
            "max_tokens": self._max_tokens,
            "temperature": 0.2,
            "return_citations": True,
            "return_related_questions": True,
            "search_recency_filter": query.recency_filter,
        }
        if query.search_domains:
            payload["search_domain_filter"] = list(query.search_domains)
        return payload

    async def execute(self, query: RenderedQuery) -> ProviderResponse:
        headers = {"Authorization": f"Bearer {self._api_key}", "Content-Type": "application/json"}
        try:
            async with httpx.AsyncClient(timeout=httpx.Timeout(self._timeout), transport=self._transport) as client:
                resp = await client.post(PERPLEXITY_URL, json=self._payload(query), headers=headers)
        except httpx.HTTPError as exc:
            raise ExternalProviderError(f"Perplexity request failed: {exc}", retryable=True) from exc

        if resp.status_code >= 400:
            detail = resp.text[:200]
            if resp.status_code == 401:
                raise ExternalProviderError("Perplexity rejected the API key", retryable=False, status=401)
            raise ExternalProviderError(
                f"Perplexity returned {resp.status_code}: {detail}",
                retryable=_retryable_status(resp.status_code), status=resp.status_code,
                retry_after=_retry_after(resp),
            )

        try:
            data = resp.json()
            content = data["choices"][0]["message"]["content"] or ""
        except (ValueError, KeyError, IndexError, TypeError) as exc:
            raise ExternalProviderError("Perplexity returned an unexpected payload", retryable=False) from exc

        usage = data.get("usage") or {}
        prompt_tokens = int(usage.get("prompt_tokens") or 0)
        completion_tokens = int(usage.get("completion_tokens") or 0)
        model = data.get("model") or self.model
        return ProviderResponse(
            content=content,
            citations=tuple(str(c) for c in data.get("citations") or ()),
            related_questions=tuple(str(q) for q in data.get("related_questions") or ()),
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            cost_usd=token_cost(PERPLEXITY_PRICING, self.model, prompt_tokens, completion_tokens),
            model=model,
        )


# ---------------------------------------------------------------------------
# LLM Client
# ---------------------------------------------------------------------------

# USD per 1K tokens (input, output); unknown models use the first entry.
LLM_PRICING: dict[str, tuple[float, float]] = {
    "claude-haiku-4-5-20251001": (0.001, 0.005),
    "gpt-4o-mini": (0.00015, 0.0006),
}


@dataclass
class LLMCompletion:
    text: str
    input_tokens: int = 0
    output_tokens: int = 0
    model: str = ""


class LLMClient:
    """Unified async LLM client supporting Anthropic and OpenAI."""

    def __init__(
        self,
        provider: str | None = None,
        model: str | None = None,
        api_key: str | None = None,
        base_url: str | None = None,
    ):
        self.provider = provider or os.environ.get("LLM_PROVIDER", "anthropic")
        self.model = model or os.environ.get("LLM_MODEL", "")
        self._api_key = api_key
        self._base_url = base_url
        self._client: Any = None
        self._init_client()

    def _init_client(self) -> None:
        if self.provider == "anthropic":
            import anthropic
            self.model = self.model or "claude-haiku-4-5-20251001"
            self._client = anthropic.AsyncAnthropic(
                api_key=self._api_key or os.environ.get("ANTHROPIC_API_KEY")
            )
        elif self.provider in ("openai", "openai_compatible"):
            import openai
            self.model = self.model or "gpt-4o-mini"
            kwargs: dict[str, Any] = {}
            key = self._api_key or os.environ.get("OPENAI_API_KEY")
            if key:
                kwargs["api_key"] = key
            url = self._base_url or os.environ.get("OPENAI_BASE_URL")
            if url:
                kwargs["base_url"] = url
            self._client = openai.AsyncOpenAI(**kwargs)
        else:
            raise ValidationError(f"Unknown LLM provider: {self.provider!r}")

    async def complete(self, system: str, user: str, max_tokens: int = 2048) -> LLMCompletion:
        """Send system+user message to the LLM, return the text and token usage."""
        try:
            if self.provider == "anthropic":
                response = await self._client.messages.create(
                    model=self.model,
                    max_tokens=max_tokens,
                    system=system,
                    messages=[{"role": "user", "content": user}],
                )
                return LLMCompletion(
                    text=response.content[0].text.strip(),
                    input_tokens=response.usage.input_tokens,
                    output_tokens=response.usage.output_tokens,
                    model=self.model,
                )
            response = await self._client.chat.completions.create(
                model=self.model,
                max_tokens=max_tokens,
                messages=[
                    {"role": "system", "content": system},
                    {"role": "user", "content": user},
                ],
            )
            usage = response.usage
            return LLMCompletion(
                text=(response.choices[0].message.content or "").strip(),
                input_tokens=getattr(usage, "prompt_tokens", 0) or 0,
                output_tokens=getattr(usage, "completion_tokens", 0) or 0,
                model=self.model,
            )
        except ExternalProviderError:
            raise
        except Exception as exc:
            status = getattr(exc, "status_code", None)
            retryable = status is None or _retryable_status(status)
            raise ExternalProviderError(f"LLM API call failed: {exc}", retryable=retryable, status=status) from exc


class LLMExecutor:
    """Answers research queries from model knowledge (no live search, no citations)."""

    def __init__(self, client: LLMClient | None = None, max_tokens: int = 2048):
        self.client = client or LLMClient()
        self._max_tokens = max_tokens

    def estimate_cost(self, query: RenderedQuery) -> float:
        return worst_case_cost(LLM_PRICING, self.client.model, query, self._max_tokens)

    async def execute(self, query: RenderedQuery) -> ProviderResponse:
        completion = await self.client.complete(query.system_prompt, query.query, self._max_tokens)
        if not completion.text:
            raise ExternalProviderError("LLM returned an empty answer", retryable=True)
        return ProviderResponse(
            content=completion.text,
            prompt_tokens=completion.input_tokens,
            completion_tokens=completion.output_tokens,
            cost_usd=token_cost(LLM_PRICING, completion.model, completion.input_tokens, completion.output_tokens),
            model=completion.model,
        )


def build_executor(settings) -> QueryExecutor:
    """Pick the executor named by ``settings.research_provider``."""
    provider = (settings.research_provider or "perplexity").lower()
    if provider == "perplexity":
        return PerplexityExecutor(
            api_key=settings.perplexity_api_key,
            model=settings.perplexity_model,
            timeout=settings.query_timeout_seconds,
        )
    if provider in ("anthropic", "openai", "openai_compatible", "llm"):
        llm_provider = settings.llm_provider or (provider if provider != "llm" else None)
        return LLMExecutor(LLMClient(provider=llm_provider, model=settings.llm_model))
    raise ValidationError(f"Unknown research provider: {provider!r}")
