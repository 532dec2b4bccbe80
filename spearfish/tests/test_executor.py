from __future__ import annotations

import json
from types import SimpleNamespace
from unittest.mock import AsyncMock, patch

import httpx
import pytest

from spearfish.errors import ExternalProviderError, ValidationError
from spearfish.executor import (
    PERPLEXITY_PRICING,
    PERPLEXITY_URL,
    LLMClient,
    LLMCompletion,
    LLMExecutor,
    PerplexityExecutor,
    build_executor,
    token_cost,
)
from spearfish.templates import QueryVariables, get_template, render


@pytest.fixture()
def query():
    return render(get_template("recent-activities"), QueryVariables(company_name="Lumen"))


def perplexity(handler) -> PerplexityExecutor:
    return PerplexityExecutor(api_key="pplx-test", transport=httpx.MockTransport(handler))


class TestPerplexityExecutor:
    def test_requires_api_key(self, monkeypatch):
        monkeypatch.delenv("PERPLEXITY_API_KEY", raising=False)
        with pytest.raises(ValidationError):
            PerplexityExecutor()

    @pytest.mark.asyncio
    async def test_success(self, query):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["auth"] = request.headers["authorization"]
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={
                "model": "sonar-pro",
                "choices": [{"message": {"content": "Lumen shipped v2."}}],
                "citations": ["https://lumen.dev/blog/v2"],
                "usage": {"prompt_tokens": 1000, "completion_tokens": 500},
            })

        response = await perplexity(handler).execute(query)
        assert seen["url"] == PERPLEXITY_URL
        assert seen["auth"] == "Bearer pplx-test"
        assert seen["body"]["messages"][1]["content"] == query.query
        assert seen["body"]["search_recency_filter"] == query.recency_filter
        assert response.content == "Lumen shipped v2."
        assert response.citations == ("https://lumen.dev/blog/v2",)
        assert response.tokens_used == 1500
        assert response.cost_usd == pytest.approx(0.0015)

    @pytest.mark.asyncio
    async def test_rate_limit_is_retryable(self, query):
        def handler(request):
            return httpx.Response(429, headers={"retry-after": "2"}, text="slow down")

        with pytest.raises(ExternalProviderError) as exc_info:
            await perplexity(handler).execute(query)
        assert exc_info.value.retryable is True
        assert exc_info.value.retry_after == 2.0

    @pytest.mark.asyncio
    async def test_client_errors_are_not_retryable(self, query):
        for status in (400, 401):
            with pytest.raises(ExternalProviderError) as exc_info:
                await perplexity(lambda r, s=status: httpx.Response(s, text="no")).execute(query)
            assert exc_info.value.retryable is False
            assert exc_info.value.status == status

    @pytest.mark.asyncio
    async def test_server_error_and_transport_error_retryable(self, query):
        with pytest.raises(ExternalProviderError) as exc_info:
            await perplexity(lambda r: httpx.Response(503)).execute(query)
        assert exc_info.value.retryable is True

        def boom(request):
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(ExternalProviderError) as exc_info:
            await perplexity(boom).execute(query)
        assert exc_info.value.retryable is True

    @pytest.mark.asyncio
    async def test_malformed_payload(self, query):
        with pytest.raises(ExternalProviderError) as exc_info:
            await perplexity(lambda r: httpx.Response(200, json={"choices": []})).execute(query)
        assert exc_info.value.retryable is False

    @pytest.mark.asyncio
    async def test_estimate_covers_a_maxed_out_answer(self, query):
        prompt_tokens = len(query.system_prompt) + len(query.query)

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={
                "choices": [{"message": {"content": "long answer"}}],
                "usage": {"prompt_tokens": prompt_tokens, "completion_tokens": 20000},
            })

        executor = PerplexityExecutor(api_key="pplx-test", max_tokens=20000, transport=httpx.MockTransport(handler))
        estimate = executor.estimate_cost(query)
        assert estimate >= query.cost_estimate_usd
        assert estimate >= token_cost(PERPLEXITY_PRICING, "sonar-pro", 0, 20000)
        response = await executor.execute(query)
        assert response.cost_usd <= estimate


class TestLLMExecutor:
    @pytest.mark.asyncio
    async def test_wraps_completion(self, query):
        client = SimpleNamespace(complete=AsyncMock(return_value=LLMCompletion(
            text="Answer", input_tokens=2000, output_tokens=1000, model="gpt-4o-mini",
        )))
        response = await LLMExecutor(client).execute(query)
        client.complete.assert_awaited_once_with(query.system_prompt, query.query, 2048)
        assert response.content == "Answer"
        assert response.citations == ()
        assert response.cost_usd == pytest.approx(token_cost({"gpt-4o-mini": (0.00015, 0.0006)}, "gpt-4o-mini", 2000, 1000))

    @pytest.mark.asyncio
    async def test_empty_answer_is_retryable(self, query):
        client = SimpleNamespace(complete=AsyncMock(return_value=LLMCompletion(text="")))
        with pytest.raises(ExternalProviderError) as exc_info:
            await LLMExecutor(client).execute(query)
        assert exc_info.value.retryable is True

    def test_estimate_assumes_full_completion(self, query):
        client = SimpleNamespace(model="claude-haiku-4-5-20251001")
        estimate = LLMExecutor(client, max_tokens=4000).estimate_cost(query)
        assert estimate >= 4000 / 1000 * 0.005
        assert estimate >= query.cost_estimate_usd
        assert LLMExecutor(client, max_tokens=1).estimate_cost(query) >= query.cost_estimate_usd

    def test_unknown_llm_provider(self):
        with pytest.raises(ValidationError):
            LLMClient(provider="carrier-pigeon")

    @pytest.mark.asyncio
    async def test_provider_exceptions_mapped(self):
        with patch.object(LLMClient, "_init_client"):
            client = LLMClient(provider="anthropic", model="m")
        error = RuntimeError("overloaded")
        error.status_code = 529
        client._client = SimpleNamespace(messages=SimpleNamespace(create=AsyncMock(side_effect=error)))
        with pytest.raises(ExternalProviderError) as exc_info:
            await client.complete("sys", "user")
        assert exc_info.value.retryable is True
        assert exc_info.value.status == 529


class TestBuildExecutor:
    def test_perplexity_default(self):
        from spearfish.config import Settings

        executor = build_executor(Settings(research_provider="perplexity", perplexity_api_key="k"))
        assert isinstance(executor, PerplexityExecutor)

    def test_unknown_provider(self):
        from spearfish.config import Settings

        with pytest.raises(ValidationError):
            build_executor(Settings(research_provider="oracle"))
