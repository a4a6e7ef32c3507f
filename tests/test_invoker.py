"""
Tests for provider invokers against a mocked HTTP transport.
"""

import json

import httpx
import pytest

from bulkjobs.llm.invoker import (
    AnthropicInvoker,
    GeminiInvoker,
    ModelInvocationError,
    OpenAICompatibleInvoker,
    UnsupportedProviderError,
    resolve_invoker,
)


def mock_client(handler):
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


class TestResolveInvoker:
    def test_provider_selection_and_default_models(self):
        client = None
        chatgpt = resolve_invoker("chatgpt", None, "k", client)
        claude = resolve_invoker("CLAUDE", "", "k", client)
        gemini = resolve_invoker("GEMINI", "gemini-2.5-pro", "k", client)
        groq = resolve_invoker("GROQ", None, "k", client)

        assert isinstance(chatgpt, OpenAICompatibleInvoker) and chatgpt.model_id == "gpt-5-mini"
        assert isinstance(claude, AnthropicInvoker) and claude.model_id == "claude-haiku-4-5"
        assert isinstance(gemini, GeminiInvoker) and gemini.model_id == "gemini-2.5-pro"
        assert groq.provider == "GROQ" and groq.model_id == "llama-3.3-70b-versatile"

    def test_unknown_provider(self):
        with pytest.raises(UnsupportedProviderError):
            resolve_invoker("MYSTERY", None, "k", None)


async def test_openai_request_and_usage():
    seen = {}

    def handler(request):
        seen["url"] = str(request.url)
        seen["auth"] = request.headers["authorization"]
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={
            "choices": [{"message": {"content": "1. hola"}}],
            "usage": {"prompt_tokens": 12, "completion_tokens": 3},
        })

    async with mock_client(handler) as client:
        invoker = resolve_invoker("CHATGPT", "gpt-5.1", "sk-abc", client, max_output_tokens=500)
        completion = await invoker.invoke("be brief", "translate hello")

    assert seen["url"] == "https://api.openai.com/v1/chat/completions"
    assert seen["auth"] == "Bearer sk-abc"
    assert seen["body"]["model"] == "gpt-5.1"
    assert seen["body"]["max_completion_tokens"] == 500
    assert seen["body"]["messages"][0] == {"role": "system", "content": "be brief"}
    assert completion.text == "1. hola"
    assert completion.total_tokens == 15


async def test_groq_uses_its_own_base_url():
    urls = []

    def handler(request):
        urls.append(str(request.url))
        return httpx.Response(200, json={"choices": [{"message": {"content": "ok"}}]})

    async with mock_client(handler) as client:
        completion = await resolve_invoker("GROQ", None, "k", client).invoke("s", "u")

    assert urls == ["https://api.groq.com/openai/v1/chat/completions"]
    assert completion.total_tokens == 0


async def test_anthropic_joins_text_blocks():
    def handler(request):
        assert request.headers["x-api-key"] == "sk-ant"
        body = json.loads(request.content)
        assert body["system"] == "sys"
        return httpx.Response(200, json={
            "content": [{"type": "text", "text": "a"}, {"type": "text", "text": "b"}],
            "usage": {"input_tokens": 7, "output_tokens": 2},
        })

    async with mock_client(handler) as client:
        completion = await resolve_invoker("CLAUDE", None, "sk-ant", client).invoke("sys", "hi")

    assert completion.text == "ab"
    assert (completion.input_tokens, completion.output_tokens) == (7, 2)


async def test_gemini_reads_candidates():
    def handler(request):
        assert request.url.path.endswith("/gemini-2.5-flash:generateContent")
        return httpx.Response(200, json={
            "candidates": [{"content": {"parts": [{"text": "salut"}]}}],
            "usageMetadata": {"promptTokenCount": 4, "candidatesTokenCount": 1},
        })

    async with mock_client(handler) as client:
        completion = await resolve_invoker("GEMINI", None, "g-key", client).invoke("s", "hi")

    assert completion.text == "salut"
    assert completion.total_tokens == 5


async def test_http_error_becomes_invocation_error():
    async with mock_client(lambda request: httpx.Response(429, text="rate limited")) as client:
        invoker = resolve_invoker("CHATGPT", None, "k", client)
        with pytest.raises(ModelInvocationError, match="429"):
            await invoker.invoke("s", "u")


async def test_malformed_body_becomes_invocation_error():
    async with mock_client(lambda request: httpx.Response(200, json={"choices": []})) as client:
        invoker = resolve_invoker("CHATGPT", None, "k", client)
        with pytest.raises(ModelInvocationError):
            await invoker.invoke("s", "u")


async def test_transport_error_becomes_invocation_error():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    async with mock_client(handler) as client:
        with pytest.raises(ModelInvocationError, match="request failed"):
            await resolve_invoker("GEMINI", None, "k", client).invoke("s", "u")
