"""Model invokers: one provider-specific HTTP client per job.

`resolve_invoker` is called once per job with the provider id from the job
config; executors and batch processors only see the `ModelInvoker` interface.
No retries happen here.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

import httpx
from pydantic import BaseModel


class ModelInvocationError(RuntimeError):
    """The provider call failed or returned an unusable response."""


class UnsupportedProviderError(ValueError):
    pass


class Completion(BaseModel):
    text: str
    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


DEFAULT_MODELS: Dict[str, str] = {
    "CHATGPT": "gpt-5-mini",
    "CLAUDE": "claude-haiku-4-5",
    "GROQ": "llama-3.3-70b-versatile",
    "GEMINI": "gemini-2.5-flash",
    "STRATICO": "gpt-5-mini",
}


class ModelInvoker(ABC):
    provider: str = ""

    def __init__(
        self,
        client: httpx.AsyncClient,
        model_id: str,
        api_key: str,
        max_output_tokens: int = 2000,
    ):
        self._client = client
        self.model_id = model_id
        self._api_key = api_key
        self._max_output_tokens = max_output_tokens

    @abstractmethod
    async def invoke(self, system_prompt: str, user_content: str) -> Completion:
        ...

    async def _post(self, url: str, payload: Dict[str, Any], headers: Dict[str, str]) -> Dict[str, Any]:
        try:
            response = await self._client.post(url, json=payload, headers=headers)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise ModelInvocationError(
                f"{self.provider} returned {e.response.status_code}: {e.response.text[:200]}"
            ) from e
        except httpx.HTTPError as e:
            raise ModelInvocationError(f"{self.provider} request failed: {e}") from e
        return response.json()


class OpenAICompatibleInvoker(ModelInvoker):
    """Chat completions API (OpenAI, Groq, Stratico)."""

    def __init__(self, *args, base_url: str = "https://api.openai.com/v1", provider: str = "CHATGPT", **kwargs):
        super().__init__(*args, **kwargs)
        self._base_url = base_url.rstrip("/")
        self.provider = provider

    async def invoke(self, system_prompt: str, user_content: str) -> Completion:
        body = await self._post(
            f"{self._base_url}/chat/completions",
            {
                "model": self.model_id,
                "messages": [
                    {"role": "system", "content": system_prompt},
                    {"role": "user", "content": user_content},
                ],
                "max_completion_tokens": self._max_output_tokens,
            },
            {"Authorization": f"Bearer {self._api_key}"},
        )
        try:
            text = body["choices"][0]["message"]["content"] or ""
        except (KeyError, IndexError, TypeError) as e:
            raise ModelInvocationError(f"{self.provider} response missing content") from e
        usage = body.get("usage") or {}
        return Completion(
            text=text,
            input_tokens=usage.get("prompt_tokens") or 0,
            output_tokens=usage.get("completion_tokens") or 0,
        )


class AnthropicInvoker(ModelInvoker):
    provider = "CLAUDE"
    url = "https://api.anthropic.com/v1/messages"

    async def invoke(self, system_prompt: str, user_content: str) -> Completion:
        body = await self._post(
            self.url,
            {
                "model": self.model_id,
                "system": system_prompt,
                "max_tokens": self._max_output_tokens,
                "messages": [{"role": "user", "content": user_content}],
            },
            {"x-api-key": self._api_key, "anthropic-version": "2023-06-01"},
        )
        blocks = body.get("content")
        if not isinstance(blocks, list):
            raise ModelInvocationError("CLAUDE response missing content")
        text = "".join(b.get("text", "") for b in blocks if b.get("type") == "text")
        usage = body.get("usage") or {}
        return Completion(
            text=text,
            input_tokens=usage.get("input_tokens") or 0,
            output_tokens=usage.get("output_tokens") or 0,
        )


class GeminiInvoker(ModelInvoker):
    provider = "GEMINI"
    base_url = "https://generativelanguage.googleapis.com/v1beta/models"

    async def invoke(self, system_prompt: str, user_content: str) -> Completion:
        body = await self._post(
            f"{self.base_url}/{self.model_id}:generateContent",
            {
                "systemInstruction": {"parts": [{"text": system_prompt}]},
                "contents": [{"role": "user", "parts": [{"text": user_content}]}],
                "generationConfig": {"maxOutputTokens": self._max_output_tokens},
            },
            {"x-goog-api-key": self._api_key},
        )
        try:
            parts = body["candidates"][0]["content"]["parts"]
        except (KeyError, IndexError, TypeError) as e:
            raise ModelInvocationError("GEMINI response missing candidates") from e
        usage = body.get("usageMetadata") or {}
        return Completion(
            text="".join(p.get("text", "") for p in parts),
            input_tokens=usage.get("promptTokenCount") or 0,
            output_tokens=usage.get("candidatesTokenCount") or 0,
        )


def resolve_invoker(
    provider: str,
    model_id: Optional[str],
    api_key: str,
    client: httpx.AsyncClient,
    max_output_tokens: int = 2000,
) -> ModelInvoker:
    """Build the invoker for a job's provider. Raises UnsupportedProviderError."""
    provider = (provider or "").strip().upper()
    if provider not in DEFAULT_MODELS:
        raise UnsupportedProviderError(f"Unsupported provider: {provider or '<empty>'}")
    model_id = model_id or DEFAULT_MODELS[provider]
    common = dict(client=client, model_id=model_id, api_key=api_key,
                  max_output_tokens=max_output_tokens)

    if provider == "CLAUDE":
        return AnthropicInvoker(**common)
    if provider == "GEMINI":
        return GeminiInvoker(**common)
    if provider == "GROQ":
        return OpenAICompatibleInvoker(
            base_url="https://api.groq.com/openai/v1", provider=provider, **common
        )
    if provider == "STRATICO":
        return OpenAICompatibleInvoker(
            base_url="https://api.stratico.com/v1", provider=provider, **common
        )
    return OpenAICompatibleInvoker(provider=provider, **common)
