"""
LLM provider routing and token streaming.

The model id picks the provider:

    anthropic/<model>   Anthropic SDK
    google/<model>      google-genai (Gemini key)
    openai/<model>      OpenAI chat completions
    openrouter/<model>  OpenRouter chat completions
    openrouter          OpenRouter, real model from context["modelName"]
    groq/<model>        Groq chat completions
    anything else       Groq, model id passed through unchanged

OpenAI, OpenRouter and Groq share one OpenAI-compatible SSE client on httpx.
"""

import json
from dataclasses import dataclass
from typing import AsyncIterator

import anthropic
import httpx
from google import genai
from google.genai import types
from loguru import logger

from sitebuilder.api_keys import DISPLAY_NAMES
from sitebuilder.config import get_settings
from sitebuilder.exceptions import GenerationError, UpstreamError

OPENAI_COMPATIBLE_BASE_URLS = {
    "openai": "https://api.openai.com/v1",
    "openrouter": "https://openrouter.ai/api/v1",
    "groq": "https://api.groq.com/openai/v1",
}

_PREFIXES = {
    "anthropic/": "anthropic",
    "google/": "gemini",
    "openai/": "openai",
    "openrouter/": "openrouter",
    "groq/": "groq",
}


@dataclass(frozen=True)
class ProviderChoice:
    provider: str  # also the api_keys provider name
    model: str  # id sent to the provider


def resolve_provider(model: str, context: dict | None = None) -> ProviderChoice:
    if model == "openrouter":
        model_name = (context or {}).get("modelName")
        if not model_name:
            raise GenerationError('Model "openrouter" needs context.modelName')
        return ProviderChoice("openrouter", model_name)
    for prefix, provider in _PREFIXES.items():
        if model.startswith(prefix):
            return ProviderChoice(provider, model[len(prefix):])
    return ProviderChoice("groq", model)


# ---------------------------------------------------------------------------
# Providers
# ---------------------------------------------------------------------------

async def _stream_anthropic(model, system, prompt, api_key, max_tokens, temperature) -> AsyncIterator[str]:
    client = anthropic.AsyncAnthropic(api_key=api_key)
    async with client.messages.stream(
        model=model,
        max_tokens=max_tokens,
        temperature=temperature,
        system=system,
        messages=[{"role": "user", "content": prompt}],
    ) as stream:
        async for chunk in stream.text_stream:
            yield chunk


async def _stream_gemini(model, system, prompt, api_key, max_tokens, temperature) -> AsyncIterator[str]:
    client = genai.Client(api_key=api_key)
    response = await client.aio.models.generate_content_stream(
        model=model,
        contents=prompt,
        config=types.GenerateContentConfig(
            system_instruction=system,
            max_output_tokens=max_tokens,
            temperature=temperature,
        ),
    )
    async for chunk in response:
        if chunk.text:
            yield chunk.text


def _chat_completions_body(provider: str, model: str, system: str, prompt: str, max_tokens: int, temperature: float) -> dict:
    body = {
        "model": model,
        "messages": [
            {"role": "system", "content": system},
            {"role": "user", "content": prompt},
        ],
        "stream": True,
    }
    if provider == "openai":
        # Reasoning models reject max_tokens and any temperature but the default
        body["max_completion_tokens"] = max_tokens
    else:
        body["max_tokens"] = max_tokens
        body["temperature"] = temperature
    return body


def _delta_text(data: str) -> str:
    try:
        payload = json.loads(data)
    except json.JSONDecodeError:
        logger.warning(f"[llm] Skipping malformed stream chunk: {data[:120]!r}")
        return ""
    choices = payload.get("choices") or []
    if not choices:
        return ""
    return (choices[0].get("delta") or {}).get("content") or ""


async def _stream_openai_compatible(
    provider, model, system, prompt, api_key, max_tokens, temperature,
    client: httpx.AsyncClient | None = None,
) -> AsyncIterator[str]:
    url = f"{OPENAI_COMPATIBLE_BASE_URLS[provider]}/chat/completions"
    headers = {"Authorization": f"Bearer {api_key}", "Content-Type": "application/json"}
    body = _chat_completions_body(provider, model, system, prompt, max_tokens, temperature)

    owns_client = client is None
    client = client or httpx.AsyncClient(timeout=httpx.Timeout(get_settings().generation_timeout, connect=15.0))
    try:
        async with client.stream("POST", url, headers=headers, json=body) as resp:
            if not resp.is_success:
                error = (await resp.aread()).decode("utf-8", errors="replace")
                raise UpstreamError(DISPLAY_NAMES[provider], resp.status_code, error[:500])
            async for line in resp.aiter_lines():
                if not line.startswith("data:"):
                    continue
                data = line[len("data:"):].strip()
                if data == "[DONE]":
                    break
                text = _delta_text(data)
                if text:
                    yield text
    finally:
        if owns_client:
            await client.aclose()


async def stream_completion(
    choice: ProviderChoice,
    system: str,
    prompt: str,
    api_key: str,
    max_tokens: int | None = None,
    temperature: float | None = None,
    client: httpx.AsyncClient | None = None,
) -> AsyncIterator[str]:
    """Yield text fragments from the chosen provider as they arrive."""
    settings = get_settings()
    max_tokens = max_tokens or settings.max_tokens
    temperature = settings.temperature if temperature is None else temperature
    logger.info(f"[llm] Streaming from {choice.provider} ({choice.model})")

    if choice.provider == "anthropic":
        stream = _stream_anthropic(choice.model, system, prompt, api_key, max_tokens, temperature)
    elif choice.provider == "gemini":
        stream = _stream_gemini(choice.model, system, prompt, api_key, max_tokens, temperature)
    else:
        stream = _stream_openai_compatible(
            choice.provider, choice.model, system, prompt, api_key, max_tokens, temperature, client
        )
    async for text in stream:
        yield text
