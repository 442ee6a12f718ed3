"""
API key transport and validation.

Secrets arrive per request, as a header ``x-<provider>-api-key`` or as a JSON
body field ``<provider>ApiKey``. The header wins when both are present;
server settings are only a fallback.
"""

from typing import Any, Mapping

import httpx
from loguru import logger

from sitebuilder.config import Settings, get_settings
from sitebuilder.exceptions import MissingApiKeyError
from sitebuilder.models import OpenRouterModel

PROVIDERS = ("groq", "openrouter", "anthropic", "openai", "gemini", "firecrawl", "daytona")

KEY_PREFIXES = {
    "groq": "gsk_",
    "openrouter": "sk-or-",
    "anthropic": "sk-ant-",
    "openai": "sk-",
    "firecrawl": "fc-",
}

DISPLAY_NAMES = {
    "groq": "Groq",
    "openrouter": "OpenRouter",
    "anthropic": "Anthropic",
    "openai": "OpenAI",
    "gemini": "Gemini",
    "firecrawl": "Firecrawl",
    "daytona": "Daytona",
}

OPENROUTER_AUTH_URL = "https://openrouter.ai/api/v1/auth/key"
GROQ_MODELS_URL = "https://api.groq.com/openai/v1/models"

OPENROUTER_FREE_MODELS = [
    OpenRouterModel(
        id="qwen/qwen3-coder:free",
        name="Qwen 3 Coder",
        description="Specialized for code generation and programming tasks",
        context_length=32768,
    ),
    OpenRouterModel(
        id="z-ai/glm-4.5-air:free",
        name="GLM 4.5 Air",
        description="Balanced model for general tasks and conversations",
        context_length=128000,
    ),
    OpenRouterModel(
        id="openai/gpt-oss-20b:free",
        name="GPT OSS 20B",
        description="Open-source GPT model for various applications",
        context_length=4096,
    ),
]


def get_openrouter_free_models() -> list[OpenRouterModel]:
    return list(OPENROUTER_FREE_MODELS)


def get_openrouter_model_by_id(model_id: str) -> OpenRouterModel | None:
    return next((m for m in OPENROUTER_FREE_MODELS if m.id == model_id), None)


def header_name(provider: str) -> str:
    return f"x-{provider}-api-key"


def body_field(provider: str) -> str:
    return f"{provider}ApiKey"


def get_api_keys_from_headers(headers: Mapping[str, str]) -> dict[str, str]:
    keys = {}
    for provider in PROVIDERS:
        value = headers.get(header_name(provider))
        if value:
            keys[provider] = value
    return keys


def get_api_keys_from_body(body: Mapping[str, Any] | None) -> dict[str, str]:
    keys = {}
    for provider in PROVIDERS:
        value = (body or {}).get(body_field(provider))
        if isinstance(value, str) and value:
            keys[provider] = value
    return keys


def resolve_api_key(
    provider: str,
    headers: Mapping[str, str] | None = None,
    body: Mapping[str, Any] | None = None,
    settings: Settings | None = None,
) -> str | None:
    """Header, then body, then server settings."""
    from_header = get_api_keys_from_headers(headers or {}).get(provider)
    if from_header:
        return from_header
    from_body = get_api_keys_from_body(body).get(provider)
    if from_body:
        return from_body
    settings = settings or get_settings()
    return getattr(settings, f"{provider}_api_key", "") or None


def require_api_key(
    provider: str,
    headers: Mapping[str, str] | None = None,
    body: Mapping[str, Any] | None = None,
    settings: Settings | None = None,
) -> str:
    key = resolve_api_key(provider, headers, body, settings)
    if not key:
        raise MissingApiKeyError(DISPLAY_NAMES.get(provider, provider))
    return key


def build_request_headers(keys: Mapping[str, str]) -> dict[str, str]:
    """Headers a client attaches so every route can find its credentials."""
    return {header_name(p): v for p, v in keys.items() if p in PROVIDERS and v}


def build_request_body_keys(keys: Mapping[str, str]) -> dict[str, str]:
    return {body_field(p): v for p, v in keys.items() if p in PROVIDERS and v}


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------

def validate_key_format(provider: str, api_key: str) -> tuple[bool, str | None]:
    if provider not in PROVIDERS:
        return False, f"Unknown provider: {provider}"
    if not api_key:
        return False, f"{DISPLAY_NAMES[provider]} API key is empty"
    prefix = KEY_PREFIXES.get(provider)
    if prefix and not api_key.startswith(prefix):
        return False, f'{DISPLAY_NAMES[provider]} API key should start with "{prefix}"'
    return True, None


async def verify_api_key(
    provider: str,
    api_key: str,
    client: httpx.AsyncClient | None = None,
) -> tuple[bool, str | None]:
    """
    Check a key's format and, for OpenRouter and Groq, ask the provider.

    A network failure during the remote check counts as valid when the
    format is right.
    """
    ok, error = validate_key_format(provider, api_key)
    if not ok:
        return ok, error

    if provider == "openrouter":
        url = OPENROUTER_AUTH_URL
    elif provider == "groq":
        url = GROQ_MODELS_URL
    else:
        return True, None

    owns_client = client is None
    client = client or httpx.AsyncClient(timeout=15.0)
    try:
        resp = await client.get(url, headers={"Authorization": f"Bearer {api_key}"})
    except httpx.HTTPError as e:
        logger.warning(f"[validate-api-key] {provider} check failed, assuming valid: {e}")
        return True, None
    finally:
        if owns_client:
            await client.aclose()

    if provider == "openrouter" and not resp.is_success:
        return False, "Invalid OpenRouter API key"
    if resp.status_code in (401, 403):
        return False, f"Invalid {DISPLAY_NAMES[provider]} API key"
    if resp.status_code >= 400:
        logger.warning(f"[validate-api-key] {provider} returned {resp.status_code}, assuming valid")
    return True, None
