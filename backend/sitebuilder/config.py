from pydantic_settings import BaseSettings
from functools import lru_cache
import os


class Settings(BaseSettings):
    firecrawl_api_key: str = ""
    groq_api_key: str = ""
    openrouter_api_key: str = ""
    anthropic_api_key: str = ""
    openai_api_key: str = ""
    gemini_api_key: str = ""
    daytona_api_key: str = ""

    # Model registry
    available_models: list[str] = [
        "openai/gpt-5",
        "moonshotai/kimi-k2-instruct",
        "anthropic/claude-sonnet-4-20250514",
        "google/gemini-2.5-pro",
    ]
    default_model: str = "moonshotai/kimi-k2-instruct"
    model_display_names: dict[str, str] = {
        "openai/gpt-5": "GPT-5",
        "moonshotai/kimi-k2-instruct": "Kimi K2 Instruct",
        "anthropic/claude-sonnet-4-20250514": "Sonnet 4",
        "google/gemini-2.5-pro": "Gemini 2.5 Pro",
        "openrouter": "OpenRouter",
    }

    # Code application (milliseconds before the preview is refreshed)
    default_refresh_delay: int = 2000
    package_install_refresh_delay: int = 5000

    # Timeouts
    generation_timeout: float = 300.0  # seconds, whole generation stream
    apply_timeout: float = 600.0  # seconds
    scrape_timeout: float = 120.0  # seconds, HTTP timeout towards Firecrawl

    # LLM defaults
    max_tokens: int = 8000
    temperature: float = 0.7

    # Sandbox auto-stop (minutes of inactivity before Daytona stops the sandbox)
    sandbox_ttl_minutes: int = 30

    log_level: str = "INFO"
    data_dir: str = os.path.expanduser("~/.sitebuilder")

    class Config:
        # Look for .env in the repo root (two levels up from backend/sitebuilder/)
        _env_path = os.path.join(os.path.dirname(__file__), "..", "..", ".env")
        env_file = _env_path if os.path.exists(_env_path) else None
        env_file_encoding = "utf-8"
        extra = "ignore"

    def model_display_name(self, model: str) -> str:
        return self.model_display_names.get(model, model)

    def is_known_model(self, model: str) -> bool:
        return model in self.available_models or model == "openrouter"


@lru_cache()
def get_settings():
    return Settings()
