"""DeepSeek speaks the OpenAI Chat Completions format; it has no speech API."""

from __future__ import annotations

from app.llm.providers.openai import OpenAIProvider


def build_deepseek_provider(settings) -> OpenAIProvider:
    return OpenAIProvider(
        settings.DEEPSEEK_API_KEY,
        name="deepseek",
        model=settings.DEEPSEEK_MODEL,
        vision_model=settings.DEEPSEEK_VISION_MODEL,
        transcribe_model=None,
        base_url=settings.DEEPSEEK_BASE_URL,
        timeout=settings.PROVIDER_TIMEOUT,
        max_attempts=settings.PROVIDER_MAX_ATTEMPTS,
        temperature=settings.PROVIDER_TEMPERATURE,
        max_tokens=settings.PROVIDER_MAX_TOKENS,
    )
