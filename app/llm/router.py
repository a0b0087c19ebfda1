"""Selects an LLM provider per call and falls back between them.

The router is built once by the composition root (``app.context``) and passed
to whatever needs it.
"""

from __future__ import annotations

import logging
from typing import Callable, Dict, List, Optional

from app.llm.providers.deepseek import build_deepseek_provider
from app.llm.providers.gemini import build_gemini_provider
from app.llm.providers.ollama import build_ollama_provider
from app.llm.providers.openai import build_openai_provider
from app.llm.types import LLMMessage, LLMProvider, LLMResponse, ToolDefinition
from app.types.errors import ConfigurationError, ProviderError, UnsupportedOperationError

_LOGGER = logging.getLogger(__name__)

# Provider that owns speech-to-text.
SPEECH_PROVIDER = "openai"

ProviderFactory = Callable[[object], LLMProvider]

# Initialisation order doubles as fallback order.
PROVIDER_FACTORIES: Dict[str, ProviderFactory] = {
    "openai": build_openai_provider,
    "gemini": build_gemini_provider,
    "deepseek": build_deepseek_provider,
    "ollama": build_ollama_provider,
}

_CREDENTIALS = {
    "openai": "OPENAI_API_KEY",
    "gemini": "GEMINI_API_KEY",
    "deepseek": "DEEPSEEK_API_KEY",
    "ollama": "OLLAMA_BASE_URL",
}


class LLMRouter:
    def __init__(self, providers: Dict[str, LLMProvider], default_provider: Optional[str] = None):
        self._providers: Dict[str, LLMProvider] = {
            name: p for name, p in providers.items() if p.is_available()
        }
        if not self._providers:
            raise ConfigurationError(
                "No LLM providers available. Please configure at least one API key."
            )
        self._default = default_provider or next(iter(self._providers))
        _LOGGER.info("Initialized %d LLM providers: %s", len(self._providers), ", ".join(self._providers))

    @classmethod
    def from_settings(
        cls,
        settings,
        factories: Optional[Dict[str, ProviderFactory]] = None,
    ) -> "LLMRouter":
        providers: Dict[str, LLMProvider] = {}
        for name, factory in (factories or PROVIDER_FACTORIES).items():
            if not getattr(settings, _CREDENTIALS.get(name, ""), None):
                _LOGGER.debug("%s not configured, skipping", name)
                continue
            try:
                providers[name] = factory(settings)
                _LOGGER.info("%s provider initialized", name)
            except Exception:  # noqa: BLE001
                _LOGGER.exception("Failed to initialize %s provider", name)
        return cls(providers, getattr(settings, "DEFAULT_PROVIDER", None))

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------
    def available_providers(self) -> List[str]:
        return list(self._providers)

    def is_provider_available(self, name: str) -> bool:
        return name in self._providers

    @property
    def default_provider(self) -> str:
        return self._default

    def set_default_provider(self, name: str) -> None:
        if name not in self._providers:
            raise ConfigurationError(f"Provider {name} is not available")
        self._default = name
        _LOGGER.info("Default provider changed to %s", name)

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------
    def get_provider(self, name: Optional[str] = None) -> LLMProvider:
        target = name or self._default
        provider = self._providers.get(target)
        if provider is None:
            provider = next(iter(self._providers.values()))
            _LOGGER.warning("Provider %s not available, falling back to %s", target, provider.name)
        return provider

    def _fallback_for(self, failed: str) -> Optional[LLMProvider]:
        for name, provider in self._providers.items():
            if name != failed:
                return provider
        return None

    # ------------------------------------------------------------------
    # Calls
    # ------------------------------------------------------------------
    async def chat(
        self,
        messages: List[LLMMessage],
        tools: Optional[List[ToolDefinition]] = None,
        provider: Optional[str] = None,
    ) -> LLMResponse:
        target = self.get_provider(provider)
        _LOGGER.info("Using %s for chat completion", target.name)
        try:
            return await target.chat(messages, tools)
        except ProviderError as exc:
            _LOGGER.error("Chat completion failed with %s: %s", target.name, exc)
            fallback = self._fallback_for(target.name) if provider else None
            if fallback is None:
                raise
            _LOGGER.info("Attempting fallback to %s", fallback.name)
            return await fallback.chat(messages, tools)

    async def vision(self, messages: List[LLMMessage], provider: Optional[str] = None) -> LLMResponse:
        target = self.get_provider(provider)
        _LOGGER.info("Using %s for vision analysis", target.name)
        try:
            return await target.vision(messages)
        except ProviderError as exc:
            _LOGGER.error("Vision analysis failed with %s: %s", target.name, exc)
            fallback = self._fallback_for(target.name) if provider else None
            if fallback is None:
                raise
            _LOGGER.info("Attempting fallback to %s for vision", fallback.name)
            return await fallback.vision(messages)

    async def transcribe(self, audio: bytes, fmt: str, provider: Optional[str] = None) -> str:
        candidates: List[LLMProvider] = []
        if SPEECH_PROVIDER in self._providers:
            candidates.append(self._providers[SPEECH_PROVIDER])
        requested = self.get_provider(provider)
        if requested not in candidates:
            candidates.append(requested)

        error: Optional[ProviderError] = None
        for candidate in candidates:
            _LOGGER.info("Using %s for audio transcription", candidate.name)
            try:
                return await candidate.transcribe(audio, fmt)
            except ProviderError as exc:
                _LOGGER.error("Transcription failed with %s: %s", candidate.name, exc)
                # An unsupported fallback never hides a real upstream failure.
                if error is None or not isinstance(exc, UnsupportedOperationError):
                    error = exc
        assert error is not None
        raise error
