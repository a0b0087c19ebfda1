"""OpenAI-compatible chat, vision and Whisper transcription adapter.

The same adapter serves any backend that speaks the Chat Completions wire
format (DeepSeek is built from it in ``deepseek.py``).
"""

from __future__ import annotations

import logging
import time
from typing import Any, Dict, List, Optional

import openai
from openai import AsyncOpenAI
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_random_exponential,
)

from app.llm.types import (
    LLMMessage,
    LLMResponse,
    ToolCall,
    ToolDefinition,
    ToolFunction,
    Usage,
)
from app.types.errors import (
    ConfigurationError,
    ProviderError,
    UnsupportedOperationError,
    is_retryable_status,
)

_LOGGER = logging.getLogger(__name__)

# Retry only on transport / rate-limit / backend errors
RETRY_ERRORS = (
    openai.APIConnectionError,
    openai.RateLimitError,
    openai.InternalServerError,
)


def _to_wire(msg: LLMMessage) -> Dict[str, Any]:
    if isinstance(msg.content, str):
        content: Any = msg.content
    else:
        content = [part.model_dump() for part in msg.content]
    wire: Dict[str, Any] = {"role": msg.role, "content": content}
    if msg.name and msg.role != "tool":
        wire["name"] = msg.name
    if msg.tool_calls:
        wire["tool_calls"] = [tc.model_dump() for tc in msg.tool_calls]
    if msg.tool_call_id:
        wire["tool_call_id"] = msg.tool_call_id
    return wire


class OpenAIProvider:
    def __init__(
        self,
        api_key: Optional[str],
        *,
        name: str = "openai",
        model: str = "gpt-4o-mini",
        vision_model: Optional[str] = None,
        transcribe_model: Optional[str] = None,
        transcribe_language: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: float = 30.0,
        max_attempts: int = 2,
        temperature: float = 0.7,
        max_tokens: int = 4000,
        client: Any = None,
    ):
        if not api_key and client is None:
            raise ConfigurationError(f"{name} API key is required")
        self.name = name
        self.model = model
        self.vision_model = vision_model or model
        self.transcribe_model = transcribe_model
        self.transcribe_language = transcribe_language
        self.timeout = timeout
        self.max_attempts = max(1, max_attempts)
        self.temperature = temperature
        self.max_tokens = max_tokens
        # SDK-level retries are disabled; _call owns the retry policy.
        self._client = client or AsyncOpenAI(
            api_key=api_key, base_url=base_url, timeout=timeout, max_retries=0
        )

    def is_available(self) -> bool:
        return self._client is not None

    async def _call(self, fn, **kwargs):
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self.max_attempts),
                wait=wait_random_exponential(multiplier=0.5, max=10),
                retry=retry_if_exception_type(RETRY_ERRORS),
                reraise=True,
            ):
                with attempt:
                    return await fn(**kwargs)
        except openai.APITimeoutError as exc:
            raise ProviderError(self.name, "request timed out", retryable=True) from exc
        except openai.APIConnectionError as exc:
            raise ProviderError(self.name, f"connection error: {exc}", retryable=True) from exc
        except openai.APIStatusError as exc:
            raise ProviderError(
                self.name,
                exc.message,
                status=exc.status_code,
                retryable=is_retryable_status(exc.status_code),
            ) from exc
        except openai.OpenAIError as exc:
            raise ProviderError(self.name, str(exc)) from exc

    async def _complete(
        self,
        model: str,
        messages: List[LLMMessage],
        tools: Optional[List[ToolDefinition]] = None,
    ) -> LLMResponse:
        started = time.monotonic()
        params: Dict[str, Any] = {
            "model": model,
            "messages": [_to_wire(m) for m in messages],
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
            "timeout": self.timeout,
        }
        if tools:
            params["tools"] = [t.model_dump() for t in tools]
            params["tool_choice"] = "auto"

        response = await self._call(self._client.chat.completions.create, **params)
        if not response.choices:
            raise ProviderError(self.name, "empty response (no choices)")
        msg = response.choices[0].message

        tool_calls = [
            ToolCall(id=tc.id, function=ToolFunction(name=tc.function.name, arguments=tc.function.arguments or "{}"))
            for tc in (msg.tool_calls or [])
        ]
        usage = response.usage
        return LLMResponse(
            content=msg.content or "",
            tool_calls=tool_calls,
            usage=Usage.of(
                getattr(usage, "prompt_tokens", 0),
                getattr(usage, "completion_tokens", 0),
                getattr(usage, "total_tokens", 0),
            ),
            model=response.model or model,
            provider=self.name,
            latency_ms=int((time.monotonic() - started) * 1000),
        )

    async def chat(self, messages: List[LLMMessage], tools: Optional[List[ToolDefinition]] = None) -> LLMResponse:
        _LOGGER.info("Making %s chat request with %d messages", self.name, len(messages))
        return await self._complete(self.model, messages, tools)

    async def vision(self, messages: List[LLMMessage]) -> LLMResponse:
        _LOGGER.info("Making %s vision request with %d messages", self.name, len(messages))
        return await self._complete(self.vision_model, messages)

    async def transcribe(self, audio: bytes, fmt: str) -> str:
        if not self.transcribe_model:
            raise UnsupportedOperationError(self.name, "audio transcription")
        _LOGGER.info("Transcribing audio with %s (format: %s)", self.name, fmt)
        params: Dict[str, Any] = {
            "file": (f"audio.{fmt}", audio),
            "model": self.transcribe_model,
            "response_format": "text",
            "timeout": self.timeout,
        }
        if self.transcribe_language:
            params["language"] = self.transcribe_language
        result = await self._call(self._client.audio.transcriptions.create, **params)
        text = result if isinstance(result, str) else getattr(result, "text", "")
        return text.strip()


def build_openai_provider(settings) -> OpenAIProvider:
    return OpenAIProvider(
        settings.OPENAI_API_KEY,
        model=settings.OPENAI_MODEL,
        vision_model=settings.OPENAI_VISION_MODEL,
        transcribe_model=settings.OPENAI_TRANSCRIBE_MODEL,
        transcribe_language=settings.OPENAI_TRANSCRIBE_LANGUAGE,
        base_url=settings.OPENAI_BASE_URL or None,
        timeout=settings.PROVIDER_TIMEOUT,
        max_attempts=settings.PROVIDER_MAX_ATTEMPTS,
        temperature=settings.PROVIDER_TEMPERATURE,
        max_tokens=settings.PROVIDER_MAX_TOKENS,
    )
