"""Google Gemini adapter (``google-genai``).

Gemini has neither a ``system`` nor a ``tool`` role: system turns become user
turns prefixed with ``System:`` and tool results become ``function_response``
parts, so no content is lost in translation.
"""

from __future__ import annotations

import base64
import json
import logging
import mimetypes
import time
from typing import Any, List, Optional

import httpx
from google import genai
from google.genai import errors as genai_errors
from google.genai import types
from tenacity import (
    AsyncRetrying,
    retry_if_exception,
    stop_after_attempt,
    wait_random_exponential,
)

from app.llm.types import (
    ImagePart,
    LLMMessage,
    LLMResponse,
    TextPart,
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


def _is_transient(exc: BaseException) -> bool:
    if isinstance(exc, httpx.TransportError):
        return True
    if isinstance(exc, genai_errors.APIError):
        return is_retryable_status(exc.code)
    return False


def _image_part(url: str) -> types.Part:
    if url.startswith("data:"):
        header, _, payload = url.partition(",")
        mime_type = header[5:].split(";")[0] or "image/jpeg"
        return types.Part.from_bytes(data=base64.b64decode(payload), mime_type=mime_type)
    mime_type = mimetypes.guess_type(url)[0] or "image/jpeg"
    return types.Part.from_uri(file_uri=url, mime_type=mime_type)


def _parts_for(msg: LLMMessage) -> List[types.Part]:
    if msg.role == "system":
        return [types.Part.from_text(text=f"System: {msg.text()}")]
    if msg.role == "tool":
        return [
            types.Part.from_function_response(
                name=msg.name or "tool", response={"result": msg.text()}
            )
        ]
    parts: List[types.Part] = []
    if isinstance(msg.content, str):
        if msg.content:
            parts.append(types.Part.from_text(text=msg.content))
    else:
        for part in msg.content:
            if isinstance(part, TextPart):
                parts.append(types.Part.from_text(text=part.text))
            elif isinstance(part, ImagePart):
                parts.append(_image_part(part.image_url.url))
    for tc in msg.tool_calls or []:
        parts.append(
            types.Part(
                function_call=types.FunctionCall(
                    name=tc.function.name, args=json.loads(tc.function.arguments or "{}")
                )
            )
        )
    return parts


def to_contents(messages: List[LLMMessage]) -> List[types.Content]:
    """Map chat messages onto Gemini contents, merging adjacent same-role turns."""
    contents: List[types.Content] = []
    for msg in messages:
        role = "model" if msg.role == "assistant" else "user"
        parts = _parts_for(msg)
        if not parts:
            continue
        if contents and contents[-1].role == role:
            contents[-1].parts.extend(parts)
        else:
            contents.append(types.Content(role=role, parts=parts))
    return contents


class GeminiProvider:
    def __init__(
        self,
        api_key: Optional[str],
        *,
        model: str = "gemini-2.0-flash",
        vision_model: Optional[str] = None,
        timeout: float = 30.0,
        max_attempts: int = 2,
        temperature: float = 0.7,
        max_tokens: int = 4000,
        client: Any = None,
    ):
        if not api_key and client is None:
            raise ConfigurationError("Gemini API key is required")
        self.name = "gemini"
        self.model = model
        self.vision_model = vision_model or model
        self.timeout = timeout
        self.max_attempts = max(1, max_attempts)
        self.temperature = temperature
        self.max_tokens = max_tokens
        self._client = client or genai.Client(
            api_key=api_key,
            http_options=types.HttpOptions(timeout=int(timeout * 1000)),
        )

    def is_available(self) -> bool:
        return self._client is not None

    async def _generate(self, model: str, contents, config) -> Any:
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self.max_attempts),
                wait=wait_random_exponential(multiplier=0.5, max=10),
                retry=retry_if_exception(_is_transient),
                reraise=True,
            ):
                with attempt:
                    return await self._client.aio.models.generate_content(
                        model=model, contents=contents, config=config
                    )
        except httpx.TimeoutException as exc:
            raise ProviderError(self.name, "request timed out", retryable=True) from exc
        except httpx.TransportError as exc:
            raise ProviderError(self.name, f"connection error: {exc}", retryable=True) from exc
        except genai_errors.APIError as exc:
            raise ProviderError(
                self.name,
                exc.message or str(exc),
                status=exc.code,
                retryable=is_retryable_status(exc.code),
            ) from exc

    def _config(self, tools: Optional[List[ToolDefinition]]) -> types.GenerateContentConfig:
        config = types.GenerateContentConfig(
            temperature=self.temperature,
            max_output_tokens=self.max_tokens,
        )
        if tools:
            config.tools = [
                types.Tool(
                    function_declarations=[
                        types.FunctionDeclaration(
                            name=t.function.name,
                            description=t.function.description,
                            parameters_json_schema=t.function.parameters,
                        )
                        for t in tools
                    ]
                )
            ]
        return config

    def _normalise(self, response: Any, model: str, started: float) -> LLMResponse:
        text_chunks: List[str] = []
        candidates = getattr(response, "candidates", None) or []
        if candidates and getattr(candidates[0], "content", None):
            for part in candidates[0].content.parts or []:
                if getattr(part, "text", None):
                    text_chunks.append(part.text)

        tool_calls = [
            ToolCall(
                id=getattr(call, "id", None) or f"call_{index}",
                function=ToolFunction(name=call.name, arguments=json.dumps(call.args or {})),
            )
            for index, call in enumerate(getattr(response, "function_calls", None) or [])
        ]
        meta = getattr(response, "usage_metadata", None)
        return LLMResponse(
            content="".join(text_chunks),
            tool_calls=tool_calls,
            usage=Usage.of(
                getattr(meta, "prompt_token_count", 0),
                getattr(meta, "candidates_token_count", 0),
                getattr(meta, "total_token_count", 0),
            ),
            model=model,
            provider=self.name,
            latency_ms=int((time.monotonic() - started) * 1000),
        )

    async def chat(self, messages: List[LLMMessage], tools: Optional[List[ToolDefinition]] = None) -> LLMResponse:
        _LOGGER.info("Making Gemini chat request with %d messages", len(messages))
        started = time.monotonic()
        response = await self._generate(self.model, to_contents(messages), self._config(tools))
        return self._normalise(response, self.model, started)

    async def vision(self, messages: List[LLMMessage]) -> LLMResponse:
        _LOGGER.info("Making Gemini vision request with %d messages", len(messages))
        started = time.monotonic()
        response = await self._generate(self.vision_model, to_contents(messages), self._config(None))
        return self._normalise(response, self.vision_model, started)

    async def transcribe(self, audio: bytes, fmt: str) -> str:
        raise UnsupportedOperationError(self.name, "audio transcription")


def build_gemini_provider(settings) -> GeminiProvider:
    return GeminiProvider(
        settings.GEMINI_API_KEY,
        model=settings.GEMINI_MODEL,
        vision_model=settings.GEMINI_VISION_MODEL,
        timeout=settings.PROVIDER_TIMEOUT,
        max_attempts=settings.PROVIDER_MAX_ATTEMPTS,
        temperature=settings.PROVIDER_TEMPERATURE,
        max_tokens=settings.PROVIDER_MAX_TOKENS,
    )
