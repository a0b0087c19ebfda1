"""Ollama adapter over its native ``/api/chat`` HTTP endpoint."""

from __future__ import annotations

import base64
import json
import logging
import time
from typing import Any, Dict, List, Optional

import httpx
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


class _RetryableStatus(Exception):
    def __init__(self, response: httpx.Response):
        super().__init__(f"HTTP {response.status_code}")
        self.response = response


class OllamaProvider:
    def __init__(
        self,
        base_url: str,
        *,
        chat_model: str = "qwen2.5:14b-instruct",
        vision_model: str = "llava:7b",
        timeout: float = 30.0,
        max_attempts: int = 2,
        temperature: float = 0.7,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        if not base_url:
            raise ConfigurationError("Ollama base URL is required")
        self.name = "ollama"
        self.base_url = base_url.rstrip("/")
        self.chat_model = chat_model
        self.vision_model = vision_model
        self.timeout = timeout
        self.max_attempts = max(1, max_attempts)
        self.temperature = temperature
        self._transport = transport

    def is_available(self) -> bool:
        return bool(self.base_url)

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout, transport=self._transport)

    async def _image_b64(self, client: httpx.AsyncClient, url: str) -> str:
        if url.startswith("data:"):
            return url.partition(",")[2]
        resp = await client.get(url)
        resp.raise_for_status()
        return base64.b64encode(resp.content).decode()

    async def _to_wire(self, client: httpx.AsyncClient, messages: List[LLMMessage]) -> List[Dict[str, Any]]:
        wire: List[Dict[str, Any]] = []
        for msg in messages:
            if msg.role == "tool":
                # No tool role: the result is handed back as a user turn.
                label = msg.name or msg.tool_call_id or "tool"
                wire.append({"role": "user", "content": f"Tool result ({label}): {msg.text()}"})
                continue
            item: Dict[str, Any] = {"role": msg.role, "content": msg.text()}
            images = msg.images()
            if images:
                item["images"] = [await self._image_b64(client, url) for url in images]
            if msg.tool_calls:
                item["tool_calls"] = [
                    {"function": {"name": tc.function.name, "arguments": json.loads(tc.function.arguments or "{}")}}
                    for tc in msg.tool_calls
                ]
            wire.append(item)
        return wire

    async def _post_chat(self, body: Dict[str, Any]) -> Dict[str, Any]:
        try:
            async with self._client() as client:
                body["messages"] = await self._to_wire(client, body["messages"])
                async for attempt in AsyncRetrying(
                    stop=stop_after_attempt(self.max_attempts),
                    wait=wait_random_exponential(multiplier=0.5, max=10),
                    retry=retry_if_exception_type((httpx.TransportError, _RetryableStatus)),
                    reraise=True,
                ):
                    with attempt:
                        resp = await client.post("/api/chat", json=body)
                        if resp.status_code >= 400 and is_retryable_status(resp.status_code):
                            raise _RetryableStatus(resp)
                        resp.raise_for_status()
                        return resp.json()
        except httpx.TimeoutException as exc:
            raise ProviderError(self.name, "request timed out", retryable=True) from exc
        except httpx.TransportError as exc:
            raise ProviderError(self.name, f"connection error: {exc}", retryable=True) from exc
        except _RetryableStatus as exc:
            raise ProviderError(
                self.name, exc.response.text, status=exc.response.status_code, retryable=True
            ) from exc
        except httpx.HTTPStatusError as exc:
            raise ProviderError(
                self.name, exc.response.text, status=exc.response.status_code, retryable=False
            ) from exc
        except ValueError as exc:
            raise ProviderError(self.name, f"malformed response: {exc}") from exc

    def _normalise(self, data: Dict[str, Any], model: str, started: float) -> LLMResponse:
        message = data.get("message") or {}
        tool_calls = []
        for index, call in enumerate(message.get("tool_calls") or []):
            fn = call.get("function") or {}
            args = fn.get("arguments") or {}
            tool_calls.append(
                ToolCall(
                    id=call.get("id") or f"call_{index}",
                    function=ToolFunction(
                        name=fn.get("name", ""),
                        arguments=args if isinstance(args, str) else json.dumps(args),
                    ),
                )
            )
        return LLMResponse(
            content=message.get("content") or "",
            tool_calls=tool_calls,
            usage=Usage.of(data.get("prompt_eval_count"), data.get("eval_count")),
            model=data.get("model") or model,
            provider=self.name,
            latency_ms=int((time.monotonic() - started) * 1000),
        )

    async def chat(self, messages: List[LLMMessage], tools: Optional[List[ToolDefinition]] = None) -> LLMResponse:
        _LOGGER.info("Making Ollama chat request with %d messages using model %s", len(messages), self.chat_model)
        started = time.monotonic()
        body: Dict[str, Any] = {
            "model": self.chat_model,
            "messages": messages,
            "stream": False,
            "options": {"temperature": self.temperature},
        }
        if tools:
            body["tools"] = [t.model_dump() for t in tools]
        data = await self._post_chat(body)
        return self._normalise(data, self.chat_model, started)

    async def vision(self, messages: List[LLMMessage]) -> LLMResponse:
        _LOGGER.info("Making Ollama vision request with %d messages using model %s", len(messages), self.vision_model)
        started = time.monotonic()
        body: Dict[str, Any] = {
            "model": self.vision_model,
            "messages": messages,
            "stream": False,
            "options": {"temperature": self.temperature},
        }
        data = await self._post_chat(body)
        return self._normalise(data, self.vision_model, started)

    async def transcribe(self, audio: bytes, fmt: str) -> str:
        raise UnsupportedOperationError(self.name, "audio transcription")

    async def check_health(self) -> bool:
        """True when both configured models are pulled on the server."""
        try:
            async with self._client() as client:
                resp = await client.get("/api/tags")
                resp.raise_for_status()
                names = [m.get("name", "") for m in resp.json().get("models", [])]
        except (httpx.HTTPError, ValueError) as exc:
            _LOGGER.warning("Ollama health check failed: %s", exc)
            return False

        def _present(model: str) -> bool:
            base = model.split(":")[0]
            return any(base in name for name in names)

        has_chat, has_vision = _present(self.chat_model), _present(self.vision_model)
        _LOGGER.info(
            "Ollama health check: chat model %s %s, vision model %s %s",
            self.chat_model, "available" if has_chat else "missing",
            self.vision_model, "available" if has_vision else "missing",
        )
        return has_chat and has_vision


def build_ollama_provider(settings) -> OllamaProvider:
    return OllamaProvider(
        settings.OLLAMA_BASE_URL,
        chat_model=settings.OLLAMA_CHAT_MODEL,
        vision_model=settings.OLLAMA_VISION_MODEL,
        timeout=settings.PROVIDER_TIMEOUT,
        max_attempts=settings.PROVIDER_MAX_ATTEMPTS,
        temperature=settings.PROVIDER_TEMPERATURE,
    )
