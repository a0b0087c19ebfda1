"""Provider-neutral message, tool and response models.

Adapters translate these into each backend's wire format and back; nothing
outside ``app.llm`` sees a provider SDK type.
"""

from __future__ import annotations

from typing import Any, Dict, List, Literal, Optional, Protocol, Union

from pydantic import BaseModel, Field

Role = Literal["system", "user", "assistant", "tool"]


class ToolFunction(BaseModel):
    name: str
    arguments: str = "{}"  # JSON-encoded


class ToolCall(BaseModel):
    id: str
    type: Literal["function"] = "function"
    function: ToolFunction


class TextPart(BaseModel):
    type: Literal["text"] = "text"
    text: str


class ImageURL(BaseModel):
    url: str  # http(s) URL or data: URL


class ImagePart(BaseModel):
    type: Literal["image_url"] = "image_url"
    image_url: ImageURL


ContentPart = Union[TextPart, ImagePart]


class LLMMessage(BaseModel):
    role: Role
    content: Union[str, List[ContentPart]] = ""
    name: Optional[str] = None
    tool_calls: Optional[List[ToolCall]] = None
    tool_call_id: Optional[str] = None

    def text(self) -> str:
        """Plain-text view of the content, images dropped."""
        if isinstance(self.content, str):
            return self.content
        return "\n".join(p.text for p in self.content if isinstance(p, TextPart))

    def images(self) -> List[str]:
        if isinstance(self.content, str):
            return []
        return [p.image_url.url for p in self.content if isinstance(p, ImagePart)]


class FunctionSpec(BaseModel):
    name: str
    description: str
    parameters: Dict[str, Any]


class ToolDefinition(BaseModel):
    type: Literal["function"] = "function"
    function: FunctionSpec


class Usage(BaseModel):
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0

    @classmethod
    def of(cls, prompt: Optional[int], completion: Optional[int], total: Optional[int] = None) -> "Usage":
        prompt = prompt or 0
        completion = completion or 0
        return cls(prompt_tokens=prompt, completion_tokens=completion, total_tokens=total or prompt + completion)


class LLMResponse(BaseModel):
    content: str = ""
    tool_calls: List[ToolCall] = Field(default_factory=list)
    usage: Usage = Field(default_factory=Usage)
    model: str
    provider: str
    latency_ms: int = 0


class LLMProvider(Protocol):
    """Capability interface every provider variant satisfies."""

    name: str

    async def chat(self, messages: List[LLMMessage], tools: Optional[List[ToolDefinition]] = None) -> LLMResponse:
        ...

    async def vision(self, messages: List[LLMMessage]) -> LLMResponse:
        ...

    async def transcribe(self, audio: bytes, fmt: str) -> str:
        ...

    def is_available(self) -> bool:
        ...
