from __future__ import annotations

from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class Role(str, Enum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


class ToolType(str, Enum):
    FUNCTION = "function"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, value: object) -> ToolType:
        if isinstance(value, str) and value.strip().lower() == cls.FUNCTION.value:
            return cls.FUNCTION
        return cls.UNKNOWN


class FinishReason(str, Enum):
    STOP = "stop"
    LENGTH = "length"
    TOOL_CALLS = "tool_calls"
    CONTENT_FILTER = "content_filter"
    FUNCTION_CALL = "function_call"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, value: object) -> FinishReason | None:
        """Map a backend stop reason onto the canonical set; ``None`` when empty."""
        if not isinstance(value, str) or not value.strip():
            return None
        normalized = value.strip().lower()
        try:
            return cls(normalized)
        except ValueError:
            return _FINISH_REASON_ALIASES.get(normalized, cls.UNKNOWN)


_FINISH_REASON_ALIASES = {
    "end_turn": FinishReason.STOP,
    "stop_sequence": FinishReason.STOP,
    "eos": FinishReason.STOP,
    "max_tokens": FinishReason.LENGTH,
    "tool_use": FinishReason.TOOL_CALLS,
    "content_filtered": FinishReason.CONTENT_FILTER,
    "guardrail_intervened": FinishReason.CONTENT_FILTER,
}


class PartType(str, Enum):
    TEXT = "text"
    IMAGE_URL = "image_url"
    AUDIO_URL = "audio_url"
    VIDEO_URL = "video_url"
    FILE_URL = "file_url"


class ImageURL(BaseModel):
    url: str
    detail: str | None = None
    mime_type: str | None = None


class MediaURL(BaseModel):
    url: str
    mime_type: str | None = None
    name: str | None = None


class ContentPart(BaseModel):
    type: PartType
    text: str | None = None
    image_url: ImageURL | None = None
    audio_url: MediaURL | None = None
    video_url: MediaURL | None = None
    file_url: MediaURL | None = None

    model_config = ConfigDict(extra="ignore")

    @field_validator("image_url", "audio_url", "video_url", "file_url", mode="before")
    @classmethod
    def _url_shorthand(cls, value: Any) -> Any:
        if isinstance(value, str):
            return {"url": value}
        return value

    def media(self) -> ImageURL | MediaURL | None:
        # Older clients send every media kind inside the image_url holder.
        holder = {
            PartType.IMAGE_URL: self.image_url,
            PartType.AUDIO_URL: self.audio_url,
            PartType.VIDEO_URL: self.video_url,
            PartType.FILE_URL: self.file_url,
        }.get(self.type)
        if holder is None and self.type != PartType.TEXT:
            return self.image_url
        return holder


class FunctionCall(BaseModel):
    name: str = ""
    arguments: str = ""


class ToolCall(BaseModel):
    index: int | None = None
    id: str = ""
    type: str = ToolType.FUNCTION.value
    function: FunctionCall = Field(default_factory=FunctionCall)


class FunctionDefinition(BaseModel):
    name: str = ""
    description: str = ""
    parameters: Any = None


class ToolDefinition(BaseModel):
    type: str = ToolType.FUNCTION.value
    function: FunctionDefinition | None = None


class ChatMessage(BaseModel):
    role: Role
    content: str | list[ContentPart] | None = None
    name: str | None = None
    tool_call_id: str | None = None
    tool_calls: list[ToolCall] | None = None

    @model_validator(mode="after")
    def _tool_messages_need_call_id(self) -> ChatMessage:
        if self.role == Role.TOOL and not (self.tool_call_id or "").strip():
            raise ValueError("messages with role 'tool' require tool_call_id")
        return self

    @property
    def text(self) -> str:
        if isinstance(self.content, str):
            return self.content
        if not self.content:
            return ""
        return "".join(
            part.text or "" for part in self.content if part.type == PartType.TEXT
        )


class ChatRequest(BaseModel):
    provider: str = ""
    model: str = ""
    messages: list[ChatMessage]
    tools: list[ToolDefinition] | None = None
    tool_choice: str | dict[str, Any] | None = None
    max_tokens: int | None = None
    temperature: float | None = None
    top_p: float | None = None
    stop: list[str] | None = None
    stream: bool = False
    presence_penalty: float | None = None
    frequency_penalty: float | None = None
    seed: int | None = None
    user: str | None = None
    response_format: dict[str, Any] | None = None
    logit_bias: dict[str, int] | None = None

    model_config = ConfigDict(extra="ignore", frozen=True)

    @field_validator("stop", mode="before")
    @classmethod
    def _coerce_stop(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [value] if value else None
        return value

    @field_validator("provider", "model", mode="before")
    @classmethod
    def _strip(cls, value: Any) -> Any:
        if value is None:
            return ""
        return value.strip() if isinstance(value, str) else value

    def extra_options(self) -> dict[str, Any]:
        options = {
            "presence_penalty": self.presence_penalty,
            "frequency_penalty": self.frequency_penalty,
            "seed": self.seed,
            "user": self.user,
            "response_format": self.response_format,
            "logit_bias": self.logit_bias,
        }
        return {key: value for key, value in options.items() if value is not None}


class Usage(BaseModel):
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


class ChatCompletionMessage(BaseModel):
    role: str = Role.ASSISTANT.value
    content: str | list[ContentPart] | None = ""
    tool_calls: list[ToolCall] | None = None


class ChatCompletionChoice(BaseModel):
    index: int = 0
    message: ChatCompletionMessage
    finish_reason: str | None = None


class ChatCompletionResponse(BaseModel):
    id: str
    object: Literal["chat.completion"] = "chat.completion"
    created: int
    model: str
    choices: list[ChatCompletionChoice]
    usage: Usage = Field(default_factory=Usage)

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True)


class ChatCompletionStreamDelta(BaseModel):
    role: str | None = None
    content: str | None = None
    tool_calls: list[ToolCall] | None = None


class ChatCompletionStreamChoice(BaseModel):
    index: int = 0
    delta: ChatCompletionStreamDelta = Field(default_factory=ChatCompletionStreamDelta)
    finish_reason: str | None = None


class ChatCompletionStreamResponse(BaseModel):
    id: str
    object: Literal["chat.completion.chunk"] = "chat.completion.chunk"
    created: int
    model: str
    choices: list[ChatCompletionStreamChoice]

    def to_wire(self) -> dict[str, Any]:
        # finish_reason stays present (as null) while empty delta fields are dropped.
        payload = self.model_dump(mode="json", exclude={"choices"})
        payload["choices"] = [
            {
                "index": choice.index,
                "delta": choice.delta.model_dump(mode="json", exclude_none=True),
                "finish_reason": choice.finish_reason,
            }
            for choice in self.choices
        ]
        return payload
