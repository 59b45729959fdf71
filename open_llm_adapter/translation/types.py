from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from open_llm_adapter.schemas import PartType, Role


class ToolBindingMode(str, Enum):
    NONE = "none"
    AUTO = "auto"
    FORCED = "forced"


@dataclass(slots=True)
class BackendPart:
    type: PartType
    text: str = ""
    url: str = ""
    # base64 payload once the media has been inlined
    data: str = ""
    mime_type: str = ""
    detail: str | None = None
    name: str | None = None

    @property
    def inlined(self) -> bool:
        return bool(self.data)

    def data_url(self) -> str:
        if self.data:
            return f"data:{self.mime_type or 'application/octet-stream'};base64,{self.data}"
        return self.url


@dataclass(slots=True)
class BackendToolCall:
    id: str = ""
    type: str = "function"
    name: str = ""
    arguments: str = ""
    index: int | None = None


@dataclass(slots=True)
class BackendUsage:
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


@dataclass(slots=True)
class BackendMessage:
    """Provider-neutral message exchanged between the translator and backends.

    Outbound messages always carry a role; streamed deltas only carry one
    on the first message of a stream.
    """

    role: Role | None = None
    text: str = ""
    parts: list[BackendPart] = field(default_factory=list)
    name: str | None = None
    tool_call_id: str | None = None
    tool_calls: list[BackendToolCall] = field(default_factory=list)
    finish_reason: str | None = None
    usage: BackendUsage | None = None

    def joined_text(self) -> str:
        if self.text or not self.parts:
            return self.text
        return "".join(part.text for part in self.parts if part.type == PartType.TEXT)


@dataclass(frozen=True, slots=True)
class ToolInfo:
    name: str
    description: str = ""
    parameters: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class ToolBinding:
    mode: ToolBindingMode = ToolBindingMode.NONE
    tools: tuple[ToolInfo, ...] = ()
    tool_name: str | None = None

    @property
    def is_bound(self) -> bool:
        return self.mode != ToolBindingMode.NONE


NO_TOOLS = ToolBinding()
