from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from typing import Any

from open_llm_adapter.errors import InvalidRequestError, ToolBindingError
from open_llm_adapter.schemas import (
    ChatCompletionChoice,
    ChatCompletionMessage,
    ChatCompletionStreamChoice,
    ChatCompletionStreamDelta,
    ChatMessage,
    ChatRequest,
    ContentPart,
    FinishReason,
    FunctionCall,
    ImageURL,
    MediaURL,
    PartType,
    ToolCall,
    ToolDefinition,
    ToolType,
    Usage,
)
from open_llm_adapter.translation.media import (
    DEFAULT_AUDIO_MIME_TYPE,
    DEFAULT_FILE_MIME_TYPE,
    DEFAULT_FILE_NAME,
    DEFAULT_VIDEO_MIME_TYPE,
    MediaFetcher,
    detect_mime_type,
    guess_mime_type_from_url,
    is_url,
    parse_data_url,
)
from open_llm_adapter.translation.types import (
    NO_TOOLS,
    BackendMessage,
    BackendPart,
    BackendToolCall,
    BackendUsage,
    ToolBinding,
    ToolBindingMode,
    ToolInfo,
)

logger = logging.getLogger("uvicorn.error")

FORCED_TOOL_CHOICES = frozenset({"required", "force"})

_DEFAULT_MEDIA_MIME_TYPES = {
    PartType.AUDIO_URL: DEFAULT_AUDIO_MIME_TYPE,
    PartType.VIDEO_URL: DEFAULT_VIDEO_MIME_TYPE,
    PartType.FILE_URL: DEFAULT_FILE_MIME_TYPE,
}


def normalize_finish_reason(
    raw: str | None,
    *,
    has_tool_calls: bool = False,
    required: bool = True,
) -> str | None:
    """Map a backend finish reason onto the canonical set.

    With ``required`` an empty value becomes ``tool_calls`` or ``stop``;
    otherwise it stays ``None`` (stream chunks before the last one).
    """
    parsed = FinishReason.parse(raw)
    if parsed is None:
        if not required:
            return None
        return FinishReason.TOOL_CALLS.value if has_tool_calls else FinishReason.STOP.value
    if parsed == FinishReason.UNKNOWN:
        logger.warning("finish_reason_coerced raw=%s coerced=stop", raw)
        return FinishReason.STOP.value
    return parsed.value


def backend_usage_to_usage(usage: BackendUsage | None) -> Usage:
    if usage is None:
        return Usage()
    total = usage.total_tokens or usage.prompt_tokens + usage.completion_tokens
    return Usage(
        prompt_tokens=usage.prompt_tokens,
        completion_tokens=usage.completion_tokens,
        total_tokens=total,
    )


class MessageTranslator:
    def __init__(self, *, media_fetcher: MediaFetcher | None = None) -> None:
        self._media_fetcher = media_fetcher

    # -- outbound --------------------------------------------------------

    async def to_backend_messages(self, request: ChatRequest) -> list[BackendMessage]:
        return [await self.to_backend_message(message) for message in request.messages]

    async def to_backend_message(self, message: ChatMessage) -> BackendMessage:
        translated = BackendMessage(
            role=message.role,
            name=message.name,
            tool_call_id=message.tool_call_id,
        )
        if isinstance(message.content, str):
            translated.text = message.content
        elif message.content:
            translated.parts = [
                await self._to_backend_part(part) for part in message.content
            ]
        if message.tool_calls:
            translated.tool_calls = self._to_backend_tool_calls(message.tool_calls)
        return translated

    def _to_backend_tool_calls(self, calls: Sequence[ToolCall]) -> list[BackendToolCall]:
        translated: list[BackendToolCall] = []
        for call in calls:
            if ToolType.parse(call.type) != ToolType.FUNCTION:
                logger.warning(
                    "assistant_tool_call_dropped id=%s type=%s", call.id, call.type
                )
                continue
            translated.append(
                BackendToolCall(
                    id=call.id,
                    type=ToolType.FUNCTION.value,
                    name=call.function.name,
                    arguments=call.function.arguments,
                    index=call.index,
                )
            )
        return translated

    async def _to_backend_part(self, part: ContentPart) -> BackendPart:
        if part.type == PartType.TEXT:
            return BackendPart(type=PartType.TEXT, text=part.text or "")

        media = part.media()
        if media is None or not media.url:
            raise InvalidRequestError(
                f"content part of type '{part.type.value}' is missing its url"
            )
        if part.type == PartType.IMAGE_URL:
            return await self._to_image_part(media)
        return self._to_media_part(part.type, media)

    async def _to_image_part(self, image: ImageURL | MediaURL) -> BackendPart:
        url = image.url.strip()
        detail = getattr(image, "detail", None)
        declared = image.mime_type or ""

        data_url = parse_data_url(url)
        if data_url is not None:
            return BackendPart(
                type=PartType.IMAGE_URL,
                url=url,
                data=data_url.data,
                mime_type=declared or data_url.mime_type or detect_mime_type(data_url.data),
                detail=detail,
            )
        if is_url(url):
            inline = None
            if self._media_fetcher is not None:
                inline = await self._media_fetcher.inline(url)
            if inline is None:
                # Fetch failed or disabled: the backend gets the URL itself.
                return BackendPart(
                    type=PartType.IMAGE_URL,
                    url=url,
                    mime_type=declared or guess_mime_type_from_url(url) or "",
                    detail=detail,
                )
            return BackendPart(
                type=PartType.IMAGE_URL,
                url=url,
                data=inline.data,
                mime_type=declared or inline.mime_type,
                detail=detail,
            )
        return BackendPart(
            type=PartType.IMAGE_URL,
            data=url,
            mime_type=declared or detect_mime_type(url),
            detail=detail,
        )

    def _to_media_part(self, part_type: PartType, media: ImageURL | MediaURL) -> BackendPart:
        url = media.url.strip()
        default_mime_type = _DEFAULT_MEDIA_MIME_TYPES[part_type]
        name = getattr(media, "name", None)
        if part_type == PartType.FILE_URL and not name:
            name = DEFAULT_FILE_NAME

        data_url = parse_data_url(url)
        if data_url is not None:
            return BackendPart(
                type=part_type,
                url=url,
                data=data_url.data,
                mime_type=media.mime_type or data_url.mime_type or default_mime_type,
                name=name,
            )
        if is_url(url):
            return BackendPart(
                type=part_type,
                url=url,
                mime_type=media.mime_type
                or guess_mime_type_from_url(url)
                or default_mime_type,
                name=name,
            )
        return BackendPart(
            type=part_type,
            data=url,
            mime_type=media.mime_type or detect_mime_type(url, default=default_mime_type),
            name=name,
        )

    # -- tools -----------------------------------------------------------

    def to_tool_infos(self, tools: Iterable[ToolDefinition]) -> list[ToolInfo]:
        infos: list[ToolInfo] = []
        for position, tool in enumerate(tools):
            if ToolType.parse(tool.type) != ToolType.FUNCTION or tool.function is None:
                logger.warning(
                    "tool_definition_skipped position=%d type=%s", position, tool.type
                )
                continue
            function = tool.function
            name = function.name.strip()
            if not name:
                raise ToolBindingError(f"tool #{position} has no function name")
            parameters: Any = function.parameters
            if parameters is None:
                parameters = {"type": "object", "properties": {}}
            if not isinstance(parameters, dict):
                raise ToolBindingError(
                    f"parameters of tool '{name}' must be a JSON object schema"
                )
            infos.append(
                ToolInfo(name=name, description=function.description, parameters=parameters)
            )
        return infos

    def resolve_tool_binding(self, request: ChatRequest) -> ToolBinding:
        if not request.tools:
            return NO_TOOLS
        tools = tuple(self.to_tool_infos(request.tools))
        if not tools:
            return NO_TOOLS

        choice = request.tool_choice
        if isinstance(choice, str):
            if choice.strip().lower() in FORCED_TOOL_CHOICES:
                return ToolBinding(mode=ToolBindingMode.FORCED, tools=tools)
            return ToolBinding(mode=ToolBindingMode.AUTO, tools=tools)

        tool_name: str | None = None
        if isinstance(choice, dict):
            function = choice.get("function")
            if isinstance(function, dict) and isinstance(function.get("name"), str):
                tool_name = function["name"].strip() or None
        if tool_name is not None and tool_name not in {tool.name for tool in tools}:
            raise ToolBindingError(f"tool_choice names unknown tool '{tool_name}'")
        return ToolBinding(mode=ToolBindingMode.AUTO, tools=tools, tool_name=tool_name)

    # -- inbound ---------------------------------------------------------

    def from_backend_message(
        self, message: BackendMessage, index: int = 0
    ) -> ChatCompletionChoice:
        tool_calls = self.from_backend_tool_calls(message.tool_calls)
        content: str | list[ContentPart] | None
        if message.parts:
            content = [self._to_content_part(part) for part in message.parts]
        else:
            content = message.text
        return ChatCompletionChoice(
            index=index,
            message=ChatCompletionMessage(content=content, tool_calls=tool_calls or None),
            finish_reason=normalize_finish_reason(
                message.finish_reason, has_tool_calls=bool(tool_calls)
            ),
        )

    def to_stream_choice(
        self, message: BackendMessage, index: int = 0
    ) -> ChatCompletionStreamChoice:
        tool_calls = self.from_backend_stream_tool_calls(message.tool_calls)
        text = message.joined_text()
        return ChatCompletionStreamChoice(
            index=index,
            delta=ChatCompletionStreamDelta(
                role=message.role.value if message.role is not None else None,
                content=text or None,
                tool_calls=tool_calls or None,
            ),
            finish_reason=normalize_finish_reason(message.finish_reason, required=False),
        )

    def from_backend_tool_calls(self, calls: Sequence[BackendToolCall]) -> list[ToolCall]:
        return [self._from_backend_tool_call(call) for call in calls]

    def from_backend_stream_tool_calls(
        self, calls: Sequence[BackendToolCall]
    ) -> list[ToolCall]:
        translated: list[ToolCall] = []
        for call in calls:
            tool_call = self._from_backend_tool_call(call)
            if call.index is None:
                logger.warning("stream_tool_call_index_missing id=%s default=0", call.id)
                tool_call.index = 0
            else:
                tool_call.index = call.index
            translated.append(tool_call)
        return translated

    def _from_backend_tool_call(self, call: BackendToolCall) -> ToolCall:
        if ToolType.parse(call.type) != ToolType.FUNCTION:
            logger.warning(
                "tool_call_type_coerced id=%s type=%s coerced=function", call.id, call.type
            )
        return ToolCall(
            id=call.id,
            type=ToolType.FUNCTION.value,
            function=FunctionCall(name=call.name, arguments=call.arguments),
        )

    @staticmethod
    def _to_content_part(part: BackendPart) -> ContentPart:
        if part.type == PartType.TEXT:
            return ContentPart(type=PartType.TEXT, text=part.text)
        if part.type == PartType.IMAGE_URL:
            return ContentPart(
                type=PartType.IMAGE_URL,
                image_url=ImageURL(
                    url=part.data_url(),
                    detail=part.detail,
                    mime_type=part.mime_type or None,
                ),
            )
        media = MediaURL(url=part.data_url(), mime_type=part.mime_type or None, name=part.name)
        return ContentPart(type=part.type, **{part.type.value: media})
