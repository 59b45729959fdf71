from __future__ import annotations

import base64
import binascii
import json
import logging
import re
from collections.abc import AsyncIterator, Callable, Mapping
from contextlib import AsyncExitStack
from typing import Any

import aioboto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from open_llm_adapter.backends.base import BackendAdapter, BackendClient
from open_llm_adapter.config import BedrockCredential, Credential
from open_llm_adapter.config.settings import Settings
from open_llm_adapter.errors import BackendAPIError, BackendClientError
from open_llm_adapter.schemas import ChatRequest, PartType, Role
from open_llm_adapter.translation.messages import MessageTranslator
from open_llm_adapter.translation.types import (
    BackendMessage,
    BackendPart,
    BackendToolCall,
    BackendUsage,
    ToolBinding,
    ToolBindingMode,
)

logger = logging.getLogger("uvicorn.error")

SERVICE_NAME = "bedrock-runtime"

_IMAGE_FORMATS = {
    "image/png": "png",
    "image/jpeg": "jpeg",
    "image/jpg": "jpeg",
    "image/gif": "gif",
    "image/webp": "webp",
}
_DOCUMENT_FORMATS = {
    "application/pdf": "pdf",
    "text/csv": "csv",
    "application/msword": "doc",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document": "docx",
    "application/vnd.ms-excel": "xls",
    "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet": "xlsx",
    "text/html": "html",
    "text/plain": "txt",
    "text/markdown": "md",
}
_VIDEO_FORMATS = {
    "video/mp4": "mp4",
    "video/webm": "webm",
    "video/quicktime": "mov",
    "video/x-matroska": "mkv",
}
_STREAM_EXCEPTION_EVENTS = (
    "internalServerException",
    "modelStreamErrorException",
    "validationException",
    "throttlingException",
    "serviceUnavailableException",
)
_DOCUMENT_NAME_INVALID = re.compile(r"[^A-Za-z0-9\s\-\(\)\[\]]+")


def parse_tool_arguments(arguments: str) -> Any:
    if not arguments.strip():
        return {}
    try:
        parsed = json.loads(arguments)
    except ValueError:
        return {"arguments": arguments}
    return parsed if isinstance(parsed, dict) else {"arguments": parsed}


def _decode_bytes(part: BackendPart) -> bytes | None:
    try:
        return base64.b64decode(part.data, validate=True)
    except (binascii.Error, ValueError):
        logger.warning("bedrock_media_not_base64 type=%s", part.type.value)
        return None


def _document_name(name: str | None) -> str:
    stem = (name or "file").rsplit(".", 1)[0]
    return _DOCUMENT_NAME_INVALID.sub(" ", stem).strip() or "file"


def _fallback_text(part: BackendPart) -> dict[str, Any]:
    logger.warning(
        "bedrock_media_degraded_to_text type=%s inlined=%s", part.type.value, part.inlined
    )
    return {"text": f"[{part.type.value}: {part.url or part.name or 'inline data'}]"}


def part_to_block(part: BackendPart) -> dict[str, Any]:
    if part.type == PartType.TEXT:
        return {"text": part.text}
    if not part.inlined:
        return _fallback_text(part)
    raw = _decode_bytes(part)
    if raw is None:
        return _fallback_text(part)
    mime_type = part.mime_type.lower()
    if part.type == PartType.IMAGE_URL and mime_type in _IMAGE_FORMATS:
        return {"image": {"format": _IMAGE_FORMATS[mime_type], "source": {"bytes": raw}}}
    if part.type == PartType.FILE_URL and mime_type in _DOCUMENT_FORMATS:
        return {
            "document": {
                "format": _DOCUMENT_FORMATS[mime_type],
                "name": _document_name(part.name),
                "source": {"bytes": raw},
            }
        }
    if part.type == PartType.VIDEO_URL and mime_type in _VIDEO_FORMATS:
        return {"video": {"format": _VIDEO_FORMATS[mime_type], "source": {"bytes": raw}}}
    return _fallback_text(part)


def _content_blocks(message: BackendMessage) -> list[dict[str, Any]]:
    if message.parts:
        blocks = [part_to_block(part) for part in message.parts]
    elif message.text:
        blocks = [{"text": message.text}]
    else:
        blocks = []
    for call in message.tool_calls:
        blocks.append(
            {
                "toolUse": {
                    "toolUseId": call.id,
                    "name": call.name,
                    "input": parse_tool_arguments(call.arguments),
                }
            }
        )
    return blocks


def build_converse_messages(
    messages: list[BackendMessage],
) -> tuple[list[dict[str, Any]], list[dict[str, Any]]]:
    """Split into (system, messages); consecutive same-role turns are merged."""
    system: list[dict[str, Any]] = []
    converse: list[dict[str, Any]] = []
    for message in messages:
        if message.role == Role.SYSTEM:
            text = message.joined_text()
            if text:
                system.append({"text": text})
            continue
        if message.role == Role.TOOL:
            role = "user"
            blocks = [
                {
                    "toolResult": {
                        "toolUseId": message.tool_call_id or "",
                        "content": [{"text": message.joined_text()}],
                    }
                }
            ]
        else:
            role = "assistant" if message.role == Role.ASSISTANT else "user"
            blocks = _content_blocks(message)
        if not blocks:
            continue
        if converse and converse[-1]["role"] == role:
            converse[-1]["content"].extend(blocks)
        else:
            converse.append({"role": role, "content": blocks})
    return system, converse


def build_tool_config(binding: ToolBinding) -> dict[str, Any] | None:
    if not binding.is_bound:
        return None
    tools = []
    for tool in binding.tools:
        tool_spec: dict[str, Any] = {"name": tool.name, "inputSchema": {"json": tool.parameters}}
        if tool.description:
            tool_spec["description"] = tool.description
        tools.append({"toolSpec": tool_spec})
    if binding.mode == ToolBindingMode.FORCED:
        choice: dict[str, Any] = {"any": {}}
    elif binding.tool_name:
        choice = {"tool": {"name": binding.tool_name}}
    else:
        choice = {"auto": {}}
    return {"tools": tools, "toolChoice": choice}


def _usage_from_event(raw: Any) -> BackendUsage | None:
    if not isinstance(raw, Mapping):
        return None
    return BackendUsage(
        prompt_tokens=int(raw.get("inputTokens") or 0),
        completion_tokens=int(raw.get("outputTokens") or 0),
        total_tokens=int(raw.get("totalTokens") or 0),
    )


def message_from_converse(response: Mapping[str, Any]) -> BackendMessage:
    output = response.get("output") or {}
    raw_message = output.get("message") or {}
    texts: list[str] = []
    tool_calls: list[BackendToolCall] = []
    for block in raw_message.get("content") or []:
        if "text" in block:
            texts.append(block["text"])
        elif "toolUse" in block:
            tool_use = block["toolUse"]
            tool_calls.append(
                BackendToolCall(
                    id=tool_use.get("toolUseId", ""),
                    name=tool_use.get("name", ""),
                    arguments=json.dumps(tool_use.get("input") or {}, ensure_ascii=False),
                )
            )
    return BackendMessage(
        role=Role.ASSISTANT,
        text="".join(texts),
        tool_calls=tool_calls,
        finish_reason=response.get("stopReason"),
        usage=_usage_from_event(response.get("usage")),
    )


def api_error_from_client_error(provider: str, exc: ClientError) -> BackendAPIError:
    error = exc.response.get("Error") or {}
    metadata = exc.response.get("ResponseMetadata") or {}
    return BackendAPIError(
        str(error.get("Message") or exc),
        provider=provider,
        status_code=metadata.get("HTTPStatusCode"),
        error_type=error.get("Code"),
    )


class BedrockStream:
    """Translates ConverseStream events; the stop reason waits for the usage event."""

    def __init__(self, events: Any, exit_stack: AsyncExitStack, *, provider: str) -> None:
        self._events = events
        self._exit_stack = exit_stack
        self._provider = provider

    async def __aiter__(self) -> AsyncIterator[BackendMessage]:
        pending_stop: str | None = None
        tool_indexes: dict[int, int] = {}
        async for event in self._events:
            for name in _STREAM_EXCEPTION_EVENTS:
                if name in event:
                    raise BackendAPIError(
                        str(event[name].get("message") or name),
                        provider=self._provider,
                        error_type=name,
                    )
            if "messageStart" in event:
                yield BackendMessage(role=Role.ASSISTANT)
            elif "contentBlockStart" in event:
                payload = event["contentBlockStart"]
                tool_use = (payload.get("start") or {}).get("toolUse")
                if tool_use:
                    block_index = payload.get("contentBlockIndex", 0)
                    tool_indexes[block_index] = len(tool_indexes)
                    yield BackendMessage(
                        tool_calls=[
                            BackendToolCall(
                                id=tool_use.get("toolUseId", ""),
                                name=tool_use.get("name", ""),
                                index=tool_indexes[block_index],
                            )
                        ]
                    )
            elif "contentBlockDelta" in event:
                payload = event["contentBlockDelta"]
                delta = payload.get("delta") or {}
                if "text" in delta:
                    yield BackendMessage(text=delta["text"])
                elif "toolUse" in delta:
                    yield BackendMessage(
                        tool_calls=[
                            BackendToolCall(
                                arguments=delta["toolUse"].get("input", ""),
                                index=tool_indexes.get(payload.get("contentBlockIndex", 0)),
                            )
                        ]
                    )
            elif "messageStop" in event:
                pending_stop = event["messageStop"].get("stopReason") or "end_turn"
            elif "metadata" in event:
                yield BackendMessage(
                    finish_reason=pending_stop,
                    usage=_usage_from_event(event["metadata"].get("usage")),
                )
                pending_stop = None
        if pending_stop is not None:
            yield BackendMessage(finish_reason=pending_stop)

    async def aclose(self) -> None:
        await self._exit_stack.aclose()


class BedrockClient(BackendClient):
    def __init__(
        self,
        *,
        provider: str,
        credential: BedrockCredential,
        model: str,
        translator: MessageTranslator,
        session: Any,
        boto_config: Config,
    ) -> None:
        super().__init__(
            provider=provider, credential=credential, model=model, translator=translator
        )
        self._session = session
        self._boto_config = boto_config

    def build_request(
        self, request: ChatRequest, messages: list[BackendMessage]
    ) -> dict[str, Any]:
        system, converse = build_converse_messages(messages)
        kwargs: dict[str, Any] = {"modelId": self.model, "messages": converse}
        if system:
            kwargs["system"] = system
        inference: dict[str, Any] = {}
        if request.max_tokens is not None:
            inference["maxTokens"] = request.max_tokens
        if request.temperature is not None:
            inference["temperature"] = request.temperature
        if request.top_p is not None:
            inference["topP"] = request.top_p
        if request.stop:
            inference["stopSequences"] = list(request.stop)
        if inference:
            kwargs["inferenceConfig"] = inference
        tool_config = build_tool_config(self.tool_binding)
        if tool_config is not None:
            kwargs["toolConfig"] = tool_config
        return kwargs

    def _client_context(self) -> Any:
        return self._session.client(SERVICE_NAME, config=self._boto_config)

    async def generate(
        self, request: ChatRequest, messages: list[BackendMessage]
    ) -> BackendMessage:
        kwargs = self.build_request(request, messages)
        try:
            async with self._client_context() as client:
                response = await client.converse(**kwargs)
        except ClientError as exc:
            raise api_error_from_client_error(self.provider, exc) from exc
        except BotoCoreError as exc:
            raise BackendAPIError(
                str(exc), provider=self.provider, error_type=exc.__class__.__name__
            ) from exc
        return message_from_converse(response)

    async def open_stream(
        self, request: ChatRequest, messages: list[BackendMessage]
    ) -> BedrockStream:
        kwargs = self.build_request(request, messages)
        exit_stack = AsyncExitStack()
        try:
            client = await exit_stack.enter_async_context(self._client_context())
            response = await client.converse_stream(**kwargs)
        except ClientError as exc:
            await exit_stack.aclose()
            raise api_error_from_client_error(self.provider, exc) from exc
        except BotoCoreError as exc:
            await exit_stack.aclose()
            raise BackendAPIError(
                str(exc), provider=self.provider, error_type=exc.__class__.__name__
            ) from exc
        return BedrockStream(response["stream"], exit_stack, provider=self.provider)


class BedrockAdapter(BackendAdapter):
    provider = "bedrock"
    credential_model = BedrockCredential

    def __init__(
        self,
        settings: Settings,
        *,
        session_factory: Callable[..., Any] = aioboto3.Session,
    ) -> None:
        super().__init__(settings)
        self._session_factory = session_factory

    def build_client(
        self,
        credential: Credential,
        *,
        model: str,
        translator: MessageTranslator,
    ) -> BedrockClient:
        if not isinstance(credential, BedrockCredential):
            raise BackendClientError(
                f"credential '{credential.name}' is not a bedrock credential"
            )
        if not credential.region:
            raise BackendClientError(f"bedrock credential '{credential.name}' has no region")

        boto_config = Config(
            connect_timeout=self.settings.backend_connect_timeout_seconds,
            read_timeout=self.timeout_seconds(credential),
            proxies=(
                {"http": credential.proxy, "https": credential.proxy}
                if credential.proxy
                else None
            ),
        )
        # Empty keys fall back to the default AWS credential chain.
        session = self._session_factory(
            aws_access_key_id=credential.access_key or None,
            aws_secret_access_key=credential.secret_access_key or None,
            aws_session_token=credential.session_token or None,
            region_name=credential.region,
        )
        return BedrockClient(
            provider=self.provider,
            credential=credential,
            model=model,
            translator=translator,
            session=session,
            boto_config=boto_config,
        )
