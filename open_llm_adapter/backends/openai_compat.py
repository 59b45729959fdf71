from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator
from typing import Any

import httpx

from open_llm_adapter.backends.base import BackendAdapter, BackendClient
from open_llm_adapter.config import Credential, OpenAICompatibleCredential
from open_llm_adapter.config.settings import Settings
from open_llm_adapter.errors import BackendAPIError, BackendClientError
from open_llm_adapter.schemas import ChatRequest, PartType, Role
from open_llm_adapter.translation.messages import MessageTranslator
from open_llm_adapter.translation.types import (
    BackendMessage,
    BackendPart,
    BackendToolCall,
    BackendUsage,
    ToolBindingMode,
)

logger = logging.getLogger("uvicorn.error")

_ERROR_BODY_PREVIEW_CHARS = 500


def request_error_details(exc: httpx.RequestError) -> dict[str, Any]:
    error_repr = repr(exc)
    details: dict[str, Any] = {
        "error": str(exc).strip() or error_repr,
        "error_type": exc.__class__.__name__.strip() or "RequestError",
        "is_timeout": isinstance(exc, httpx.TimeoutException),
    }
    try:
        details["request_url"] = str(exc.request.url)
    except RuntimeError:
        details["request_url"] = None
    return details


def transport_error(provider: str, exc: httpx.RequestError) -> BackendAPIError:
    details = request_error_details(exc)
    logger.warning(
        "backend_request_error provider=%s url=%s error_type=%s timeout=%s error=%s",
        provider,
        details["request_url"],
        details["error_type"],
        details["is_timeout"],
        details["error"],
    )
    return BackendAPIError(
        f"could not reach backend ({details['error_type']}): {details['error']}",
        provider=provider,
        error_type=details["error_type"],
    )


def api_error_from_body(provider: str, status_code: int, body: bytes) -> BackendAPIError:
    """Build a BackendAPIError from an OpenAI-style ``{"error": {...}}`` body."""
    text = body.decode("utf-8", errors="replace").strip()
    message = text[:_ERROR_BODY_PREVIEW_CHARS] or f"backend returned HTTP {status_code}"
    error_type: str | None = None
    code: str | None = None
    param: str | None = None
    try:
        payload = json.loads(text) if text else None
    except ValueError:
        payload = None
    error = payload.get("error") if isinstance(payload, dict) else None
    if isinstance(error, dict):
        message = str(error.get("message") or message)
        error_type = _optional_str(error.get("type"))
        code = _optional_str(error.get("code"))
        param = _optional_str(error.get("param"))
    elif isinstance(error, str) and error.strip():
        message = error.strip()
    elif isinstance(payload, dict) and isinstance(payload.get("message"), str):
        message = payload["message"]
    return BackendAPIError(
        message,
        provider=provider,
        status_code=status_code,
        error_type=error_type,
        code=code,
        param=param,
    )


def _optional_str(value: Any) -> str | None:
    if value is None or value == "":
        return None
    return str(value)


def _part_to_wire(part: BackendPart) -> dict[str, Any]:
    if part.type == PartType.TEXT:
        return {"type": "text", "text": part.text}
    if part.type == PartType.IMAGE_URL:
        image_url: dict[str, Any] = {"url": part.data_url()}
        if part.detail:
            image_url["detail"] = part.detail
        return {"type": "image_url", "image_url": image_url}
    if part.type == PartType.AUDIO_URL and part.inlined:
        audio_format = part.mime_type.rsplit("/", 1)[-1] or "mp3"
        return {
            "type": "input_audio",
            "input_audio": {"data": part.data, "format": audio_format},
        }
    if part.type == PartType.FILE_URL:
        file_payload: dict[str, Any] = {"filename": part.name}
        if part.inlined:
            file_payload["file_data"] = part.data_url()
        else:
            file_payload["file_url"] = part.url
        return {"type": "file", "file": file_payload}
    return {"type": part.type.value, part.type.value: {"url": part.data_url()}}


def message_to_wire(message: BackendMessage) -> dict[str, Any]:
    payload: dict[str, Any] = {"role": (message.role or Role.USER).value}
    if message.parts:
        payload["content"] = [_part_to_wire(part) for part in message.parts]
    elif message.text or not message.tool_calls:
        payload["content"] = message.text
    else:
        payload["content"] = None
    if message.name:
        payload["name"] = message.name
    if message.tool_call_id:
        payload["tool_call_id"] = message.tool_call_id
    if message.tool_calls:
        payload["tool_calls"] = [
            {
                "id": call.id,
                "type": "function",
                "function": {"name": call.name, "arguments": call.arguments},
            }
            for call in message.tool_calls
        ]
    return payload


def _tool_calls_from_wire(raw_calls: Any, *, stream: bool) -> list[BackendToolCall]:
    if not isinstance(raw_calls, list):
        return []
    calls: list[BackendToolCall] = []
    for raw in raw_calls:
        if not isinstance(raw, dict):
            continue
        function = raw.get("function")
        if not isinstance(function, dict):
            function = {}
        index = raw.get("index") if stream else None
        calls.append(
            BackendToolCall(
                id=str(raw.get("id") or ""),
                # Streamed continuation deltas omit the type.
                type=str(raw.get("type") or "function"),
                name=str(function.get("name") or ""),
                arguments=str(function.get("arguments") or ""),
                index=index if isinstance(index, int) else None,
            )
        )
    return calls


def _usage_from_wire(raw: Any) -> BackendUsage | None:
    if not isinstance(raw, dict):
        return None
    return BackendUsage(
        prompt_tokens=int(raw.get("prompt_tokens") or 0),
        completion_tokens=int(raw.get("completion_tokens") or 0),
        total_tokens=int(raw.get("total_tokens") or 0),
    )


def _role_from_wire(value: Any) -> Role | None:
    try:
        return Role(value) if value else None
    except ValueError:
        return Role.ASSISTANT


def message_from_completion(body: dict[str, Any], provider: str) -> BackendMessage:
    choices = body.get("choices")
    if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
        raise BackendAPIError("backend response has no choices", provider=provider)
    choice = choices[0]
    raw_message = choice.get("message")
    if not isinstance(raw_message, dict):
        raw_message = {}
    content = raw_message.get("content")
    return BackendMessage(
        role=Role.ASSISTANT,
        text=content if isinstance(content, str) else "",
        tool_calls=_tool_calls_from_wire(raw_message.get("tool_calls"), stream=False),
        finish_reason=choice.get("finish_reason"),
        usage=_usage_from_wire(body.get("usage")),
    )


def message_from_chunk(event: dict[str, Any]) -> BackendMessage | None:
    choices = event.get("choices")
    if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
        return None
    choice = choices[0]
    delta = choice.get("delta")
    if not isinstance(delta, dict):
        delta = {}
    content = delta.get("content")
    return BackendMessage(
        role=_role_from_wire(delta.get("role")),
        text=content if isinstance(content, str) else "",
        tool_calls=_tool_calls_from_wire(delta.get("tool_calls"), stream=True),
        finish_reason=choice.get("finish_reason"),
        usage=_usage_from_wire(event.get("usage")),
    )


async def iter_sse_data_json(upstream: httpx.Response) -> AsyncIterator[dict[str, Any]]:
    async for line in upstream.aiter_lines():
        if not line or not line.startswith("data:"):
            continue
        payload = line[5:].strip()
        if not payload or payload == "[DONE]":
            continue
        try:
            parsed = json.loads(payload)
        except ValueError:
            continue
        if isinstance(parsed, dict):
            yield parsed


class OpenAICompatibleStream:
    def __init__(self, upstream: httpx.Response, *, provider: str) -> None:
        self._upstream = upstream
        self._provider = provider

    async def __aiter__(self) -> AsyncIterator[BackendMessage]:
        async for event in iter_sse_data_json(self._upstream):
            error = event.get("error")
            if error:
                raise api_error_from_body(
                    self._provider,
                    self._upstream.status_code,
                    json.dumps(event).encode("utf-8"),
                )
            message = message_from_chunk(event)
            if message is not None:
                yield message

    async def aclose(self) -> None:
        await self._upstream.aclose()


class OpenAICompatibleClient(BackendClient):
    def __init__(
        self,
        *,
        provider: str,
        credential: OpenAICompatibleCredential,
        model: str,
        translator: MessageTranslator,
        http_client: httpx.AsyncClient,
    ) -> None:
        super().__init__(
            provider=provider, credential=credential, model=model, translator=translator
        )
        self._http = http_client

    @property
    def endpoint_url(self) -> str:
        return f"{self.credential.base_url.rstrip('/')}/chat/completions"

    def request_headers(self) -> dict[str, str]:
        headers = {
            "Authorization": f"Bearer {self.credential.api_key}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }
        if self.credential.organization_id:
            headers["OpenAI-Organization"] = self.credential.organization_id
        return headers

    def build_payload(
        self,
        request: ChatRequest,
        messages: list[BackendMessage],
        *,
        stream: bool,
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": self.model,
            "messages": [message_to_wire(message) for message in messages],
            "stream": stream,
        }
        for key in ("max_tokens", "temperature", "top_p", "stop"):
            value = getattr(request, key)
            if value is not None:
                payload[key] = value
        payload.update(request.extra_options())

        binding = self.tool_binding
        if binding.is_bound:
            payload["tools"] = [
                {
                    "type": "function",
                    "function": {
                        "name": tool.name,
                        "description": tool.description,
                        "parameters": tool.parameters,
                    },
                }
                for tool in binding.tools
            ]
            if binding.mode == ToolBindingMode.FORCED:
                payload["tool_choice"] = "required"
            elif binding.tool_name:
                payload["tool_choice"] = {
                    "type": "function",
                    "function": {"name": binding.tool_name},
                }
        return payload

    async def generate(
        self, request: ChatRequest, messages: list[BackendMessage]
    ) -> BackendMessage:
        payload = self.build_payload(request, messages, stream=False)
        try:
            response = await self._http.post(
                self.endpoint_url, json=payload, headers=self.request_headers()
            )
        except httpx.RequestError as exc:
            raise transport_error(self.provider, exc) from exc
        if response.status_code >= 400:
            raise api_error_from_body(self.provider, response.status_code, response.content)
        try:
            body = response.json()
        except ValueError as exc:
            raise BackendAPIError(
                "backend returned a non-JSON body",
                provider=self.provider,
                status_code=response.status_code,
            ) from exc
        if not isinstance(body, dict):
            raise BackendAPIError(
                "backend returned an unexpected body",
                provider=self.provider,
                status_code=response.status_code,
            )
        return message_from_completion(body, self.provider)

    async def open_stream(
        self, request: ChatRequest, messages: list[BackendMessage]
    ) -> OpenAICompatibleStream:
        payload = self.build_payload(request, messages, stream=True)
        upstream_request = self._http.build_request(
            "POST", self.endpoint_url, json=payload, headers=self.request_headers()
        )
        try:
            upstream = await self._http.send(upstream_request, stream=True)
        except httpx.RequestError as exc:
            raise transport_error(self.provider, exc) from exc
        if upstream.status_code >= 400:
            body = await upstream.aread()
            await upstream.aclose()
            raise api_error_from_body(self.provider, upstream.status_code, body)
        return OpenAICompatibleStream(upstream, provider=self.provider)

    async def aclose(self) -> None:
        await self._http.aclose()


class OpenAICompatibleAdapter(BackendAdapter):
    credential_model = OpenAICompatibleCredential
    client_class: type[OpenAICompatibleClient] = OpenAICompatibleClient

    def __init__(
        self,
        provider: str,
        settings: Settings,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        super().__init__(settings)
        self.provider = provider.strip().lower()
        self._transport = transport

    def validate_credential(self, credential: Credential) -> None:
        if not getattr(credential, "api_key", ""):
            raise BackendClientError(
                f"credential '{credential.name}' for provider '{self.provider}' has no api_key"
            )
        if not getattr(credential, "base_url", ""):
            raise BackendClientError(
                f"credential '{credential.name}' for provider '{self.provider}' has no base_url"
            )

    def build_http_client(self, credential: Credential) -> httpx.AsyncClient:
        timeout = httpx.Timeout(
            self.timeout_seconds(credential),
            connect=self.settings.backend_connect_timeout_seconds,
        )
        if self._transport is not None:
            return httpx.AsyncClient(timeout=timeout, transport=self._transport)
        try:
            return httpx.AsyncClient(timeout=timeout, proxy=credential.proxy)
        except (ValueError, TypeError, httpx.InvalidURL) as exc:
            raise BackendClientError(
                f"invalid proxy for credential '{credential.name}': {exc}"
            ) from exc

    def build_client(
        self,
        credential: Credential,
        *,
        model: str,
        translator: MessageTranslator,
    ) -> OpenAICompatibleClient:
        self.validate_credential(credential)
        return self.client_class(
            provider=self.provider,
            credential=credential,  # type: ignore[arg-type]
            model=model,
            translator=translator,
            http_client=self.build_http_client(credential),
        )
