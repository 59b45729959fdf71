from __future__ import annotations

import logging
import time
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any
from uuid import uuid4

from open_llm_adapter.backends.base import (
    AdapterRegistry,
    BackendAdapter,
    BackendClient,
    BackendStream,
)
from open_llm_adapter.credential_pool import CredentialPool
from open_llm_adapter.errors import AdapterError, BackendClientError, InvalidRequestError
from open_llm_adapter.schemas import ChatCompletionResponse, ChatRequest
from open_llm_adapter.stream_bridge import ByteSink, ChunkStream, StreamBridge, write_sse
from open_llm_adapter.translation.messages import (
    MessageTranslator,
    backend_usage_to_usage,
)
from open_llm_adapter.translation.types import BackendMessage

logger = logging.getLogger("uvicorn.error")


class RouterStage(str, Enum):
    IDLE = "idle"
    CREDENTIAL_SELECTED = "credential_selected"
    DECRYPTED = "decrypted"
    CLIENT_BUILT = "client_built"
    TOOLS_BOUND = "tools_bound"
    DISPATCHED = "dispatched"
    RESPONSE_TRANSLATED = "response_translated"
    STREAM_BRIDGED = "stream_bridged"
    DRAINING = "draining"
    DONE = "done"
    FAILED = "failed"


@dataclass(slots=True)
class RequestTrace:
    request_id: str
    provider: str
    model: str
    stream: bool
    started_at: float = field(default_factory=time.perf_counter)
    stages: list[RouterStage] = field(default_factory=lambda: [RouterStage.IDLE])
    credential_name: str | None = None
    failed_stage: str | None = None
    error_type: str | None = None
    outcome: str | None = None

    @property
    def state(self) -> RouterStage:
        return self.stages[-1]

    @property
    def completion_id(self) -> str:
        return f"chatcmpl-{self.request_id}"

    @property
    def latency_ms(self) -> float:
        return round((time.perf_counter() - self.started_at) * 1000.0, 3)

    def advance(self, stage: RouterStage) -> None:
        self.stages.append(stage)

    def fail(self, exc: BaseException) -> None:
        self.failed_stage = getattr(exc, "stage", "internal")
        self.error_type = exc.__class__.__name__
        self.outcome = "error"
        self.stages.append(RouterStage.FAILED)


class _ClientOwnedStream:
    """Backend stream that also releases its client when closed."""

    def __init__(self, stream: BackendStream, client: BackendClient) -> None:
        self._stream = stream
        self._client = client

    def __aiter__(self) -> AsyncIterator[BackendMessage]:
        return self._stream.__aiter__()

    async def aclose(self) -> None:
        try:
            await self._stream.aclose()
        finally:
            await self._client.aclose()


class ProviderRouter:
    """Per-request facade: credential -> client -> tools -> dispatch -> translate."""

    def __init__(
        self,
        *,
        registry: AdapterRegistry,
        pool: CredentialPool,
        translator: MessageTranslator,
        bridge: StreamBridge | None = None,
        default_provider: str | None = None,
        audit_hook: Callable[[dict[str, Any]], None] | None = None,
        trace_hook: Callable[[RequestTrace], None] | None = None,
    ) -> None:
        self.registry = registry
        self.pool = pool
        self.translator = translator
        self.bridge = bridge or StreamBridge(translator)
        self.default_provider = default_provider
        self._audit_hook = audit_hook
        self._trace_hook = trace_hook

    def audit(self, event: str, **fields: Any) -> None:
        if self._audit_hook is None:
            return
        try:
            self._audit_hook({"event": event, **fields})
        except Exception as exc:
            logger.warning("audit_hook_failed event=%s error=%s", event, exc)

    async def chat_completion(self, request: ChatRequest) -> ChatCompletionResponse:
        trace = self._new_trace(request, stream=False)
        try:
            adapter = self._resolve_adapter(trace, request)
            client, messages = await self._prepare(trace, adapter, request)
            try:
                trace.advance(RouterStage.DISPATCHED)
                message = await client.generate(request, messages)
            finally:
                await client.aclose()
            choice = client.translate_inbound(message)
            trace.advance(RouterStage.RESPONSE_TRANSLATED)
            response = ChatCompletionResponse(
                id=trace.completion_id,
                created=int(time.time()),
                model=request.model,
                choices=[choice],
                usage=backend_usage_to_usage(message.usage),
            )
        except Exception as exc:
            self._finish(trace, exc)
            raise
        trace.advance(RouterStage.DONE)
        self._finish(trace, None)
        return response

    async def stream_chat_completion(self, request: ChatRequest) -> ChunkStream:
        trace = self._new_trace(request, stream=True)
        try:
            adapter = self._resolve_adapter(trace, request)
            client, messages = await self._prepare(trace, adapter, request)
            try:
                trace.advance(RouterStage.DISPATCHED)
                backend_stream = await client.open_stream(request, messages)
            except BaseException:
                await client.aclose()
                raise
        except Exception as exc:
            self._finish(trace, exc)
            raise

        def on_finish(stream: ChunkStream, error: BaseException | None) -> None:
            error = error or stream.worker_error
            if error is None:
                trace.advance(RouterStage.DONE)
                if not stream.completed:
                    trace.outcome = "cancelled"
            self._finish(trace, error)

        stream = self.bridge.bridge(
            _ClientOwnedStream(backend_stream, client),
            completion_id=trace.completion_id,
            model=request.model,
            on_finish=on_finish,
        )
        trace.advance(RouterStage.STREAM_BRIDGED)
        trace.advance(RouterStage.DRAINING)
        return stream

    async def create_chat_completion(
        self,
        request: ChatRequest,
        writer: ByteSink | None = None,
    ) -> ChatCompletionResponse | ChunkStream | None:
        """Non-streaming requests return the response; a stream is written to ``writer`` if given."""
        if not request.stream:
            return await self.chat_completion(request)
        stream = await self.stream_chat_completion(request)
        if writer is None:
            return stream
        await write_sse(stream, writer)
        return None

    def _new_trace(self, request: ChatRequest, *, stream: bool) -> RequestTrace:
        provider = (request.provider or self.default_provider or "").strip().lower()
        return RequestTrace(
            request_id=uuid4().hex[:12],
            provider=provider,
            model=request.model,
            stream=stream,
        )

    def _resolve_adapter(self, trace: RequestTrace, request: ChatRequest) -> BackendAdapter:
        adapter = self.registry.get(trace.provider)
        if not request.model:
            raise InvalidRequestError("model must be non-empty")
        return adapter

    async def _prepare(
        self,
        trace: RequestTrace,
        adapter: BackendAdapter,
        request: ChatRequest,
    ) -> tuple[BackendClient, list[BackendMessage]]:
        credential = self.pool.select_credential(adapter.provider)
        trace.credential_name = credential.name
        trace.advance(RouterStage.CREDENTIAL_SELECTED)
        logger.info(
            "credential_selected request_id=%s provider=%s environment=%s credential=%s",
            trace.request_id,
            adapter.provider,
            self.pool.environment,
            credential.name,
        )
        self.audit(
            "credential_selected",
            request_id=trace.request_id,
            provider=adapter.provider,
            environment=self.pool.environment,
            model=request.model,
            credential=credential.name,
        )

        credential = self.pool.decrypt_credential(credential)
        trace.advance(RouterStage.DECRYPTED)

        try:
            client = adapter.build_client(
                credential, model=request.model, translator=self.translator
            )
        except AdapterError:
            raise
        except Exception as exc:
            raise BackendClientError(
                f"could not build {adapter.provider} client: {exc}"
            ) from exc
        trace.advance(RouterStage.CLIENT_BUILT)

        try:
            binding = self.translator.resolve_tool_binding(request)
            if binding.is_bound:
                client.bind_tools(binding)
                trace.advance(RouterStage.TOOLS_BOUND)
            messages = await client.translate_outbound(request)
        except BaseException:
            await client.aclose()
            raise
        return client, messages

    def _finish(self, trace: RequestTrace, error: BaseException | None) -> None:
        if error is not None:
            trace.fail(error)
            logger.warning(
                "chat_completion_failed request_id=%s provider=%s model=%s stage=%s "
                "error_type=%s error=%s",
                trace.request_id,
                trace.provider,
                trace.model,
                trace.failed_stage,
                trace.error_type,
                error,
            )
        else:
            trace.outcome = trace.outcome or "ok"
            logger.info(
                "chat_completion_done request_id=%s provider=%s model=%s stream=%s "
                "outcome=%s latency_ms=%.2f",
                trace.request_id,
                trace.provider,
                trace.model,
                trace.stream,
                trace.outcome,
                trace.latency_ms,
            )
        self.audit(
            "chat_completion_terminal",
            request_id=trace.request_id,
            provider=trace.provider,
            model=trace.model,
            stream=trace.stream,
            credential=trace.credential_name,
            outcome=trace.outcome,
            error_type=trace.error_type,
            stage=trace.failed_stage,
            states=[stage.value for stage in trace.stages],
            latency_ms=trace.latency_ms,
        )
        if self._trace_hook is not None:
            self._trace_hook(trace)
