from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from typing import Any

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, Response, StreamingResponse
from pydantic import ValidationError

from open_llm_adapter.backends.registry import build_default_registry
from open_llm_adapter.config import ConfigSnapshot, ConfigStore
from open_llm_adapter.config.settings import get_settings
from open_llm_adapter.credential_pool import CredentialPool
from open_llm_adapter.errors import (
    AdapterError,
    BackendAPIError,
    InvalidRequestError,
    KeyInitError,
    NoEnabledCredentialError,
    StreamTransportError,
    ToolBindingError,
    UnsupportedProviderError,
)
from open_llm_adapter.gateway.audit import JsonlAuditLogger
from open_llm_adapter.router import ProviderRouter
from open_llm_adapter.schemas import ChatRequest
from open_llm_adapter.secret_codec import get_secret_codec
from open_llm_adapter.stream_bridge import (
    DONE_FRAME,
    ChunkStream,
    StreamBridge,
    encode_sse_frame,
    iter_sse_frames,
)
from open_llm_adapter.translation.media import MediaFetcher
from open_llm_adapter.translation.messages import MessageTranslator

app = FastAPI(
    title="Open-LLM Adapter",
    description="OpenAI-compatible chat completions over Azure, Bedrock and OpenAI-style backends.",
    version="0.1.0",
)

logger = logging.getLogger("uvicorn.error")


@app.on_event("startup")
async def startup() -> None:
    settings = get_settings()
    registry = build_default_registry(settings)
    config_store = await asyncio.to_thread(
        ConfigStore.from_settings, settings, registry.credential_models()
    )
    try:
        get_secret_codec(settings)
    except KeyInitError as exc:
        # Cached by the codec; requests needing decryption fail with it.
        logger.warning("secret_codec_unavailable error=%s", exc)

    media_fetcher = MediaFetcher(
        timeout_seconds=settings.media_fetch_timeout_seconds,
        max_bytes=settings.media_fetch_max_bytes,
        enabled=settings.media_fetch_enabled,
    )
    translator = MessageTranslator(media_fetcher=media_fetcher)
    audit_logger = JsonlAuditLogger(
        path=settings.audit_log_path,
        enabled=settings.audit_log_enabled,
    )
    app.state.settings = settings
    app.state.registry = registry
    app.state.config_store = config_store
    app.state.media_fetcher = media_fetcher
    app.state.audit_logger = audit_logger
    app.state.router = ProviderRouter(
        registry=registry,
        pool=CredentialPool(config_store, codec_factory=lambda: get_secret_codec(settings)),
        translator=translator,
        bridge=StreamBridge(translator, queue_size=settings.stream_queue_size),
        default_provider=settings.default_provider,
        audit_hook=audit_logger.log if audit_logger.enabled else None,
    )
    logger.info(
        (
            "startup complete environment=%s llm_config_path=%s providers=%s "
            "configured=%s audit_log_enabled=%s"
        ),
        settings.env,
        settings.llm_config_path,
        ",".join(registry.providers()),
        ",".join(sorted(config_store.snapshot.providers)) or "-",
        settings.audit_log_enabled,
    )


@app.on_event("shutdown")
async def shutdown() -> None:
    media_fetcher: MediaFetcher | None = getattr(app.state, "media_fetcher", None)
    if media_fetcher is not None:
        await media_fetcher.aclose()
    audit_logger: JsonlAuditLogger | None = getattr(app.state, "audit_logger", None)
    if audit_logger is not None:
        audit_logger.close()
    logger.info("shutdown complete")


def _status_code_for(exc: AdapterError) -> int:
    if isinstance(exc, BackendAPIError):
        if exc.status_code is not None and 400 <= exc.status_code < 500:
            return exc.status_code
        return 502
    if isinstance(exc, StreamTransportError):
        return 502
    if isinstance(exc, (InvalidRequestError, UnsupportedProviderError, ToolBindingError)):
        return 400
    if isinstance(exc, NoEnabledCredentialError):
        return 503
    return 500


def _error_body(exc: AdapterError) -> dict[str, Any]:
    payload = exc.to_dict()
    payload["code"] = payload.get("code") or exc.stage
    return {"error": payload}


def _build_models_response(snapshot: ConfigSnapshot) -> dict[str, Any]:
    created = int(snapshot.loaded_at)
    data = [
        {"id": model, "object": "model", "created": created, "owned_by": provider}
        for provider, models in snapshot.models_by_provider().items()
        for model in models
    ]
    return {"object": "list", "data": data}


async def _sse_body(stream: ChunkStream) -> AsyncIterator[bytes]:
    # DONE is held back so an error frame can still precede it.
    done_pending = False
    try:
        async for frame in iter_sse_frames(stream):
            if frame == DONE_FRAME:
                done_pending = True
                continue
            yield frame
    except AdapterError as exc:
        logger.warning(
            "chat_completion_stream_error id=%s stage=%s error_type=%s error=%s",
            stream.id,
            exc.stage,
            exc.__class__.__name__,
            exc,
        )
        yield encode_sse_frame(_error_body(exc))
        done_pending = True
    if done_pending:
        yield DONE_FRAME


@app.get("/health")
async def health() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/v1/models")
async def models() -> dict[str, Any]:
    config_store: ConfigStore = app.state.config_store
    return _build_models_response(config_store.snapshot)


@app.post("/v1/admin/reload")
async def reload_config() -> dict[str, Any]:
    config_store: ConfigStore = app.state.config_store
    snapshot = await asyncio.to_thread(config_store.reload)
    logger.info(
        "config_reloaded environment=%s providers=%s",
        snapshot.environment,
        ",".join(sorted(snapshot.providers)) or "-",
    )
    return {
        "status": "reloaded",
        "environment": snapshot.environment,
        "providers": sorted(snapshot.providers),
    }


@app.post("/v1/chat/completions")
async def chat_completions(request: Request) -> Response:
    try:
        payload = await request.json()
    except ValueError:
        raise InvalidRequestError("request body must be valid JSON") from None
    try:
        chat_request = ChatRequest.model_validate(payload)
    except ValidationError as exc:
        details = "; ".join(
            f"{'.'.join(str(item) for item in error['loc'])}: {error['msg']}"
            for error in exc.errors(include_url=False)
        )
        raise InvalidRequestError(f"invalid chat completion request: {details}") from None

    router: ProviderRouter = app.state.router
    if not chat_request.stream:
        response = await router.chat_completion(chat_request)
        return JSONResponse(content=response.to_wire())

    stream = await router.stream_chat_completion(chat_request)
    return StreamingResponse(
        _sse_body(stream),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@app.exception_handler(AdapterError)
async def adapter_error_handler(_: Request, exc: AdapterError) -> JSONResponse:
    status_code = _status_code_for(exc)
    if status_code >= 500:
        logger.warning("request_failed stage=%s status=%d error=%s", exc.stage, status_code, exc)
    return JSONResponse(status_code=status_code, content=_error_body(exc))


def run() -> None:
    import uvicorn

    uvicorn.run("open_llm_adapter.main:app", host="0.0.0.0", port=8000, reload=False)


if __name__ == "__main__":
    run()
