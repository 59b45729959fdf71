from __future__ import annotations

import asyncio
import io
import json
from typing import Any

import pytest

from open_llm_adapter.errors import (
    BackendAPIError,
    DecryptError,
    InvalidRequestError,
    NoEnabledCredentialError,
    StreamTransportError,
    ToolBindingError,
    UnsupportedProviderError,
)
from open_llm_adapter.router import RequestTrace, RouterStage
from open_llm_adapter.schemas import ChatCompletionResponse, Role
from open_llm_adapter.secret_codec import SecretCodec
from open_llm_adapter.translation.types import BackendMessage, ToolBindingMode
from tests.backend_test_utils import (
    StubAdapter,
    StubStream,
    build_router,
    user_request,
)

WEATHER_TOOL = {
    "type": "function",
    "function": {
        "name": "get_weather",
        "parameters": {"type": "object", "properties": {"city": {"type": "string"}}},
    },
}


def test_non_stream_completion_walks_every_stage() -> None:
    adapter = StubAdapter()
    traces: list[RequestTrace] = []
    router = build_router(adapter, traces=traces)

    response = asyncio.run(router.chat_completion(user_request("hi")))

    assert isinstance(response, ChatCompletionResponse)
    assert response.choices[0].message.content == "hello"
    assert response.choices[0].finish_reason == "stop"
    assert response.model == "m"
    assert (response.usage.prompt_tokens, response.usage.total_tokens) == (3, 4)
    trace = traces[0]
    assert response.id == trace.completion_id
    assert response.id.startswith("chatcmpl-") and len(response.id) == len("chatcmpl-") + 12
    assert trace.stages == [
        RouterStage.IDLE,
        RouterStage.CREDENTIAL_SELECTED,
        RouterStage.DECRYPTED,
        RouterStage.CLIENT_BUILT,
        RouterStage.DISPATCHED,
        RouterStage.RESPONSE_TRANSLATED,
        RouterStage.DONE,
    ]
    assert trace.outcome == "ok"
    client = adapter.clients[0]
    assert client.closed
    assert client.generated_with[0].role == Role.USER
    assert client.generated_with[0].text == "hi"


def test_stream_completion_writes_exact_sse_frames() -> None:
    adapter = StubAdapter()
    traces: list[RequestTrace] = []
    router = build_router(adapter, traces=traces)
    sink = io.BytesIO()

    result = asyncio.run(
        router.create_chat_completion(user_request("hi", stream=True), writer=sink)
    )

    assert result is None
    body = sink.getvalue()
    first_frame = body.split(b"\n\n", 1)[0]
    created = json.loads(first_frame[len(b"data: ") :])["created"]
    completion_id = traces[0].completion_id

    def frame(choice: str) -> bytes:
        return (
            f'data: {{"id":"{completion_id}","object":"chat.completion.chunk",'
            f'"created":{created},"model":"m","choices":[{choice}]}}\n\n'
        ).encode("utf-8")

    assert body == (
        frame('{"index":0,"delta":{"role":"assistant","content":"hel"},"finish_reason":null}')
        + frame('{"index":0,"delta":{"content":"lo"},"finish_reason":null}')
        + frame('{"index":0,"delta":{},"finish_reason":"stop"}')
        + b"data: [DONE]\n\n"
    )
    assert traces[0].stages[-3:] == [
        RouterStage.STREAM_BRIDGED,
        RouterStage.DRAINING,
        RouterStage.DONE,
    ]
    assert adapter.clients[0].closed
    assert adapter.clients[0].stream.closed


def test_create_chat_completion_returns_stream_without_writer() -> None:
    router = build_router(StubAdapter())

    async def scenario() -> list[str]:
        stream = await router.create_chat_completion(user_request(stream=True))
        return [chunk.choices[0].delta.content or "" async for chunk in stream]

    assert "".join(asyncio.run(scenario())) == "hello"


def test_unsupported_provider_fails_before_credential_selection() -> None:
    adapter = StubAdapter()
    audit_events: list[dict[str, Any]] = []
    router = build_router(adapter, audit_events=audit_events)

    with pytest.raises(UnsupportedProviderError) as exc_info:
        asyncio.run(router.chat_completion(user_request(provider="nope")))

    assert exc_info.value.supported == ["x"]
    assert adapter.clients == []
    assert [event["event"] for event in audit_events] == ["chat_completion_terminal"]
    assert audit_events[0]["stage"] == "provider"
    assert audit_events[0]["states"] == ["idle", "failed"]


def test_empty_model_is_rejected() -> None:
    router = build_router(StubAdapter())

    with pytest.raises(InvalidRequestError):
        asyncio.run(router.chat_completion(user_request(model="  ")))


def test_provider_falls_back_to_default_and_ignores_case() -> None:
    adapter = StubAdapter()
    router = build_router(adapter, default_provider="X")

    asyncio.run(router.chat_completion(user_request(provider="")))
    asyncio.run(router.chat_completion(user_request(provider=" X ")))

    assert len(adapter.clients) == 2


def test_forced_tool_choice_binds_tools() -> None:
    adapter = StubAdapter()
    traces: list[RequestTrace] = []
    router = build_router(adapter, traces=traces)

    asyncio.run(
        router.chat_completion(
            user_request(tools=[WEATHER_TOOL], tool_choice="required")
        )
    )

    binding = adapter.clients[0].tool_binding
    assert binding.mode == ToolBindingMode.FORCED
    assert [tool.name for tool in binding.tools] == ["get_weather"]
    assert RouterStage.TOOLS_BOUND in traces[0].stages


def test_requests_without_tools_leave_client_unbound() -> None:
    adapter = StubAdapter()
    traces: list[RequestTrace] = []
    router = build_router(adapter, traces=traces)

    asyncio.run(router.chat_completion(user_request()))

    assert adapter.clients[0].tool_binding.mode == ToolBindingMode.NONE
    assert RouterStage.TOOLS_BOUND not in traces[0].stages


def test_tool_binding_error_closes_the_client() -> None:
    adapter = StubAdapter()
    traces: list[RequestTrace] = []
    router = build_router(adapter, traces=traces)
    bad_tool = {"type": "function", "function": {"name": ""}}

    with pytest.raises(ToolBindingError):
        asyncio.run(router.chat_completion(user_request(tools=[bad_tool])))

    assert adapter.clients[0].closed
    assert traces[0].failed_stage == "tools"
    assert traces[0].state == RouterStage.FAILED


def test_no_enabled_credential_builds_no_client() -> None:
    adapter = StubAdapter()
    router = build_router(adapter, [{"name": "off", "enabled": False}])

    with pytest.raises(NoEnabledCredentialError):
        asyncio.run(router.chat_completion(user_request()))

    assert adapter.clients == []


def test_credential_secrets_are_decrypted_before_the_client_is_built() -> None:
    codec = SecretCodec.generate(1024)
    adapter = StubAdapter()
    router = build_router(
        adapter, [{"name": "primary", "api_key": codec.encrypt("sk-plain")}], codec=codec
    )

    asyncio.run(router.chat_completion(user_request()))

    assert adapter.credentials[0].api_key == "sk-plain"


def test_decrypt_failure_stops_the_request() -> None:
    adapter = StubAdapter()
    traces: list[RequestTrace] = []
    router = build_router(
        adapter,
        [{"name": "primary", "api_key": "bm90LWEtY2lwaGVy"}],
        codec=SecretCodec.generate(1024),
        traces=traces,
    )

    with pytest.raises(DecryptError):
        asyncio.run(router.chat_completion(user_request()))

    assert adapter.clients == []
    assert traces[0].credential_name == "primary"
    assert traces[0].failed_stage == "decrypt"


def test_backend_error_propagates_and_releases_client() -> None:
    adapter = StubAdapter(error=BackendAPIError("rate limited", provider="x", status_code=429))
    traces: list[RequestTrace] = []
    router = build_router(adapter, traces=traces)

    with pytest.raises(BackendAPIError) as exc_info:
        asyncio.run(router.chat_completion(user_request()))

    assert exc_info.value.status_code == 429
    assert adapter.clients[0].closed
    assert traces[0].failed_stage == "backend"
    assert traces[0].error_type == "BackendAPIError"


def test_audit_events_name_the_credential_but_no_secrets() -> None:
    codec = SecretCodec.generate(1024)
    ciphertext = codec.encrypt("sk-plain")
    audit_events: list[dict[str, Any]] = []
    router = build_router(
        StubAdapter(),
        [{"name": "primary", "api_key": ciphertext}],
        codec=codec,
        audit_events=audit_events,
    )

    asyncio.run(router.chat_completion(user_request()))

    selected, terminal = audit_events
    assert selected["event"] == "credential_selected"
    assert selected["credential"] == "primary"
    assert selected["environment"] == "development"
    assert terminal["event"] == "chat_completion_terminal"
    assert terminal["outcome"] == "ok"
    assert terminal["states"][-1] == "done"
    rendered = json.dumps(audit_events)
    assert "sk-plain" not in rendered
    assert ciphertext not in rendered


def test_failing_audit_hook_does_not_break_requests() -> None:
    router = build_router(StubAdapter())

    def _broken(_: dict[str, Any]) -> None:
        raise OSError("disk full")

    router._audit_hook = _broken

    response = asyncio.run(router.chat_completion(user_request()))

    assert response.choices[0].message.content == "hello"


def test_mid_stream_error_fails_the_trace_and_closes_the_client() -> None:
    adapter = StubAdapter(
        stream_factory=lambda: StubStream(
            [BackendMessage(role=Role.ASSISTANT, text="par"), BackendMessage(text="tial")],
            fail_at=1,
        )
    )
    traces: list[RequestTrace] = []
    router = build_router(adapter, traces=traces)

    async def scenario() -> list[str]:
        stream = await router.stream_chat_completion(user_request(stream=True))
        received: list[str] = []
        with pytest.raises(StreamTransportError):
            async for chunk in stream:
                received.append(chunk.choices[0].delta.content or "")
        return received

    assert asyncio.run(scenario()) == ["par"]
    assert traces[0].failed_stage == "stream"
    assert traces[0].outcome == "error"
    assert adapter.clients[0].closed


def test_abandoned_stream_is_recorded_as_cancelled() -> None:
    adapter = StubAdapter(
        stream_factory=lambda: StubStream(
            [BackendMessage(text=str(index)) for index in range(50)]
        )
    )
    traces: list[RequestTrace] = []
    router = build_router(adapter, traces=traces, queue_size=2)

    async def scenario() -> None:
        stream = await router.stream_chat_completion(user_request(stream=True))
        await stream.__anext__()
        await stream.aclose()

    asyncio.run(scenario())

    assert traces[0].outcome == "cancelled"
    assert traces[0].state == RouterStage.DONE
    assert adapter.clients[0].closed
    assert adapter.clients[0].stream.closed


def test_stream_open_failure_closes_client() -> None:
    adapter = StubAdapter(error=BackendAPIError("bad model", status_code=404))
    router = build_router(adapter)

    with pytest.raises(BackendAPIError):
        asyncio.run(router.stream_chat_completion(user_request(stream=True)))

    assert adapter.clients[0].closed
