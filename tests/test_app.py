from __future__ import annotations

import json
from pathlib import Path
from typing import Any

from open_llm_adapter.config.settings import get_settings
from open_llm_adapter.errors import BackendAPIError
from open_llm_adapter.schemas import Role
from open_llm_adapter.secret_codec import reset_secret_codec
from open_llm_adapter.translation.types import BackendMessage
from tests.backend_test_utils import StubAdapter, StubStream, build_router
from tests.client_test_utils import build_stub_client, build_test_client
from tests.yaml_test_utils import write_provider_config

CHAT_BODY = {
    "provider": "x",
    "model": "m",
    "messages": [{"role": "user", "content": "hi"}],
}


def _data_frames(body: str) -> list[str]:
    return [
        block[len("data: ") :]
        for block in body.split("\n\n")
        if block.startswith("data: ")
    ]


def test_health() -> None:
    client = build_stub_client(build_router(StubAdapter()))

    response = client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_models_lists_configured_models_per_provider() -> None:
    router = build_router(StubAdapter(), [{"name": "primary", "models": ["m1", "m2"]}])
    client = build_stub_client(router)

    response = client.get("/v1/models")

    assert response.status_code == 200
    payload = response.json()
    assert payload["object"] == "list"
    assert [(item["id"], item["owned_by"]) for item in payload["data"]] == [
        ("m1", "x"),
        ("m2", "x"),
    ]


def test_non_stream_chat_completion() -> None:
    client = build_stub_client(build_router(StubAdapter()))

    response = client.post("/v1/chat/completions", json=CHAT_BODY)

    assert response.status_code == 200
    payload = response.json()
    assert payload["object"] == "chat.completion"
    assert payload["id"].startswith("chatcmpl-")
    assert payload["choices"][0]["message"] == {"role": "assistant", "content": "hello"}
    assert payload["choices"][0]["finish_reason"] == "stop"
    assert payload["usage"] == {"prompt_tokens": 3, "completion_tokens": 1, "total_tokens": 4}


def test_stream_chat_completion_returns_sse() -> None:
    client = build_stub_client(build_router(StubAdapter()))

    response = client.post("/v1/chat/completions", json={**CHAT_BODY, "stream": True})

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/event-stream")
    frames = _data_frames(response.text)
    assert frames[-1] == "[DONE]"
    chunks = [json.loads(frame) for frame in frames[:-1]]
    assert "".join(chunk["choices"][0]["delta"].get("content", "") for chunk in chunks) == "hello"
    assert chunks[-1]["choices"][0]["finish_reason"] == "stop"
    assert len({chunk["id"] for chunk in chunks}) == 1


def test_mid_stream_failure_sends_error_frame_then_done() -> None:
    adapter = StubAdapter(
        stream_factory=lambda: StubStream(
            [BackendMessage(role=Role.ASSISTANT, text="par"), BackendMessage(text="tial")],
            fail_at=1,
        )
    )
    client = build_stub_client(build_router(adapter))

    response = client.post("/v1/chat/completions", json={**CHAT_BODY, "stream": True})

    frames = _data_frames(response.text)
    assert json.loads(frames[0])["choices"][0]["delta"]["content"] == "par"
    error = json.loads(frames[1])["error"]
    assert error["type"] == "StreamTransportError"
    assert error["stage"] == "stream"
    assert frames[2:] == ["[DONE]"]


def test_unsupported_provider_is_a_client_error() -> None:
    client = build_stub_client(build_router(StubAdapter()))

    response = client.post("/v1/chat/completions", json={**CHAT_BODY, "provider": "nope"})

    assert response.status_code == 400
    error = response.json()["error"]
    assert error["type"] == "UnsupportedProviderError"
    assert error["stage"] == "provider"
    assert error["code"] == "provider"
    assert "nope" in error["message"]


def test_invalid_bodies_are_rejected() -> None:
    client = build_stub_client(build_router(StubAdapter()))

    not_json = client.post(
        "/v1/chat/completions",
        content=b"{not json",
        headers={"content-type": "application/json"},
    )
    missing_messages = client.post("/v1/chat/completions", json={"provider": "x", "model": "m"})

    assert not_json.status_code == 400
    assert missing_messages.status_code == 400
    assert "messages" in missing_messages.json()["error"]["message"]


def test_backend_errors_map_to_status_codes() -> None:
    rate_limited = build_stub_client(
        build_router(StubAdapter(error=BackendAPIError("slow down", status_code=429, code="rate")))
    ).post("/v1/chat/completions", json=CHAT_BODY)
    upstream_down = build_stub_client(
        build_router(StubAdapter(error=BackendAPIError("boom", status_code=503)))
    ).post("/v1/chat/completions", json=CHAT_BODY)
    no_credential = build_stub_client(
        build_router(StubAdapter(), [{"name": "off", "enabled": False}])
    ).post("/v1/chat/completions", json=CHAT_BODY)

    assert rate_limited.status_code == 429
    assert rate_limited.json()["error"]["code"] == "rate"
    assert rate_limited.json()["error"]["backend_status"] == 429
    assert upstream_down.status_code == 502
    assert no_credential.status_code == 503


def test_application_startup_wires_config_and_keys(tmp_path: Path, monkeypatch: Any) -> None:
    config_root = tmp_path / "llm"
    write_provider_config(
        config_root,
        "openai",
        {
            "development": [
                {"name": "dev-openai", "api_key": "bm90LWEtY2lwaGVy", "models": ["gpt-4o-mini"]}
            ]
        },
    )
    client = build_test_client(
        monkeypatch,
        ENV="development",
        LLM_CONFIG_PATH=config_root,
        OPENAI_COMPATIBLE_PROVIDERS="openai",
        RSA_PRIVATE_KEY_PATH=tmp_path / "keys" / "private.pem",
        RSA_PUBLIC_KEY_PATH=tmp_path / "keys" / "public.pem",
        RSA_KEY_SIZE=1024,
        RSA_GENERATE_KEYS_IF_MISSING="true",
        MEDIA_FETCH_ENABLED="false",
    )
    try:
        with client:
            models = client.get("/v1/models").json()
            chat = client.post(
                "/v1/chat/completions",
                json={**CHAT_BODY, "provider": "openai", "model": "gpt-4o-mini"},
            )
            reload = client.post("/v1/admin/reload")

        assert [item["id"] for item in models["data"]] == ["gpt-4o-mini"]
        assert (tmp_path / "keys" / "private.pem").exists()
        assert chat.status_code == 500
        assert chat.json()["error"]["stage"] == "decrypt"
        assert reload.json() == {
            "status": "reloaded",
            "environment": "development",
            "providers": ["openai"],
        }
    finally:
        get_settings.cache_clear()
        reset_secret_codec()
