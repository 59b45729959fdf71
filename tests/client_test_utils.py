from __future__ import annotations

from typing import Any

from fastapi.testclient import TestClient

from open_llm_adapter.config.settings import get_settings
from open_llm_adapter.main import app
from open_llm_adapter.router import ProviderRouter
from open_llm_adapter.secret_codec import reset_secret_codec


def build_test_client(monkeypatch: Any, **env: Any) -> TestClient:
    """Client whose startup hook builds everything from ``env``."""
    for key, value in env.items():
        monkeypatch.setenv(key, str(value))
    get_settings.cache_clear()
    reset_secret_codec()
    return TestClient(app)


def build_stub_client(router: ProviderRouter) -> TestClient:
    """Client bound to a prebuilt router; startup hooks are not run."""
    app.state.router = router
    app.state.config_store = router.pool.store
    return TestClient(app, raise_server_exceptions=False)
