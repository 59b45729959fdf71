from __future__ import annotations

import random
from collections import Counter

import pytest

from open_llm_adapter.config import BedrockCredential, ConfigStore
from open_llm_adapter.credential_pool import CredentialPool, pick_weighted
from open_llm_adapter.errors import (
    ConfigError,
    DecryptError,
    NoConfigError,
    NoEnabledCredentialError,
)
from open_llm_adapter.secret_codec import SecretCodec
from tests.backend_test_utils import build_snapshot


def _pool(credentials: list[dict], *, seed: int = 1234, codec=None) -> CredentialPool:
    snapshot = build_snapshot("openai", credentials)
    return CredentialPool(
        ConfigStore.static(snapshot),
        rng=random.Random(seed),
        codec_factory=lambda: codec,
    )


def test_weighted_selection_matches_configured_ratios() -> None:
    pool = _pool(
        [
            {"name": "a", "weight": 70},
            {"name": "b", "weight": 20},
            {"name": "c", "weight": 10},
        ]
    )
    draws = 100_000
    counts = Counter(pool.select_credential("openai").name for _ in range(draws))

    assert abs(counts["a"] / draws - 0.70) < 0.01
    assert abs(counts["b"] / draws - 0.20) < 0.01
    assert abs(counts["c"] / draws - 0.10) < 0.01


def test_single_enabled_credential_is_used_even_with_zero_weight() -> None:
    pool = _pool(
        [
            {"name": "only", "weight": 0},
            {"name": "off", "weight": 100, "enabled": False},
        ]
    )

    assert pool.select_credential("openai").name == "only"


def test_zero_weight_credential_never_wins_multi_candidate_draw() -> None:
    pool = _pool([{"name": "zero", "weight": 0}, {"name": "live", "weight": 5}])

    names = {pool.select_credential("openai").name for _ in range(2_000)}

    assert names == {"live"}


def test_disabled_credentials_are_never_selected() -> None:
    pool = _pool(
        [
            {"name": "on", "weight": 1},
            {"name": "off", "weight": 1000, "enabled": False},
        ]
    )

    names = {pool.select_credential("openai").name for _ in range(500)}

    assert names == {"on"}


def test_all_zero_weights_with_several_candidates_is_a_config_error() -> None:
    pool = _pool([{"name": "a", "weight": 0}, {"name": "b", "weight": 0}])

    with pytest.raises(ConfigError) as exc_info:
        pool.select_credential("openai")

    assert exc_info.value.stage == "config"


def test_no_enabled_credential_raises() -> None:
    pool = _pool([{"name": "a", "enabled": False}])

    with pytest.raises(NoEnabledCredentialError) as exc_info:
        pool.select_credential("openai")

    assert "openai" in str(exc_info.value)
    assert exc_info.value.stage == "credential"


def test_missing_provider_or_environment_raises_no_config() -> None:
    pool = _pool([{"name": "a"}])

    with pytest.raises(NoConfigError):
        pool.select_credential("azure")
    with pytest.raises(NoConfigError) as exc_info:
        pool.select_credential("openai", "production")

    assert "production" in str(exc_info.value)


def test_pick_weighted_walks_cumulative_ranges() -> None:
    class _FixedRandom(random.Random):
        def __init__(self, value: int) -> None:
            super().__init__(0)
            self.value = value

        def randrange(self, *args, **kwargs) -> int:  # type: ignore[override]
            return self.value

    snapshot = build_snapshot(
        "openai", [{"name": "a", "weight": 2}, {"name": "b", "weight": 3}]
    )
    candidates = list(snapshot.credentials_for("openai"))

    assert pick_weighted(candidates, _FixedRandom(0)).name == "a"
    assert pick_weighted(candidates, _FixedRandom(1)).name == "a"
    assert pick_weighted(candidates, _FixedRandom(2)).name == "b"
    assert pick_weighted(candidates, _FixedRandom(4)).name == "b"


def test_resolve_credential_decrypts_a_copy() -> None:
    codec = SecretCodec.generate(1024)
    ciphertext = codec.encrypt("sk-live-123")
    pool = _pool([{"name": "a", "api_key": ciphertext}], codec=codec)

    resolved = pool.resolve_credential("openai")

    assert resolved.api_key == "sk-live-123"
    stored = pool.store.snapshot.credentials_for("openai")[0]
    assert stored.api_key == ciphertext
    assert resolved is not stored


def test_decrypt_failure_names_the_credential_but_not_the_secret() -> None:
    codec = SecretCodec.generate(1024)
    pool = _pool([{"name": "broken", "api_key": "bm90LXJzYQ=="}], codec=codec)

    with pytest.raises(DecryptError) as exc_info:
        pool.resolve_credential("openai")

    message = str(exc_info.value)
    assert message.startswith("decrypt:")
    assert "broken" in message
    assert "bm90LXJzYQ==" not in message


def test_empty_secret_fields_skip_decryption() -> None:
    def _fail() -> SecretCodec:
        raise AssertionError("codec must not be loaded")

    snapshot = build_snapshot("openai", [{"name": "keyless"}])
    pool = CredentialPool(ConfigStore.static(snapshot), codec_factory=_fail)

    assert pool.resolve_credential("openai").api_key == ""


def test_bedrock_session_token_is_decrypted_with_the_keys() -> None:
    codec = SecretCodec.generate(1024)
    snapshot = build_snapshot(
        "bedrock",
        [
            {
                "name": "aws",
                "access_key": codec.encrypt("AKIA123"),
                "secret_access_key": codec.encrypt("aws-secret"),
                "session_token": codec.encrypt("session-abc"),
            }
        ],
        credential_model=BedrockCredential,
    )
    pool = CredentialPool(ConfigStore.static(snapshot), codec_factory=lambda: codec)

    resolved = pool.resolve_credential("bedrock")

    assert resolved.access_key == "AKIA123"
    assert resolved.secret_access_key == "aws-secret"
    assert resolved.session_token == "session-abc"
