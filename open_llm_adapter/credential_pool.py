from __future__ import annotations

import logging
import random
from collections.abc import Callable, Sequence

from open_llm_adapter.config import ConfigStore, Credential
from open_llm_adapter.errors import (
    ConfigError,
    DecryptError,
    NoEnabledCredentialError,
)
from open_llm_adapter.secret_codec import SecretCodec, get_secret_codec

logger = logging.getLogger("uvicorn.error")


def pick_weighted(candidates: Sequence[Credential], rng: random.Random) -> Credential:
    """Draw one credential with probability ``weight / sum(weights)``.

    A lone candidate is returned without a draw, so a single enabled
    credential serves traffic even with weight 0.
    """
    if not candidates:
        raise ValueError("candidates must be non-empty")
    if len(candidates) == 1:
        return candidates[0]

    total = sum(candidate.weight for candidate in candidates)
    if total <= 0:
        names = ",".join(candidate.name for candidate in candidates)
        raise ConfigError(
            f"enabled credentials [{names}] have a total weight of {total}; "
            "at least one must have a positive weight"
        )

    draw = rng.randrange(total)
    running = 0
    for candidate in candidates:
        running += candidate.weight
        if draw < running:
            return candidate
    # Unreachable while every weight is >= 0.
    return candidates[-1]


class CredentialPool:
    def __init__(
        self,
        store: ConfigStore,
        *,
        rng: random.Random | None = None,
        codec_factory: Callable[[], SecretCodec] = get_secret_codec,
    ) -> None:
        self._store = store
        self._rng = rng or random.Random()
        self._codec_factory = codec_factory

    @property
    def store(self) -> ConfigStore:
        return self._store

    @property
    def environment(self) -> str:
        return self._store.snapshot.environment

    def select_credential(
        self, backend: str, environment: str | None = None
    ) -> Credential:
        snapshot = self._store.snapshot
        env = environment or snapshot.environment
        enabled = [
            credential
            for credential in snapshot.credentials_for(backend, env)
            if credential.enabled
        ]
        if not enabled:
            raise NoEnabledCredentialError(backend, env)
        selected = pick_weighted(enabled, self._rng)
        logger.debug(
            "credential_selected provider=%s environment=%s credential=%s candidates=%d",
            backend,
            env,
            selected.name,
            len(enabled),
        )
        return selected

    def decrypt_credential(self, credential: Credential) -> Credential:
        """Return a copy with every secret field decrypted; the input is untouched."""
        secret_fields = [
            field_name
            for field_name in credential.secret_fields
            if getattr(credential, field_name, "")
        ]
        if not secret_fields:
            return credential

        codec = self._codec_factory()
        updates: dict[str, str] = {}
        for field_name in secret_fields:
            try:
                updates[field_name] = codec.decrypt(getattr(credential, field_name))
            except DecryptError as exc:
                raise DecryptError(
                    f"credential '{credential.name}' field '{field_name}': {exc.message}"
                ) from exc
        return credential.model_copy(update=updates)

    def resolve_credential(
        self, backend: str, environment: str | None = None
    ) -> Credential:
        return self.decrypt_credential(self.select_credential(backend, environment))
