from __future__ import annotations

from typing import Any


class AdapterError(RuntimeError):
    """Base error; ``stage`` names the request step that failed."""

    stage = "request"

    def __init__(self, message: str, *, stage: str | None = None) -> None:
        if stage is not None:
            self.stage = stage
        self.message = message
        super().__init__(message)

    def __str__(self) -> str:
        return f"{self.stage}: {self.message}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "message": str(self),
            "type": type(self).__name__,
            "stage": self.stage,
        }


class ConfigError(AdapterError):
    stage = "config"


class NoConfigError(ConfigError):
    def __init__(self, provider: str, environment: str) -> None:
        self.provider = provider
        self.environment = environment
        super().__init__(
            f"no configuration for provider '{provider}' in environment '{environment}'"
        )


class NoEnabledCredentialError(AdapterError):
    stage = "credential"

    def __init__(self, provider: str, environment: str) -> None:
        self.provider = provider
        self.environment = environment
        super().__init__(
            f"no enabled credential for provider '{provider}' "
            f"in environment '{environment}'"
        )


class KeyInitError(AdapterError):
    """Key material could not be loaded; fatal for the whole process."""

    stage = "key_init"


class DecryptError(AdapterError):
    stage = "decrypt"


class UnsupportedProviderError(AdapterError):
    stage = "provider"

    def __init__(self, provider: str, supported: list[str] | None = None) -> None:
        self.provider = provider
        self.supported = sorted(supported or [])
        message = f"unsupported provider: {provider!r}"
        if self.supported:
            message += f" (supported: {', '.join(self.supported)})"
        super().__init__(message)


class InvalidRequestError(AdapterError):
    stage = "request"


class BackendClientError(AdapterError):
    stage = "client"


class ToolBindingError(AdapterError):
    stage = "tools"


class BackendAPIError(AdapterError):
    stage = "backend"

    def __init__(
        self,
        message: str,
        *,
        provider: str | None = None,
        status_code: int | None = None,
        error_type: str | None = None,
        code: str | None = None,
        param: str | None = None,
    ) -> None:
        self.provider = provider
        self.status_code = status_code
        self.error_type = error_type
        self.code = code
        self.param = param
        details = [
            f"{name}={value}"
            for name, value in (
                ("provider", provider),
                ("status", status_code),
                ("type", error_type),
                ("code", code),
                ("param", param),
            )
            if value is not None
        ]
        if details:
            message = f"{message} ({' '.join(details)})"
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        payload = super().to_dict()
        payload["code"] = self.code
        payload["backend_type"] = self.error_type
        payload["backend_status"] = self.status_code
        return payload


class StreamTransportError(AdapterError):
    stage = "stream"


class SerializationError(AdapterError):
    stage = "serialize"
