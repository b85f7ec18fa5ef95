from __future__ import annotations

from typing import Any


class ProviderError(RuntimeError):
    def __init__(
        self,
        message: str,
        *,
        code: str = "PROVIDER_ERROR",
        provider: str = "unknown",
        status_code: int | None = None,
        retryable: bool = False,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.provider = provider
        self.status_code = status_code
        self.retryable = retryable
        self.details = details or {}

    def __str__(self) -> str:
        base = super().__str__()
        if self.status_code is not None:
            return f"{base} (provider={self.provider} status={self.status_code})"
        return f"{base} (provider={self.provider})"


class ProviderTimeout(ProviderError):
    pass


class ProviderUnavailable(ProviderError):
    pass


class MalformedProviderResponse(ProviderError):
    pass
