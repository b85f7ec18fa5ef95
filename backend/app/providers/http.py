from __future__ import annotations

import asyncio
import logging
import random
from typing import Any

import httpx

from app.providers.errors import MalformedProviderResponse, ProviderTimeout, ProviderUnavailable


LOGGER = logging.getLogger(__name__)
RETRYABLE_STATUS_CODES = {429, 500, 502, 503, 504}


def _request_error_details(exc: Exception) -> dict[str, Any]:
    details: dict[str, Any] = {"error_type": exc.__class__.__name__, "error": str(exc)}
    try:
        request = exc.request
    except (AttributeError, RuntimeError):
        request = None
    if request is not None:
        # Drop the query string, it carries API keys.
        details["url"] = str(request.url).split("?", 1)[0]
    return details


async def _sleep_backoff(attempt: int) -> None:
    await asyncio.sleep(min(2.0, (2**attempt) * 0.25 + random.random() * 0.1))


async def request_json(
    client: httpx.AsyncClient,
    method: str,
    url: str,
    *,
    provider: str,
    params: dict[str, Any] | None = None,
    json: dict[str, Any] | None = None,
    headers: dict[str, str] | None = None,
    max_attempts: int = 1,
) -> Any:
    """Issue one provider call and return its decoded JSON body.

    Timeouts fail immediately; 429/5xx answers are retried with backoff up to
    ``max_attempts``. Every failure surfaces as a ``ProviderError`` subclass.
    """
    attempts = max(1, int(max_attempts))
    for attempt in range(attempts):
        try:
            response = await client.request(method, url, params=params, json=json, headers=headers)
        except httpx.TimeoutException as exc:
            raise ProviderTimeout(
                f"{provider} request timed out",
                code="PROVIDER_TIMEOUT",
                provider=provider,
                retryable=True,
                details=_request_error_details(exc),
            ) from exc
        except httpx.RequestError as exc:
            error = ProviderUnavailable(
                f"{provider} request failed",
                code="PROVIDER_REQUEST_ERROR",
                provider=provider,
                retryable=True,
                details={**_request_error_details(exc), "attempt": attempt + 1, "max_attempts": attempts},
            )
            if attempt == attempts - 1:
                raise error from exc
            await _sleep_backoff(attempt)
            continue

        if response.status_code in RETRYABLE_STATUS_CODES:
            if attempt == attempts - 1:
                raise ProviderUnavailable(
                    f"{provider} unavailable",
                    code="PROVIDER_UNAVAILABLE",
                    provider=provider,
                    status_code=response.status_code,
                    retryable=True,
                    details={"status_code": response.status_code, "attempt": attempt + 1},
                )
            LOGGER.info("%s returned %s; retrying (attempt %s/%s)", provider, response.status_code, attempt + 1, attempts)
            await _sleep_backoff(attempt)
            continue

        if response.status_code >= 400:
            raise ProviderUnavailable(
                f"{provider} request rejected",
                code="PROVIDER_REJECTED",
                provider=provider,
                status_code=response.status_code,
                details={"status_code": response.status_code, "body": response.text[:300]},
            )

        try:
            return response.json()
        except ValueError as exc:
            raise MalformedProviderResponse(
                f"{provider} returned a non-JSON body",
                code="PROVIDER_MALFORMED",
                provider=provider,
                status_code=response.status_code,
                details={"body": response.text[:300]},
            ) from exc

    raise ProviderUnavailable(f"{provider} request failed", code="PROVIDER_ERROR", provider=provider)
