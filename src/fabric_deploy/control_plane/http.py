"""
HTTP failure classification.

Maps httpx responses and transport exceptions onto the typed error
hierarchy so that nothing above the adapters ever looks at status codes or
message text.

    ==========================================  ==========================
    Response                                    Raised
    ==========================================  ==========================
    401                                         AuthenticationError
    409, or error code ``*AlreadyExists*`` /    AlreadyExistsError
    ``*AlreadyInUse*`` / ``*NameNotAvailable*``
    429                                         RateLimitError (Retry-After)
    408, 5xx                                    ServiceUnavailableError
    403                                         PermissionDeniedError
    quota / capacity limit codes                QuotaExceededError
    any other 4xx                               InvalidDefinitionError
    connect / read errors                       NetworkError
    timeouts                                    TimeoutError
    ==========================================  ==========================

Both error body shapes seen in practice are understood: the Fabric REST
shape ``{"errorCode": ..., "message": ...}`` and the Kusto shape
``{"error": {"code": ..., "message": ..., "@type": ...}}``.
"""

from __future__ import annotations

from datetime import UTC, datetime
from email.utils import parsedate_to_datetime
from typing import Any

import httpx

from fabric_deploy.core.errors import (
    AlreadyExistsError,
    AuthenticationError,
    DeployError,
    ErrorContext,
    InvalidDefinitionError,
    NetworkError,
    PermissionDeniedError,
    QuotaExceededError,
    RateLimitError,
    ServiceUnavailableError,
    TimeoutError,
    TransientError,
)

_ALREADY_EXISTS_MARKERS = ("AlreadyExists", "AlreadyInUse", "NameNotAvailable")
_QUOTA_MARKERS = ("Quota", "LimitExceeded", "InsufficientCapacity", "CapacityNotActive")


def parse_retry_after(value: str | None) -> float | None:
    """``Retry-After`` as seconds; accepts delta-seconds or an HTTP date."""
    if not value:
        return None
    value = value.strip()
    try:
        return max(0.0, float(value))
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=UTC)
    return max(0.0, (when - datetime.now(UTC)).total_seconds())


def error_details(response: httpx.Response) -> tuple[str | None, str]:
    """Extract ``(error_code, message)`` from a failed response."""
    try:
        body: Any = response.json()
    except ValueError:
        body = None

    code: str | None = None
    message: str | None = None
    if isinstance(body, dict):
        inner = body.get("error")
        if isinstance(inner, dict):
            code = inner.get("code") or inner.get("@type")
            message = inner.get("message") or inner.get("@message")
            type_name = inner.get("@type")
            if type_name and code and type_name not in code:
                code = f"{code}:{type_name}"
        else:
            code = body.get("errorCode") or body.get("code")
            message = body.get("message") or (inner if isinstance(inner, str) else None)

    if not message:
        text = response.text.strip()
        message = text.splitlines()[0][:300] if text else response.reason_phrase or "request failed"
    return code, message


def _request_url(response: httpx.Response) -> str | None:
    try:
        return str(response.request.url)
    except RuntimeError:
        return None


def _has_marker(code: str | None, message: str, markers: tuple[str, ...]) -> bool:
    haystack = f"{code or ''} {message}"
    return any(marker in haystack for marker in markers)


def error_from_response(response: httpx.Response, **context: Any) -> DeployError:
    """Build the classified error for a non-success response."""
    status = response.status_code
    code, message = error_details(response)
    ctx = ErrorContext(
        url=_request_url(response),
        http_status=status,
        error_code=code,
    )
    text = f"HTTP {status}: {message}"

    if status == 401:
        error: DeployError = AuthenticationError(text, context=ctx)
    elif status == 409 or _has_marker(code, message, _ALREADY_EXISTS_MARKERS):
        error = AlreadyExistsError(text, context=ctx)
    elif status == 429:
        error = RateLimitError(
            text, retry_after=parse_retry_after(response.headers.get("Retry-After")), context=ctx
        )
    elif status == 408 or status >= 500:
        error = ServiceUnavailableError(
            text, retry_after=parse_retry_after(response.headers.get("Retry-After")), context=ctx
        )
    elif status == 403:
        error = PermissionDeniedError(text, context=ctx)
    elif _has_marker(code, message, _QUOTA_MARKERS):
        error = QuotaExceededError(text, context=ctx)
    else:
        error = InvalidDefinitionError(text, context=ctx)

    if context:
        error.with_context(**context)
    return error


def raise_for_response(response: httpx.Response, **context: Any) -> httpx.Response:
    """Return ``response`` if successful, otherwise raise its classified error."""
    if response.is_success:
        return response
    raise error_from_response(response, **context)


def error_from_transport(exc: httpx.HTTPError, url: str | None = None) -> TransientError:
    ctx = ErrorContext(url=url)
    if isinstance(exc, httpx.TimeoutException):
        return TimeoutError(f"Request timed out: {exc}", context=ctx, cause=exc)
    return NetworkError(f"Request failed: {exc}", context=ctx, cause=exc)


def send(
    client: httpx.Client,
    method: str,
    url: str,
    **kwargs: Any,
) -> httpx.Response:
    """Issue a request, turning transport exceptions into ``TransientError``."""
    try:
        return client.request(method, url, **kwargs)
    except httpx.HTTPError as e:
        raise error_from_transport(e, url) from e


__all__ = [
    "error_details",
    "error_from_response",
    "error_from_transport",
    "parse_retry_after",
    "raise_for_response",
    "send",
]
