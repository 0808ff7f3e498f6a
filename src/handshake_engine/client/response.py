"""Response normalisation -- maps :class:`httpx.Response` to :class:`~handshake_engine.models.ExecutionResult`.

This module bridges the HTTP layer and the engine's result model. After a
dispatch completes, :func:`normalize_response` parses the body (JSON first,
raw text as fallback), keeps the raw text alongside, and classifies non-2xx
statuses:

- 401 / 403 -> :attr:`~handshake_engine.models.ErrorCode.AUTH_ERROR`
- any other non-2xx -> :attr:`~handshake_engine.models.ErrorCode.PROVIDER_ERROR`

The provider's own message is surfaced when the body carries one.
"""

from __future__ import annotations

from typing import Any, Optional

import httpx

from handshake_engine.models import ErrorCode, ExecutionResult


def extract_response_data(response: httpx.Response) -> Any:
    """Extract the body from an HTTP response.

    Attempts to parse the body as JSON first.  If that fails (e.g. the
    response is HTML, XML or plain text), returns the raw text.  Returns
    ``None`` for responses with no content.

    Args:
        response: The :class:`httpx.Response` to extract data from.

    Returns:
        A JSON-decoded object (``dict``, ``list``, etc.), a ``str`` of raw
        text, or ``None`` if the body is empty.
    """
    if not response.content:
        return None

    try:
        return response.json()
    except ValueError:
        pass

    return response.text


def provider_message(body: Any, raw_body: str = "") -> str:
    """Pull a human-readable error message out of a provider response body."""
    if isinstance(body, dict):
        for key in ("message", "error_description", "error", "detail"):
            value = body.get(key)
            if isinstance(value, str) and value:
                return value
            if isinstance(value, dict) and isinstance(value.get("message"), str):
                return value["message"]
        errors = body.get("errors")
        if isinstance(errors, list) and errors and isinstance(errors[0], dict):
            return str(errors[0].get("message", ""))
        return ""
    if isinstance(body, str):
        return body[:200]
    return raw_body[:200]


def error_code_for_status(status: int) -> Optional[ErrorCode]:
    """Classify an HTTP status; ``None`` for 2xx."""
    if 200 <= status < 300:
        return None
    if status in (401, 403):
        return ErrorCode.AUTH_ERROR
    return ErrorCode.PROVIDER_ERROR


def normalize_response(
    response: httpx.Response,
    duration_ms: float,
    attempts: int = 1,
    unresolved_placeholders: Optional[list[str]] = None,
) -> ExecutionResult:
    """Build an :class:`~handshake_engine.models.ExecutionResult` from a completed response.

    Args:
        response: The completed response.
        duration_ms: Wall time spent on the call, including retries.
        attempts: Number of dispatch attempts made.
        unresolved_placeholders: Placeholder names left verbatim in the
            request.
    """
    raw_body = response.text if response.content else ""
    body = extract_response_data(response)
    status = response.status_code
    code = error_code_for_status(status)

    error: Optional[str] = None
    if code is not None:
        message = provider_message(body, raw_body) or response.reason_phrase
        error = f"HTTP {status}: {message}" if message else f"HTTP {status}"

    return ExecutionResult(
        success=code is None,
        status_code=status,
        headers=dict(response.headers),
        body=body,
        raw_body=raw_body,
        duration_ms=duration_ms,
        error=error,
        error_code=code,
        attempts=attempts,
        unresolved_placeholders=list(unresolved_placeholders or []),
    )
