"""OAuth 2.0 helpers shared by the OAuth-family modules.

- :func:`generate_pkce_pair` / :func:`generate_state` -- per-flow secrets.
- :func:`build_authorization_url` -- appends query parameters to an
  authorization endpoint that may already carry some.
- :func:`request_token` -- POSTs to a token endpoint and returns the JSON
  token response, raising typed errors for rejected or malformed replies.
- :func:`token_result` -- turns a token response into a
  :class:`~handshake_engine.models.TokenRefreshResult` with an absolute
  ``expires_at``.
- :func:`revoke_token` -- :rfc:`7009` revocation.
"""

from __future__ import annotations

import base64
import hashlib
import logging
import secrets
from datetime import datetime, timedelta
from typing import Any, Optional
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

import httpx

from handshake_engine.client.response import extract_response_data, provider_message
from handshake_engine.exceptions import AuthError, NetworkError, ParseError, ProviderError
from handshake_engine.masking import mask_url
from handshake_engine.models import TokenRefreshResult

logger = logging.getLogger(__name__)


def generate_pkce_pair() -> tuple[str, str]:
    """Generate a PKCE code_verifier and code_challenge (S256).

    Returns:
        A tuple of ``(code_verifier, code_challenge)``.
    """
    code_verifier = secrets.token_urlsafe(64)[:128]
    digest = hashlib.sha256(code_verifier.encode("ascii")).digest()
    code_challenge = base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")
    return code_verifier, code_challenge


def generate_state() -> str:
    return secrets.token_urlsafe(24)


def build_authorization_url(endpoint: str, params: dict[str, str]) -> str:
    """Merge *params* into *endpoint*'s existing query string."""
    parts = urlsplit(endpoint)
    query = dict(parse_qsl(parts.query, keep_blank_values=True))
    query.update({k: v for k, v in params.items() if v})
    return urlunsplit(parts._replace(query=urlencode(query)))


def basic_auth_header(username: str, password: str) -> str:
    raw = f"{username}:{password}".encode()
    return "Basic " + base64.b64encode(raw).decode("ascii")


async def request_token(
    client: httpx.AsyncClient,
    token_url: str,
    data: dict[str, str],
    auth_header: Optional[str] = None,
    timeout: float = 30.0,
) -> dict[str, Any]:
    """POST a form-encoded grant to *token_url* and return the token response.

    Args:
        client: Shared HTTP client.
        token_url: The token endpoint.
        data: Grant parameters (``grant_type`` and friends).
        auth_header: Optional ``Authorization`` header value for client
            authentication.
        timeout: Seconds before giving up.

    Returns:
        The parsed JSON token response containing at least ``access_token``.

    Raises:
        AuthError: If the endpoint rejects the grant (400/401/403 or an
            OAuth ``error`` member), or the response has no
            ``access_token``.
        ProviderError: For other non-2xx responses.
        NetworkError: If the request could not be completed.
        ParseError: If the response is not a JSON object.
    """
    headers = {"Accept": "application/json"}
    if auth_header:
        headers["Authorization"] = auth_header

    logger.debug("Token request to %s (grant_type=%s)", mask_url(token_url), data.get("grant_type"))
    try:
        response = await client.post(token_url, data=data, headers=headers, timeout=timeout)
    except httpx.HTTPError as exc:
        raise NetworkError(f"Token request failed: {exc}") from exc

    body = extract_response_data(response)
    if response.status_code >= 400:
        message = provider_message(body, response.text) or response.reason_phrase
        error = f"Token request failed with status {response.status_code}: {message}"
        if response.status_code in (400, 401, 403):
            raise AuthError(error, status_code=response.status_code)
        raise ProviderError(error, status_code=response.status_code)

    if not isinstance(body, dict):
        raise ParseError("Token response is not a JSON object")
    if body.get("error"):
        description = body.get("error_description") or body["error"]
        raise AuthError(f"Token request rejected: {description}")
    if "access_token" not in body:
        raise AuthError("Token response missing 'access_token' field")
    return body


def expiry_from(token_data: dict[str, Any], now: datetime) -> Optional[datetime]:
    """Absolute expiry from ``expires_in``, or ``None`` when the token does not expire."""
    expires_in = token_data.get("expires_in")
    if expires_in in (None, ""):
        return None
    try:
        return now + timedelta(seconds=float(expires_in))
    except (TypeError, ValueError):
        return None


def token_result(token_data: dict[str, Any], now: datetime) -> TokenRefreshResult:
    """Build a successful :class:`~handshake_engine.models.TokenRefreshResult`."""
    scope = token_data.get("scope")
    return TokenRefreshResult(
        success=True,
        access_token=str(token_data["access_token"]),
        refresh_token=token_data.get("refresh_token"),
        expires_at=expiry_from(token_data, now),
        token_type=token_data.get("token_type") or "Bearer",
        scopes=scope.split() if isinstance(scope, str) else None,
    )


async def revoke_token(
    client: httpx.AsyncClient,
    revocation_url: str,
    token: str,
    token_type_hint: str,
    data: Optional[dict[str, str]] = None,
    auth_header: Optional[str] = None,
    timeout: float = 30.0,
) -> None:
    """Revoke *token* at *revocation_url*.

    Raises:
        ProviderError: If the endpoint answers with a non-2xx status.
        NetworkError: If the request could not be completed.
    """
    payload = {"token": token, "token_type_hint": token_type_hint, **(data or {})}
    headers = {"Authorization": auth_header} if auth_header else {}
    try:
        response = await client.post(
            revocation_url, data=payload, headers=headers, timeout=timeout
        )
    except httpx.HTTPError as exc:
        raise NetworkError(f"Revocation request failed: {exc}") from exc
    if response.status_code >= 400:
        raise ProviderError(
            f"Revocation failed with status {response.status_code}",
            status_code=response.status_code,
        )
