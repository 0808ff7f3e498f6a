"""Masking of sensitive values before anything is logged or displayed.

A field, header or query-parameter name is *sensitive* when it contains one
of :data:`SENSITIVE_MARKERS` (case-insensitive substring match). Sensitive
values keep a short prefix and suffix and have their middle replaced, so an
operator can still tell two keys apart.

Command templates (cURL strings, raw header blocks) are masked with
:func:`mask_template`, which replaces the credential part of authorization
headers and ``key: value`` pairs with :data:`MASK`::

    >>> mask_template("curl -H 'Authorization: Bearer abc123' https://x")
    "curl -H 'Authorization: Bearer ***MASKED***' https://x"
"""

from __future__ import annotations

import re
from collections.abc import Iterable, Mapping
from typing import Any
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

SENSITIVE_MARKERS: tuple[str, ...] = (
    "token",
    "key",
    "secret",
    "password",
    "auth",
    "credential",
)

MASK = "***MASKED***"
_FULL_MASK = "********"

_MARKER_ALT = "|".join(SENSITIVE_MARKERS)

# Authorization header, keeping the scheme word when present.
_AUTH_HEADER_RE = re.compile(
    r"(?i)(authorization\s*:\s*)(?:(bearer|basic|token|apikey|digest|bot)\s+)?([^\s'\"]+)"
)
# A bare "Bearer <token>" outside an Authorization header.
_BEARER_RE = re.compile(r"(?i)\b(bearer\s+)(?!\*\*\*MASKED)([^\s'\"]+)")
# Any other "Some-Key-Name: value" pair whose name looks sensitive.
_SENSITIVE_HEADER_RE = re.compile(
    rf"(?i)(?<![A-Za-z0-9_-])(?!authorization)([A-Za-z0-9_-]*(?:{_MARKER_ALT})[A-Za-z0-9_-]*\s*:\s*)"
    r"(?!\*\*\*MASKED)([^\s'\"]+)"
)
# JSON-style "apiKey": "value".
_JSON_PAIR_RE = re.compile(
    rf"(?i)(['\"]\s*[A-Za-z0-9_-]*(?:{_MARKER_ALT})[A-Za-z0-9_-]*\s*['\"]\s*:\s*['\"]).+?(['\"])"
)
# curl -u user:password
_USER_FLAG_RE = re.compile(r"((?:-u|--user)\s+['\"]?[^:\s'\"]+:)([^\s'\"]+)")
# ?api_key=value in URLs
_QUERY_RE = re.compile(
    rf"(?i)([?&][A-Za-z0-9_.-]*(?:{_MARKER_ALT})[A-Za-z0-9_.-]*=)([^&\s'\"#]+)"
)


def is_sensitive_name(name: str, extra: Iterable[str] = ()) -> bool:
    """Return ``True`` when *name* looks like it holds a secret.

    Args:
        name: Field, header or parameter name.
        extra: Additional exact names (case-insensitive) to treat as
            sensitive, typically the ids of fields a module flags as secret.
    """
    lowered = name.lower()
    if any(marker in lowered for marker in SENSITIVE_MARKERS):
        return True
    return lowered in {e.lower() for e in extra}


def mask_value(value: Any, visible: int = 4) -> str:
    """Mask one secret value, keeping *visible* characters at each end.

    Values too short to keep a prefix and suffix are fully masked.
    """
    text = str(value)
    if len(text) <= visible * 2:
        return _FULL_MASK
    hidden = min(len(text) - visible * 2, 16)
    return f"{text[:visible]}{'*' * hidden}{text[-visible:]}"


def mask_mapping(data: Mapping[str, Any], extra: Iterable[str] = ()) -> dict[str, Any]:
    """Return a copy of *data* with sensitive values masked, recursing into nested containers."""
    extra = tuple(extra)
    masked: dict[str, Any] = {}
    for key, value in data.items():
        if isinstance(value, Mapping):
            masked[key] = mask_mapping(value, extra)
        elif isinstance(value, list):
            masked[key] = [
                mask_mapping(item, extra) if isinstance(item, Mapping) else item
                for item in value
            ]
        elif value is not None and is_sensitive_name(str(key), extra):
            masked[key] = mask_value(value) if isinstance(value, str) else _FULL_MASK
        elif isinstance(value, str):
            masked[key] = mask_template(value)
        else:
            masked[key] = value
    return masked


def mask_headers(headers: Mapping[str, str]) -> dict[str, str]:
    """Mask sensitive request or response headers for logging."""
    return {
        name: (mask_value(value) if is_sensitive_name(name) else value)
        for name, value in headers.items()
    }


def mask_url(url: str) -> str:
    """Mask sensitive query-string values in *url*."""
    parts = urlsplit(url)
    if not parts.query:
        return url
    pairs = [
        (k, MASK if is_sensitive_name(k) else v)
        for k, v in parse_qsl(parts.query, keep_blank_values=True)
    ]
    return urlunsplit(parts._replace(query=urlencode(pairs, safe="*")))


def mask_template(text: str) -> str:
    """Mask credentials inside a command template or free-form request text."""

    def _auth_header(match: re.Match[str]) -> str:
        scheme = f"{match.group(2)} " if match.group(2) else ""
        return f"{match.group(1)}{scheme}{MASK}"

    text = _AUTH_HEADER_RE.sub(_auth_header, text)
    text = _BEARER_RE.sub(rf"\g<1>{MASK}", text)
    text = _SENSITIVE_HEADER_RE.sub(rf"\g<1>{MASK}", text)
    text = _JSON_PAIR_RE.sub(rf"\g<1>{MASK}\g<2>", text)
    text = _USER_FLAG_RE.sub(rf"\g<1>{MASK}", text)
    text = _QUERY_RE.sub(rf"\g<1>{MASK}", text)
    return text
