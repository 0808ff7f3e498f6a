"""Exception hierarchy for handshake_engine.

Internal helpers (token endpoints, envelope builders, the cURL parser) raise
these exceptions. The protocol module and engine boundaries catch them and
turn them into :class:`~handshake_engine.models.ExecutionResult`,
:class:`~handshake_engine.models.AuthFlowStep` or
:class:`~handshake_engine.models.HealthCheckResult` values, so nothing
escapes to the caller except programmer errors.

Every subclass carries two class attributes:

* ``error_code`` -- the :class:`~handshake_engine.models.ErrorCode` reported
  in result values (``None`` for errors outside the taxonomy).
* ``exit_code`` -- the constant from :mod:`handshake_engine.exit_codes` the
  CLI exits with.

Subclass hierarchy::

    HandshakeError           (exit 1)
    +-- ValidationError_     (exit 4)  VALIDATION_ERROR
    +-- AuthError            (exit 3)  AUTH_ERROR
    +-- TokenRefreshError    (exit 8)  TOKEN_REFRESH_FAILED
    +-- NetworkError         (exit 6)  NETWORK_ERROR
    +-- ParseError           (exit 7)  PARSE_ERROR
    +-- ProviderError        (exit 5)  PROVIDER_ERROR
    +-- ConfigError          (exit 1)
    +-- UnknownProtocolError (exit 2)
    +-- InvalidTransitionError (exit 1)
"""

from __future__ import annotations

from typing import Optional

from handshake_engine.exit_codes import (
    EXIT_AUTH_FAILURE,
    EXIT_GENERIC_FAILURE,
    EXIT_INVALID_USAGE,
    EXIT_NETWORK_ERROR,
    EXIT_PARSE_ERROR,
    EXIT_PROVIDER_ERROR,
    EXIT_REFRESH_FAILURE,
    EXIT_VALIDATION_FAILURE,
)
from handshake_engine.models import ErrorCode


class HandshakeError(Exception):
    """Base exception for all handshake_engine errors.

    Args:
        message: Human-readable error description.
        exit_code: Optional override for the class-level exit code.
        status_code: HTTP status of the provider response that caused the
            error, when there was one.
    """

    exit_code: int = EXIT_GENERIC_FAILURE
    error_code: Optional[ErrorCode] = None

    def __init__(
        self,
        message: str,
        exit_code: int | None = None,
        status_code: int | None = None,
    ):
        super().__init__(message)
        if exit_code is not None:
            self.exit_code = exit_code
        self.status_code = status_code


class ValidationError_(HandshakeError):
    """Raised when required credential fields are missing or malformed.

    Named with a trailing underscore to avoid clashing with
    ``pydantic.ValidationError``.
    """

    exit_code = EXIT_VALIDATION_FAILURE
    error_code = ErrorCode.VALIDATION_ERROR


class AuthError(HandshakeError):
    """Raised when the provider rejects the credentials (HTTP 401 / 403, OAuth ``error``)."""

    exit_code = EXIT_AUTH_FAILURE
    error_code = ErrorCode.AUTH_ERROR


class TokenRefreshError(HandshakeError):
    """Raised when an expired token cannot be refreshed."""

    exit_code = EXIT_REFRESH_FAILURE
    error_code = ErrorCode.TOKEN_REFRESH_FAILED


class NetworkError(HandshakeError):
    """Raised on network-level failures (timeout, DNS resolution, connection reset)."""

    exit_code = EXIT_NETWORK_ERROR
    error_code = ErrorCode.NETWORK_ERROR


class ParseError(HandshakeError):
    """Raised when a command template or a required structured response cannot be parsed."""

    exit_code = EXIT_PARSE_ERROR
    error_code = ErrorCode.PARSE_ERROR


class ProviderError(HandshakeError):
    """Raised when the provider returns a well-formed non-2xx response."""

    exit_code = EXIT_PROVIDER_ERROR
    error_code = ErrorCode.PROVIDER_ERROR


class ConfigError(HandshakeError):
    """Raised for configuration problems (invalid JSON, bad credential sources)."""

    exit_code = EXIT_GENERIC_FAILURE


class UnknownProtocolError(HandshakeError):
    """Raised when no module is registered for a protocol type."""

    exit_code = EXIT_INVALID_USAGE


class InvalidTransitionError(HandshakeError):
    """Raised when a flow step would move a credential through an illegal state change."""

    exit_code = EXIT_GENERIC_FAILURE


_BY_ERROR_CODE: dict[ErrorCode, type[HandshakeError]] = {
    cls.error_code: cls
    for cls in (ValidationError_, AuthError, TokenRefreshError, NetworkError, ParseError, ProviderError)
    if cls.error_code is not None
}


def exit_code_for(error_code: Optional[ErrorCode]) -> int:
    """The CLI exit code for a result's ``error_code``.

    Example::

        >>> exit_code_for(ErrorCode.NETWORK_ERROR)
        6
    """
    if error_code is None:
        return EXIT_GENERIC_FAILURE
    return _BY_ERROR_CODE[error_code].exit_code
