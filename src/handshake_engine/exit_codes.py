"""Numeric process exit codes following `clig.dev <https://clig.dev/>`_ conventions.

Each constant maps to a specific error category and is referenced by the
corresponding :class:`~handshake_engine.exceptions.HandshakeError` subclass.
Shell wrappers can inspect the exit code of the ``handshake`` command to
determine the failure class without parsing stderr.

Example::

    $ handshake exec github.json --url /user
    $ echo $?
    8   # EXIT_REFRESH_FAILURE -- the installation token could not be renewed
"""

EXIT_SUCCESS = 0
"""The command completed successfully."""

EXIT_GENERIC_FAILURE = 1
"""An unclassified error occurred."""

EXIT_INVALID_USAGE = 2
"""The command was invoked with invalid arguments or an unknown protocol type."""

EXIT_AUTH_FAILURE = 3
"""The provider rejected the credentials."""

EXIT_VALIDATION_FAILURE = 4
"""Required credential fields were missing or malformed."""

EXIT_PROVIDER_ERROR = 5
"""The provider returned a well-formed non-2xx response."""

EXIT_NETWORK_ERROR = 6
"""A network-level error occurred (timeout, DNS failure, connection reset)."""

EXIT_PARSE_ERROR = 7
"""A command template or structured response could not be parsed."""

EXIT_REFRESH_FAILURE = 8
"""An expired token could not be refreshed."""
