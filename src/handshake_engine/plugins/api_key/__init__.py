"""API key protocol module.

Implements the ``api-key`` protocol type, which places a static key in a
header, query parameter or body field, optionally alongside a secondary key.

See Also:
    :class:`~handshake_engine.plugins.api_key.plugin.ApiKeyModule`
    :mod:`handshake_engine.auth.base` for the module contract.
"""

from handshake_engine.plugins.api_key.plugin import ApiKeyModule

__all__ = ["ApiKeyModule"]
