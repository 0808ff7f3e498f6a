"""cURL command template protocol module.

Implements the ``curl-default`` protocol type, which replays a stored
cURL command with placeholder substitution.

See Also:
    :class:`~handshake_engine.plugins.curl_default.plugin.CurlDefaultModule`
    :mod:`handshake_engine.auth.base` for the module contract.
"""

from handshake_engine.plugins.curl_default.plugin import CurlDefaultModule

__all__ = ["CurlDefaultModule"]
