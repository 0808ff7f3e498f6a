"""WebSocket protocol module.

Implements the ``websocket`` protocol type, authenticating a connection by
query parameter, first message or subprotocol.

See Also:
    :class:`~handshake_engine.plugins.websocket.plugin.WebSocketModule`
    :mod:`handshake_engine.auth.base` for the module contract.
"""

from handshake_engine.plugins.websocket.plugin import WebSocketModule

__all__ = ["WebSocketModule"]
