"""SOAP protocol module.

Implements the ``soap`` protocol type: SOAP 1.1 and 1.2 envelopes with
WS-Security UsernameToken, HTTP Basic, bearer or custom-header auth.

See Also:
    :class:`~handshake_engine.plugins.soap.plugin.SoapModule`
    :mod:`handshake_engine.auth.base` for the module contract.
"""

from handshake_engine.plugins.soap.plugin import SoapModule

__all__ = ["SoapModule"]
