"""OAuth 2.0 client credentials grant.

Implements the ``client-credentials`` protocol type for machine-to-machine
access with no user interaction.

See Also:
    :class:`~handshake_engine.plugins.client_credentials.plugin.ClientCredentialsModule`
    :mod:`handshake_engine.auth.base` for the module contract.
"""

from handshake_engine.plugins.client_credentials.plugin import ClientCredentialsModule

__all__ = ["ClientCredentialsModule"]
