"""OAuth 2.0 authorization code flow for confidential clients.

Implements the ``oauth-auth-code`` protocol type. The client secret is sent
to the token endpoint, so this module requires a server-side caller.

See Also:
    :class:`~handshake_engine.plugins.oauth_auth_code.plugin.OAuthAuthCodeModule`
    :mod:`handshake_engine.auth.base` for the module contract.
"""

from handshake_engine.plugins.oauth_auth_code.plugin import OAuthAuthCodeModule

__all__ = ["OAuthAuthCodeModule"]
