"""OAuth 2.0 authorization code flow with PKCE.

Implements the ``oauth-pkce`` protocol type for public clients that cannot
keep a client secret.

See Also:
    :class:`~handshake_engine.plugins.oauth_pkce.plugin.OAuthPkceModule`
    :mod:`handshake_engine.auth.base` for the module contract.
"""

from handshake_engine.plugins.oauth_pkce.plugin import OAuthPkceModule

__all__ = ["OAuthPkceModule"]
