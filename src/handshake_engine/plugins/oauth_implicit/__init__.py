"""Legacy OAuth 2.0 implicit grant.

Implements the deprecated ``oauth-implicit`` protocol type. The access
token arrives in the redirect fragment and cannot be refreshed.

See Also:
    :class:`~handshake_engine.plugins.oauth_implicit.plugin.OAuthImplicitModule`
    :mod:`handshake_engine.auth.base` for the module contract.
"""

from handshake_engine.plugins.oauth_implicit.plugin import OAuthImplicitModule

__all__ = ["OAuthImplicitModule"]
