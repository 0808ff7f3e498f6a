"""GraphQL protocol module.

Implements the ``graphql`` protocol type: queries over HTTP POST with
bearer, API key, basic or custom-header auth.

See Also:
    :class:`~handshake_engine.plugins.graphql.plugin.GraphQLModule`
    :mod:`handshake_engine.auth.base` for the module contract.
"""

from handshake_engine.plugins.graphql.plugin import GraphQLModule

__all__ = ["GraphQLModule"]
