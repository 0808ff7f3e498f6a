"""GitHub protocol module.

Implements the ``github`` protocol type: classic and fine-grained personal
access tokens, OAuth tokens, Actions runner tokens and GitHub App
installation tokens signed with RS256.

See Also:
    :class:`~handshake_engine.plugins.github.plugin.GitHubModule`
    :mod:`handshake_engine.auth.base` for the module contract.
"""

from handshake_engine.plugins.github.plugin import GitHubModule

__all__ = ["GitHubModule"]
