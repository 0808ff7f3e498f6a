"""Protocol registry -- maps protocol type strings to module instances.

The :class:`ProtocolRegistry` is lookup only: it holds one
:class:`~handshake_engine.auth.base.ProtocolModule` per protocol type and
has no behaviour of its own. :func:`create_default_registry` returns a
registry pre-loaded with every built-in module.

See Also:
    :class:`~handshake_engine.engine.HandshakeEngine` -- resolves a
    record's ``protocol_type`` through the registry on every call.
"""

from __future__ import annotations

import logging

from handshake_engine.auth.base import ProtocolModule
from handshake_engine.client.pipeline import ExecutionPipeline
from handshake_engine.exceptions import UnknownProtocolError
from handshake_engine.models import ProtocolMetadata

logger = logging.getLogger(__name__)


class ProtocolRegistry:
    """Registry of protocol modules, keyed by ``metadata().type``.

    Example::

        registry = ProtocolRegistry()
        registry.register(ApiKeyModule(pipeline))
        module = registry.get("api-key")
    """

    def __init__(self) -> None:
        self._modules: dict[str, ProtocolModule] = {}

    def register(self, module: ProtocolModule) -> None:
        """Register *module* under its protocol type.

        Raises:
            ValueError: If a module is already registered for that type.
        """
        protocol_type = module.protocol_type
        if protocol_type in self._modules:
            raise ValueError(f"Protocol module already registered: {protocol_type}")
        self._modules[protocol_type] = module
        logger.debug("Registered protocol module '%s'", protocol_type)

    def get(self, protocol_type: str) -> ProtocolModule:
        """Look up the module for *protocol_type*.

        Raises:
            UnknownProtocolError: If nothing is registered under that type.
        """
        module = self._modules.get(protocol_type)
        if module is None:
            available = ", ".join(sorted(self._modules)) or "(none)"
            raise UnknownProtocolError(
                f"No protocol module registered for type '{protocol_type}'. "
                f"Available types: {available}"
            )
        return module

    def __contains__(self, protocol_type: object) -> bool:
        return protocol_type in self._modules

    def __len__(self) -> int:
        return len(self._modules)

    def list_types(self) -> list[str]:
        return sorted(self._modules)

    def list_metadata(self) -> list[ProtocolMetadata]:
        """Metadata for every registered module, sorted by type."""
        return [self._modules[t].metadata() for t in self.list_types()]


def create_default_registry(pipeline: ExecutionPipeline) -> ProtocolRegistry:
    """Create a :class:`ProtocolRegistry` pre-loaded with all built-in modules.

    The following protocol types are registered:

    - ``api-key`` -- static key in a header, query parameter or body field.
    - ``oauth-pkce`` -- OAuth 2.0 authorization code with PKCE.
    - ``oauth-auth-code`` -- confidential-client authorization code.
    - ``oauth-implicit`` -- legacy implicit grant (deprecated).
    - ``client-credentials`` -- machine-to-machine OAuth 2.0.
    - ``github`` -- personal access tokens and GitHub App installations.
    - ``curl-default`` -- raw cURL command template.
    - ``soap`` -- SOAP 1.1/1.2 with WS-Security.
    - ``graphql`` -- GraphQL over HTTP.
    - ``websocket`` -- authenticated WebSocket connections.
    - ``scraper`` -- unauthenticated page fetching.

    Args:
        pipeline: The execution pipeline shared by every module.
    """
    from handshake_engine.plugins.api_key import ApiKeyModule
    from handshake_engine.plugins.client_credentials import ClientCredentialsModule
    from handshake_engine.plugins.curl_default import CurlDefaultModule
    from handshake_engine.plugins.github import GitHubModule
    from handshake_engine.plugins.graphql import GraphQLModule
    from handshake_engine.plugins.oauth_auth_code import OAuthAuthCodeModule
    from handshake_engine.plugins.oauth_implicit import OAuthImplicitModule
    from handshake_engine.plugins.oauth_pkce import OAuthPkceModule
    from handshake_engine.plugins.scraper import ScraperModule
    from handshake_engine.plugins.soap import SoapModule
    from handshake_engine.plugins.websocket import WebSocketModule

    registry = ProtocolRegistry()
    registry.register(ApiKeyModule(pipeline))
    registry.register(OAuthPkceModule(pipeline))
    registry.register(OAuthAuthCodeModule(pipeline))
    registry.register(OAuthImplicitModule(pipeline))
    registry.register(ClientCredentialsModule(pipeline))
    registry.register(GitHubModule(pipeline))
    registry.register(CurlDefaultModule(pipeline))
    registry.register(SoapModule(pipeline))
    registry.register(GraphQLModule(pipeline))
    registry.register(WebSocketModule(pipeline))
    registry.register(ScraperModule(pipeline))
    return registry
