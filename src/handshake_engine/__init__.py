"""handshake_engine -- a pluggable protocol handshake engine for third-party APIs.

This package lets an operator register API credentials ("handshakes") and run
authenticated HTTP calls through a uniform set of authentication protocols:
API keys, the OAuth 2.0 family, GitHub tokens and Apps, raw cURL templates,
SOAP, GraphQL, WebSocket, and a keyless scraper.

Typical library use::

    from handshake_engine import EngineConfig, HandshakeEngine
    from handshake_engine.models import CredentialRecord, ExecutionContext

    record = CredentialRecord(protocol_type="api-key", fields={"apiKey": "k_1"})
    async with HandshakeEngine(EngineConfig()) as engine:
        step = await engine.authenticate(record)
        result = await engine.execute(
            ExecutionContext(url="https://api.example.com/me", credentials=record)
        )

Modules:
    engine: The :class:`HandshakeEngine` facade tying everything together.
    models: Pydantic models shared across the entire package.
    config: XDG-aware configuration and credential-record files.
    exceptions: Exception hierarchy with error-code and exit-code mapping.
    masking: Sensitive value masking for logs and debug output.
    placeholders: ``{{name}}`` template substitution.
    curl: cURL command parsing.
    app: Typer application factory and CLI entry point.
"""

__version__ = "0.1.0"

from handshake_engine.engine import HandshakeEngine  # noqa: E402
from handshake_engine.models import EngineConfig  # noqa: E402

__all__ = ["EngineConfig", "HandshakeEngine", "__version__"]
