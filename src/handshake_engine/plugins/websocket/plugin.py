"""WebSocket protocol module.

This module provides :class:`WebSocketModule`, which implements the
``websocket`` protocol type on top of the :mod:`websockets` library.

Connections are call-scoped: each :meth:`~WebSocketModule.execute_request`
opens a socket, authenticates, sends ``context.body`` as one message,
optionally waits for one reply, and closes. Nothing stays open between
calls.

Authentication methods:

* ``query-param`` -- the token is appended to the URL (``?token=...``).
* ``first-message`` -- after connecting, a JSON message rendered from
  ``authMessageTemplate`` (``{{type}}`` and ``{{token}}`` placeholders)
  is sent before anything else.
* ``subprotocol`` -- the token is offered as a ``Sec-WebSocket-Protocol``
  value, the usual workaround for browsers that cannot set headers.
* ``none``
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from typing import Any, Optional
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from websockets.asyncio.client import connect
from websockets.exceptions import ConnectionClosed, InvalidStatus, InvalidURI, WebSocketException

from handshake_engine.auth.base import ProtocolModule, field_int
from handshake_engine.exceptions import HandshakeError, ValidationError_
from handshake_engine.masking import mask_url
from handshake_engine.models import (
    AuthFlowStep,
    AuthInjection,
    CredentialRecord,
    ErrorCode,
    ExecutionContext,
    ExecutionResult,
    FieldDefinition,
    FieldKind,
    FieldOption,
    HealthCheckResult,
    ProtocolCapabilities,
    ProtocolMetadata,
    StepKind,
    TokenStatus,
    VisibilityOperator,
    VisibilityRule,
)
from handshake_engine.placeholders import substitute

logger = logging.getLogger(__name__)

DEFAULT_AUTH_TEMPLATE = '{"type": "{{type}}", "token": "{{token}}"}'

CLOSE_REASONS = {
    1000: "Normal closure",
    1001: "Going away",
    1002: "Protocol error",
    1003: "Unsupported data type",
    1005: "No status received",
    1006: "Abnormal closure (no close frame)",
    1007: "Invalid payload data",
    1008: "Policy violation",
    1009: "Message too big",
    1010: "Missing extension",
    1011: "Internal server error",
    1012: "Service restart",
    1013: "Try again later",
    1014: "Bad gateway",
    1015: "TLS handshake failed",
}


def close_reason(code: int) -> str:
    return CLOSE_REASONS.get(code, f"Unknown ({code})")


def parse_message(data: Any) -> Any:
    """Decode a received frame: JSON text becomes an object, anything else is returned as is."""
    if isinstance(data, bytes):
        try:
            data = data.decode("utf-8")
        except UnicodeDecodeError:
            return data
    if isinstance(data, str):
        try:
            return json.loads(data)
        except ValueError:
            return data
    return data


class WebSocketModule(ProtocolModule):
    """Authenticate WebSocket connections and exchange single messages."""

    def metadata(self) -> ProtocolMetadata:
        return ProtocolMetadata(
            type="websocket",
            display_name="WebSocket",
            description=(
                "Real-time WebSocket connections authenticated by URL token, "
                "first message or subprotocol."
            ),
            version="1.0.0",
            documentation_url="https://datatracker.ietf.org/doc/html/rfc6455",
            capabilities=ProtocolCapabilities(requires_server_side=True, supports_auto_injection=False),
            use_cases=["Real-time feeds", "Chat and notifications", "Trading streams"],
            example_platforms=["Slack RTM", "Discord Gateway", "Binance", "Coinbase"],
        )

    def required_fields(self) -> list[FieldDefinition]:
        return [
            FieldDefinition(
                id="url",
                label="WebSocket URL",
                kind=FieldKind.URL,
                required=True,
                placeholder="wss://stream.example.com/ws",
                pattern=r"^wss?://",
                pattern_error="WebSocket URL must start with ws:// or wss://",
                group="connection",
                order=1,
            ),
            FieldDefinition(
                id="authMethod",
                label="Authentication Method",
                kind=FieldKind.SELECT,
                required=True,
                default="query-param",
                options=[
                    FieldOption(value="query-param", label="Query Parameter (Token in URL)"),
                    FieldOption(value="first-message", label="First Message (Send auth after connect)"),
                    FieldOption(value="subprotocol", label="Subprotocol (Token in header)"),
                    FieldOption(value="none", label="No Authentication"),
                ],
                group="authentication",
                order=2,
            ),
            FieldDefinition(
                id="authToken",
                label="Auth Token",
                kind=FieldKind.SECRET,
                required=True,
                group="authentication",
                order=4,
                visible_when=VisibilityRule(
                    field="authMethod", value="none", operator=VisibilityOperator.NOT_EQUALS
                ),
            ),
        ]

    def optional_fields(self) -> list[FieldDefinition]:
        first_message = VisibilityRule(field="authMethod", value="first-message")
        return [
            FieldDefinition(
                id="messageFormat",
                label="Message Format",
                kind=FieldKind.SELECT,
                default="json",
                options=[
                    FieldOption(value="json", label="JSON (Most Common)"),
                    FieldOption(value="text", label="Plain Text"),
                    FieldOption(value="binary", label="Binary"),
                ],
                group="messages",
                order=3,
            ),
            FieldDefinition(
                id="tokenParamName",
                label="Token Parameter Name",
                default="token",
                group="authentication",
                order=5,
                visible_when=VisibilityRule(field="authMethod", value="query-param"),
            ),
            FieldDefinition(
                id="authMessageType",
                label="Auth Message Type",
                default="authenticate",
                group="authentication",
                order=6,
                visible_when=first_message,
            ),
            FieldDefinition(
                id="authMessageTemplate",
                label="Auth Message Template",
                kind=FieldKind.JSON,
                default=DEFAULT_AUTH_TEMPLATE,
                description="Use {{type}} and {{token}} placeholders.",
                group="authentication",
                order=7,
                visible_when=first_message,
            ),
            FieldDefinition(
                id="subprotocols",
                label="Subprotocols",
                placeholder="graphql-ws, v1.json",
                description="Comma-separated list offered during the handshake.",
                group="connection",
                order=8,
            ),
            FieldDefinition(
                id="responseTimeout",
                label="Response Timeout (ms)",
                kind=FieldKind.NUMBER,
                default=5000,
                min=0,
                max=300000,
                description="How long to wait for a reply after sending. 0 sends without waiting.",
                group="messages",
                order=9,
            ),
            FieldDefinition(
                id="pingInterval",
                label="Ping Interval (ms)",
                kind=FieldKind.NUMBER,
                default=30000,
                min=1000,
                group="keepalive",
                order=10,
            ),
            FieldDefinition(
                id="pongTimeout",
                label="Pong Timeout (ms)",
                kind=FieldKind.NUMBER,
                default=5000,
                min=1000,
                group="keepalive",
                order=11,
            ),
        ]

    def _method(self, record: CredentialRecord) -> str:
        return str(self.setting(record, "authMethod"))

    def _token(self, record: CredentialRecord) -> str:
        token = record.get("authToken")
        if not token:
            raise ValidationError_("Auth token is required for this authentication method")
        return str(token)

    # ------------------------------------------------------------------ #
    # Connection parameters
    # ------------------------------------------------------------------ #

    def connection_url(self, record: CredentialRecord, url: Optional[str] = None) -> str:
        """The URL to dial, with the token appended for ``query-param`` auth."""
        target = url or str(record.get("url", ""))
        if self._method(record) != "query-param":
            return target
        parts = urlsplit(target)
        query = parse_qsl(parts.query, keep_blank_values=True)
        query.append((str(self.setting(record, "tokenParamName")), self._token(record)))
        return urlunsplit(parts._replace(query=urlencode(query)))

    def subprotocols(self, record: CredentialRecord) -> list[str]:
        protocols = [p.strip() for p in str(record.get("subprotocols", "")).split(",") if p.strip()]
        if self._method(record) == "subprotocol":
            protocols.append(self._token(record))
        return protocols

    def auth_message(self, record: CredentialRecord) -> Optional[str]:
        """The first message to send, or ``None`` when auth is not message-based."""
        if self._method(record) != "first-message":
            return None
        template = self.setting(record, "authMessageTemplate")
        if not isinstance(template, str):
            template = json.dumps(template)
        rendered = substitute(
            template,
            {"type": str(self.setting(record, "authMessageType")), "token": self._token(record)},
        ).output
        try:
            json.loads(rendered)
        except ValueError as exc:
            raise ValidationError_(f"Auth message template is not valid JSON: {exc}") from exc
        return rendered

    def encode(self, record: CredentialRecord, body: Any) -> Any:
        """Frame *body* according to ``messageFormat``."""
        fmt = self.setting(record, "messageFormat")
        if fmt == "binary":
            if isinstance(body, bytes):
                return body
            return (body if isinstance(body, str) else json.dumps(body)).encode("utf-8")
        if fmt == "json" and not isinstance(body, str):
            return json.dumps(body)
        return str(body)

    def inject_authentication(self, context: ExecutionContext) -> AuthInjection:
        """Query-parameter auth as an injection; the other methods act during the handshake."""
        record = context.credentials
        if self._method(record) == "query-param":
            name = str(self.setting(record, "tokenParamName"))
            return AuthInjection(query_params={name: self._token(record)})
        return AuthInjection()

    # ------------------------------------------------------------------ #
    # Exchange
    # ------------------------------------------------------------------ #

    def _connect(self, record: CredentialRecord, url: str, headers: dict[str, str]):
        return connect(
            url,
            additional_headers=headers or None,
            subprotocols=self.subprotocols(record) or None,
            open_timeout=self.pipeline.timeout_seconds(),
            ping_interval=field_int(record, "pingInterval", 30000) / 1000.0,
            ping_timeout=field_int(record, "pongTimeout", 5000) / 1000.0,
            user_agent_header=self.pipeline.config.user_agent,
        )

    async def exchange(
        self,
        record: CredentialRecord,
        message: Any = None,
        url: Optional[str] = None,
        headers: Optional[dict[str, str]] = None,
    ) -> ExecutionResult:
        """Connect, authenticate, send *message* and collect at most one reply."""
        started = time.perf_counter()
        try:
            target = self.connection_url(record, url)
            auth_message = self.auth_message(record)
        except HandshakeError as exc:
            return ExecutionResult.failure(str(exc), exc.error_code or ErrorCode.VALIDATION_ERROR)

        wait_s = field_int(record, "responseTimeout", 5000) / 1000.0
        logger.debug("Opening WebSocket %s", mask_url(target))
        try:
            async with self._connect(record, target, headers or {}) as ws:
                if auth_message is not None:
                    await ws.send(auth_message)
                sent = message is not None
                if sent:
                    await ws.send(self.encode(record, message))
                reply: Any = None
                if wait_s > 0 and (sent or auth_message is not None):
                    try:
                        reply = await asyncio.wait_for(ws.recv(), timeout=wait_s)
                    except asyncio.TimeoutError:
                        reply = None
                subprotocol = ws.subprotocol
        except InvalidStatus as exc:
            status = exc.response.status_code
            code = ErrorCode.AUTH_ERROR if status in (401, 403) else ErrorCode.PROVIDER_ERROR
            return ExecutionResult.failure(
                f"WebSocket handshake rejected: HTTP {status}",
                code,
                status_code=status,
                duration_ms=(time.perf_counter() - started) * 1000.0,
            )
        except InvalidURI as exc:
            return ExecutionResult.failure(f"Invalid WebSocket URL: {exc}", ErrorCode.VALIDATION_ERROR)
        except ConnectionClosed as exc:
            code = exc.rcvd.code if exc.rcvd is not None else 1006
            return ExecutionResult.failure(
                f"WebSocket closed by server: {code} {close_reason(code)}",
                ErrorCode.PROVIDER_ERROR,
                duration_ms=(time.perf_counter() - started) * 1000.0,
            )
        except (WebSocketException, OSError, asyncio.TimeoutError) as exc:
            return ExecutionResult.failure(
                f"WebSocket connection failed: {exc or type(exc).__name__}",
                ErrorCode.NETWORK_ERROR,
                duration_ms=(time.perf_counter() - started) * 1000.0,
            )

        raw = reply.decode("utf-8", "replace") if isinstance(reply, bytes) else (reply or "")
        return ExecutionResult(
            success=True,
            status_code=101,
            body={"sent": sent, "response": parse_message(reply), "subprotocol": subprotocol},
            raw_body=raw,
            duration_ms=(time.perf_counter() - started) * 1000.0,
        )

    async def execute_request(self, context: ExecutionContext) -> ExecutionResult:
        """Send ``context.body`` as one message. ``context.url`` overrides the configured URL."""
        return await self.exchange(
            context.credentials,
            message=context.body,
            url=context.url or None,
            headers=context.headers,
        )

    async def authenticate(self, record: CredentialRecord, step: int = 1) -> AuthFlowStep:
        result = await self.exchange(record)
        if not result.success:
            return AuthFlowStep.failed(
                "Connection Failed",
                result.error or "Connection failed",
                result.error_code or ErrorCode.NETWORK_ERROR,
                description="Could not connect to WebSocket server.",
            )
        return AuthFlowStep(
            kind=StepKind.COMPLETE,
            title="WebSocket Connected",
            description="Successfully connected to WebSocket server.",
            data={
                "url": record.get("url"),
                "auth_method": self._method(record),
                "auth_response": result.body["response"],
            },
        )

    async def health_check(self, record: CredentialRecord) -> HealthCheckResult:
        """Open and close a connection without sending application messages."""
        result = await self.exchange(record)
        if result.success:
            return HealthCheckResult(
                healthy=True,
                message="WebSocket connection established",
                latency_ms=result.duration_ms,
                token_status=TokenStatus.VALID,
                details={"subprotocol": result.body.get("subprotocol")},
            )
        return HealthCheckResult(
            healthy=False,
            message=result.error or "Connection failed",
            latency_ms=result.duration_ms,
            token_status=TokenStatus.INVALID,
            token_expires_in=0,
        )
