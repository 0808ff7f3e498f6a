"""GraphQL protocol module.

This module provides :class:`GraphQLModule`, which implements the
``graphql`` protocol type. Every call is a ``POST`` of
``{"query", "variables", "operationName"}`` to the configured endpoint.

GraphQL servers usually answer ``200 OK`` even when the operation failed,
so the module inspects the ``errors`` array itself:

* ``errors`` without ``data`` -> a failed result. ``UNAUTHENTICATED`` and
  ``FORBIDDEN`` codes map to ``AUTH_ERROR``, anything else to
  ``PROVIDER_ERROR``.
* ``errors`` alongside ``data`` -> a successful partial result whose
  ``error`` field carries the formatted errors.
"""

from __future__ import annotations

import base64
import json
import logging
import re
import time
from typing import Any, Optional

from handshake_engine.auth.base import ProtocolModule, field_bool, field_int, field_json
from handshake_engine.auth.redirect import url_field
from handshake_engine.exceptions import HandshakeError, ValidationError_
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

logger = logging.getLogger(__name__)

HEALTH_QUERY = "query HealthCheck { __typename }"
INTROSPECTION_TEST_QUERY = "query IntrospectionTest { __schema { queryType { name } } }"

_AUTH_CODES = ("UNAUTHENTICATED", "FORBIDDEN", "UNAUTHORIZED")
_OPERATION_RE = re.compile(r"^\s*(query|mutation|subscription)\b\s*(\w+)?", re.IGNORECASE)


def parse_operation(document: str) -> tuple[str, Optional[str]]:
    """Return ``(operation_type, operation_name)`` for a GraphQL document.

    Example::

        >>> parse_operation("mutation AddUser { add { id } }")
        ('mutation', 'AddUser')
        >>> parse_operation("{ viewer { login } }")
        ('query', None)
    """
    match = _OPERATION_RE.match(document)
    if match is None:
        return "query", None
    return match.group(1).lower(), match.group(2)


def format_errors(errors: list[dict[str, Any]]) -> str:
    """Render a GraphQL ``errors`` array as numbered lines with path and location."""
    lines = []
    for index, error in enumerate(errors, start=1):
        line = f"{index}. {error.get('message', 'Unknown error')}"
        path = error.get("path")
        if path:
            line += f" (at {'.'.join(str(p) for p in path)})"
        locations = error.get("locations")
        if locations:
            line += f" [line {locations[0].get('line')}, col {locations[0].get('column')}]"
        lines.append(line)
    return "\n".join(lines)


def _is_auth_error(error: dict[str, Any]) -> bool:
    code = str((error.get("extensions") or {}).get("code", "")).upper()
    message = str(error.get("message", "")).lower()
    return code in _AUTH_CODES or "unauthorized" in message or "authentication" in message


class GraphQLModule(ProtocolModule):
    """Authenticate GraphQL operations with a token or custom header."""

    def metadata(self) -> ProtocolMetadata:
        return ProtocolMetadata(
            type="graphql",
            display_name="GraphQL API",
            description="GraphQL endpoints with Bearer, API key, Basic or custom header authentication.",
            version="1.0.0",
            documentation_url="https://graphql.org/learn/serving-over-http/",
            capabilities=ProtocolCapabilities(requires_server_side=True),
            use_cases=["Flexible data fetching", "Headless CMS access", "Developer platform APIs"],
            example_platforms=["GitHub GraphQL", "Shopify", "Contentful", "Hasura", "Linear"],
        )

    def required_fields(self) -> list[FieldDefinition]:
        return [
            url_field(
                "endpoint",
                "GraphQL Endpoint",
                required=True,
                placeholder="https://api.example.com/graphql",
                group="endpoint",
                order=1,
            ),
            FieldDefinition(
                id="authMethod",
                label="Authentication Method",
                kind=FieldKind.SELECT,
                required=True,
                default="bearer",
                options=[
                    FieldOption(value="bearer", label="Bearer Token (Most Common)"),
                    FieldOption(value="api-key", label="API Key Header"),
                    FieldOption(value="basic", label="Basic Authentication"),
                    FieldOption(value="custom-header", label="Custom Header"),
                    FieldOption(value="none", label="No Authentication (Public)"),
                ],
                group="authentication",
                order=2,
            ),
            FieldDefinition(
                id="authToken",
                label="Auth Token",
                kind=FieldKind.SECRET,
                required=True,
                description="Token, API key, or user:password for Basic authentication.",
                group="authentication",
                order=3,
                visible_when=VisibilityRule(
                    field="authMethod", value="none", operator=VisibilityOperator.NOT_EQUALS
                ),
            ),
        ]

    def optional_fields(self) -> list[FieldDefinition]:
        named_header = VisibilityRule(
            field="authMethod", value=["api-key", "custom-header"], operator=VisibilityOperator.IN
        )
        return [
            FieldDefinition(
                id="authHeaderName",
                label="Header Name",
                default="X-API-Key",
                group="authentication",
                order=4,
                visible_when=named_header,
            ),
            FieldDefinition(
                id="authHeaderPrefix",
                label="Header Prefix",
                placeholder="Token ",
                group="authentication",
                order=5,
                visible_when=VisibilityRule(field="authMethod", value="custom-header"),
            ),
            FieldDefinition(
                id="additionalHeaders",
                label="Additional Headers",
                kind=FieldKind.JSON,
                placeholder='{"X-Client": "handshake"}',
                group="advanced",
                order=6,
            ),
            FieldDefinition(
                id="timeout",
                label="Timeout (ms)",
                kind=FieldKind.NUMBER,
                default=30000,
                min=1000,
                max=300000,
                group="advanced",
                order=7,
            ),
            FieldDefinition(
                id="enableIntrospection",
                label="Test with Introspection",
                kind=FieldKind.CHECKBOX,
                default=True,
                description="Run an introspection query when authenticating.",
                group="advanced",
                order=8,
            ),
            FieldDefinition(
                id="subscriptionEndpoint",
                label="Subscription Endpoint",
                kind=FieldKind.URL,
                placeholder="wss://api.example.com/graphql",
                group="endpoint",
                order=9,
            ),
        ]

    def _method(self, record: CredentialRecord) -> str:
        return str(self.setting(record, "authMethod"))

    def default_headers(self, record: CredentialRecord) -> dict[str, str]:
        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        headers.update({str(k): str(v) for k, v in field_json(record, "additionalHeaders").items()})
        return headers

    def inject_authentication(self, context: ExecutionContext) -> AuthInjection:
        record = context.credentials
        method = self._method(record)
        if method == "none":
            return AuthInjection()
        token = record.get("authToken")
        if not token:
            raise ValidationError_("Auth token is required for non-public APIs")
        token = str(token)

        if method == "api-key":
            name = str(self.setting(record, "authHeaderName") or "X-API-Key")
            return AuthInjection(headers={name: token})
        if method == "basic":
            if ":" in token:
                token = base64.b64encode(token.encode()).decode("ascii")
            return AuthInjection(headers={"Authorization": f"Basic {token}"})
        if method == "custom-header":
            name = str(record.get("authHeaderName") or "Authorization")
            return AuthInjection(headers={name: f"{record.get('authHeaderPrefix', '')}{token}"})
        return AuthInjection(headers={"Authorization": f"Bearer {token}"})

    # ------------------------------------------------------------------ #
    # Operations
    # ------------------------------------------------------------------ #

    @staticmethod
    def _operation(body: Any) -> dict[str, Any]:
        if isinstance(body, str):
            stripped = body.strip()
            if stripped.startswith("{") and '"query"' in stripped:
                try:
                    body = json.loads(stripped)
                except ValueError:
                    return {"query": body}
            else:
                return {"query": body}
        if isinstance(body, dict) and isinstance(body.get("query"), str):
            return {k: v for k, v in body.items() if k in ("query", "variables", "operationName")}
        raise ValidationError_("Invalid GraphQL request: must include query field")

    @staticmethod
    def _interpret(result: ExecutionResult) -> ExecutionResult:
        body = result.body
        if not isinstance(body, dict):
            return result
        errors = body.get("errors")
        if not isinstance(errors, list) or not errors:
            return result
        has_data = body.get("data") is not None
        if has_data:
            return result.model_copy(update={"error": format_errors(errors)})
        code = ErrorCode.AUTH_ERROR if _is_auth_error(errors[0]) else ErrorCode.PROVIDER_ERROR
        return result.model_copy(
            update={
                "success": False,
                "error": format_errors(errors),
                "error_code": result.error_code or code,
            }
        )

    async def execute_request(self, context: ExecutionContext) -> ExecutionResult:
        """POST the GraphQL operation in ``context.body`` to the endpoint.

        ``context.body`` is either a query string or a dict with ``query``,
        ``variables`` and ``operationName``.
        """
        record = context.credentials
        try:
            operation = self._operation(context.body)
            injection = self.inject_authentication(context)
        except HandshakeError as exc:
            return ExecutionResult.failure(str(exc), exc.error_code or ErrorCode.VALIDATION_ERROR)

        kind, name = parse_operation(operation["query"])
        logger.debug("GraphQL %s %s", kind, name or "(anonymous)")

        call = context.model_copy(
            update={
                "url": context.url or str(record.get("endpoint", "")),
                "method": "POST",
                "body": operation,
                "timeout_ms": context.timeout_ms or field_int(record, "timeout", 30000),
            }
        )
        result = await self.pipeline.execute(
            call,
            injection,
            default_headers=self.default_headers(record),
            base_url=record.get("endpoint"),
        )
        return self._interpret(result)

    async def query(
        self,
        record: CredentialRecord,
        document: str,
        variables: Optional[dict[str, Any]] = None,
        operation_name: Optional[str] = None,
    ) -> ExecutionResult:
        """Run a query or mutation against the record's endpoint."""
        body: dict[str, Any] = {"query": document}
        if variables:
            body["variables"] = variables
        if operation_name:
            body["operationName"] = operation_name
        context = ExecutionContext(url="", method="POST", body=body, credentials=record)
        return await self.execute_request(context)

    async def authenticate(self, record: CredentialRecord, step: int = 1) -> AuthFlowStep:
        """Optionally test the endpoint with an introspection query.

        Servers that disable introspection still authenticate successfully.
        """
        if field_bool(record, "enableIntrospection", True):
            result = await self.query(record, INTROSPECTION_TEST_QUERY)
            if not result.success:
                message = result.error or f"HTTP {result.status_code}"
                if "introspection" not in message.lower():
                    return AuthFlowStep.failed(
                        "Connection Failed",
                        message,
                        result.error_code or ErrorCode.NETWORK_ERROR,
                        description="Failed to connect to GraphQL endpoint.",
                    )
        return AuthFlowStep(
            kind=StepKind.COMPLETE,
            title="GraphQL Configured",
            description="Your GraphQL endpoint is ready to use.",
            data={
                "endpoint": record.get("endpoint"),
                "auth_method": self._method(record),
                "has_subscriptions": bool(record.get("subscriptionEndpoint")),
            },
        )

    async def health_check(self, record: CredentialRecord) -> HealthCheckResult:
        started = time.perf_counter()
        result = await self.query(record, HEALTH_QUERY)
        latency = (time.perf_counter() - started) * 1000.0

        if result.status_code == 0:
            return HealthCheckResult(
                healthy=False,
                message=result.error or "Connection failed",
                latency_ms=latency,
                token_status=TokenStatus.INVALID,
                token_expires_in=0,
            )
        if not result.success:
            auth_failed = result.error_code == ErrorCode.AUTH_ERROR
            return HealthCheckResult(
                healthy=False,
                message="Authentication failed" if auth_failed else (result.error or "Health check failed"),
                latency_ms=latency,
                token_status=TokenStatus.INVALID if auth_failed else TokenStatus.VALID,
                details={"error": result.error, "status_code": result.status_code},
            )
        data = result.body.get("data") if isinstance(result.body, dict) else None
        return HealthCheckResult(
            healthy=True,
            message="GraphQL endpoint is responding",
            latency_ms=latency,
            token_status=TokenStatus.VALID,
            details={"typename": (data or {}).get("__typename")},
        )
