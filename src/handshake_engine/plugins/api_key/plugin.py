"""API key module -- supports header, query parameter and body placement.

This module provides :class:`ApiKeyModule`, which injects a static API key
into outgoing requests. Placement is chosen by the ``placement`` field:

* ``header`` -- formatted by ``headerFormat``:

  ============================  ==========================================
  ``x-api-key`` (default)       ``X-API-Key: <key>``
  ``authorization-bearer``      ``Authorization: Bearer <key>``
  ``authorization-apikey``      ``Authorization: ApiKey <key>``
  ``authorization-basic``       ``Authorization: Basic base64(":<key>")``
  ``authorization-token``       ``Authorization: Token <key>``
  ``custom``                    ``<customHeaderName>: <customHeaderPrefix><key>``
  ============================  ==========================================

* ``query`` -- ``?<queryParamName>=<key>`` (default ``api_key``).
* ``body`` -- ``{"<bodyFieldName>": "<key>"}`` merged into JSON bodies.

An optional secondary key (public/secret key pairs) is sent as a header or
query parameter alongside the primary key.

API keys do not expire and cannot be refreshed. Revocation happens in the
provider's dashboard, so :meth:`~ApiKeyModule.revoke_tokens` only forgets
the key locally.
"""

from __future__ import annotations

import base64
import logging
from typing import Any

from handshake_engine.auth.base import ProtocolModule
from handshake_engine.auth.redirect import url_field
from handshake_engine.exceptions import ValidationError_
from handshake_engine.models import (
    AuthFlowStep,
    AuthInjection,
    CredentialRecord,
    ErrorCode,
    ExecutionContext,
    FieldDefinition,
    FieldKind,
    FieldOption,
    HealthCheckResult,
    ProtocolCapabilities,
    ProtocolMetadata,
    RevocationResult,
    StepKind,
    TokenStatus,
    VisibilityOperator,
    VisibilityRule,
)

logger = logging.getLogger(__name__)

_HEADER_FORMATS: dict[str, tuple[str, str]] = {
    "x-api-key": ("X-API-Key", ""),
    "authorization-bearer": ("Authorization", "Bearer "),
    "authorization-apikey": ("Authorization", "ApiKey "),
    "authorization-token": ("Authorization", "Token "),
}


class ApiKeyModule(ProtocolModule):
    """Authenticate with a static API key."""

    def metadata(self) -> ProtocolMetadata:
        return ProtocolMetadata(
            type="api-key",
            display_name="REST API Key",
            description="Simple API key authentication via headers, query parameters, or request body.",
            version="1.0.0",
            capabilities=ProtocolCapabilities(requires_server_side=True),
            use_cases=[
                "Third-party API integrations",
                "Payment APIs",
                "AI APIs",
                "Internal microservices",
                "Webhook authentication",
            ],
            example_platforms=["Stripe", "SendGrid", "OpenAI", "Anthropic", "Twilio", "Airtable"],
        )

    def required_fields(self) -> list[FieldDefinition]:
        return [
            FieldDefinition(
                id="apiKey",
                label="API Key",
                kind=FieldKind.SECRET,
                required=True,
                sensitive=True,
                description="Your API key from the provider.",
                placeholder="sk_live_xxxxxxxxxxxxxxxxxxxxx",
                group="credentials",
                order=1,
            ),
            FieldDefinition(
                id="placement",
                label="Key Placement",
                kind=FieldKind.SELECT,
                required=True,
                default="header",
                description="Where to include the API key in requests.",
                options=[
                    FieldOption(value="header", label="HTTP Header (Most Common)"),
                    FieldOption(value="query", label="Query Parameter"),
                    FieldOption(value="body", label="Request Body"),
                ],
                group="configuration",
                order=2,
            ),
            FieldDefinition(
                id="customHeaderName",
                label="Custom Header Name",
                required=True,
                placeholder="X-Custom-API-Key",
                pattern=r"^[A-Za-z0-9!#$%&'*+.^_`|~-]+$",
                pattern_error="Custom Header Name must be a valid HTTP header name",
                group="configuration",
                order=4,
                visible_when=VisibilityRule(field="headerFormat", value="custom"),
            ),
        ]

    def optional_fields(self) -> list[FieldDefinition]:
        custom = VisibilityRule(field="headerFormat", value="custom")
        has_secondary = VisibilityRule(field="secondaryApiKey", operator=VisibilityOperator.EXISTS)
        return [
            FieldDefinition(
                id="headerFormat",
                label="Header Format",
                kind=FieldKind.SELECT,
                default="x-api-key",
                options=[
                    FieldOption(value="x-api-key", label="X-API-Key: {key}"),
                    FieldOption(value="authorization-bearer", label="Authorization: Bearer {key}"),
                    FieldOption(value="authorization-apikey", label="Authorization: ApiKey {key}"),
                    FieldOption(value="authorization-basic", label="Authorization: Basic (key as password)"),
                    FieldOption(value="authorization-token", label="Authorization: Token {key}"),
                    FieldOption(value="custom", label="Custom Header"),
                ],
                group="configuration",
                order=3,
                visible_when=VisibilityRule(field="placement", value="header"),
            ),
            FieldDefinition(
                id="customHeaderPrefix",
                label="Header Value Prefix",
                description='Prefix before the key value (e.g., "Bearer ").',
                group="configuration",
                order=5,
                visible_when=custom,
            ),
            FieldDefinition(
                id="queryParamName",
                label="Query Parameter Name",
                default="api_key",
                group="configuration",
                order=6,
                visible_when=VisibilityRule(field="placement", value="query"),
            ),
            FieldDefinition(
                id="bodyFieldName",
                label="Body Field Name",
                default="api_key",
                group="configuration",
                order=7,
                visible_when=VisibilityRule(field="placement", value="body"),
            ),
            FieldDefinition(
                id="secondaryApiKey",
                label="Secondary API Key",
                kind=FieldKind.SECRET,
                sensitive=True,
                description="Some APIs require a key pair (e.g., public + secret key).",
                group="credentials",
                order=8,
            ),
            FieldDefinition(
                id="secondaryPlacement",
                label="Secondary Key Placement",
                kind=FieldKind.SELECT,
                default="header",
                options=[
                    FieldOption(value="header", label="HTTP Header"),
                    FieldOption(value="query", label="Query Parameter"),
                ],
                group="configuration",
                order=9,
                visible_when=has_secondary,
            ),
            FieldDefinition(
                id="secondaryKeyName",
                label="Secondary Key Name",
                default="X-Public-Key",
                group="configuration",
                order=10,
                visible_when=has_secondary,
            ),
            url_field(
                "baseUrl",
                "Base URL",
                placeholder="https://api.example.com",
                group="endpoints",
                order=11,
            ),
            FieldDefinition(
                id="healthCheckPath",
                label="Health Check Path",
                description="Endpoint path to test API key validity.",
                placeholder="/v1/me",
                group="endpoints",
                order=12,
            ),
        ]

    async def authenticate(self, record: CredentialRecord, step: int = 1) -> AuthFlowStep:
        """Accept the key, verifying it against ``healthCheckPath`` when configured."""
        if record.get("baseUrl") and record.get("healthCheckPath"):
            result, _ = await self.probe(record, str(record.get("healthCheckPath")))
            if not result.success:
                return AuthFlowStep.failed(
                    "API Key Invalid",
                    result.error or f"HTTP {result.status_code}",
                    result.error_code or ErrorCode.AUTH_ERROR,
                    description="The API key was rejected by the server.",
                )

        return AuthFlowStep(
            kind=StepKind.COMPLETE,
            title="API Key Configured",
            description="Your API key is ready to use.",
            data={
                "placement": self.setting(record, "placement"),
                "has_secondary_key": record.get("secondaryApiKey") is not None,
            },
        )

    def inject_authentication(self, context: ExecutionContext) -> AuthInjection:
        record = context.credentials
        key = record.get("apiKey")
        if key is None:
            raise ValidationError_("API key is not configured")
        key = str(key)
        injection = AuthInjection()
        placement = self.setting(record, "placement")

        if placement == "query":
            injection.query_params[str(self.setting(record, "queryParamName"))] = key
        elif placement == "body":
            injection.body = {str(self.setting(record, "bodyFieldName")): key}
        else:
            name, value = self._header(record, key)
            injection.headers[name] = value

        secondary = record.get("secondaryApiKey")
        if secondary is not None:
            name = str(self.setting(record, "secondaryKeyName"))
            if self.setting(record, "secondaryPlacement") == "query":
                injection.query_params[name] = str(secondary)
            else:
                injection.headers[name] = str(secondary)
        return injection

    def _header(self, record: CredentialRecord, key: str) -> tuple[str, str]:
        header_format = self.setting(record, "headerFormat")
        if header_format == "authorization-basic":
            encoded = base64.b64encode(f":{key}".encode()).decode("ascii")
            return "Authorization", f"Basic {encoded}"
        if header_format == "custom":
            name = record.get("customHeaderName")
            if not name:
                raise ValidationError_("Custom header name is required for the custom header format")
            return str(name), f"{record.get('customHeaderPrefix', '')}{key}"
        name, prefix = _HEADER_FORMATS.get(str(header_format), _HEADER_FORMATS["x-api-key"])
        return name, f"{prefix}{key}"

    async def revoke_tokens(self, record: CredentialRecord) -> RevocationResult:
        record.clear_tokens()
        logger.info("API keys are revoked in the provider dashboard; local state cleared")
        return RevocationResult(success=True)

    async def health_check(self, record: CredentialRecord) -> HealthCheckResult:
        if record.get("apiKey") is None:
            return HealthCheckResult(
                healthy=False,
                message="No API key configured",
                token_status=TokenStatus.MISSING,
            )

        path = record.get("healthCheckPath")
        if not path or not record.get("baseUrl"):
            return HealthCheckResult(
                healthy=True,
                message="API key configured (no health check endpoint)",
                token_status=TokenStatus.VALID,
                details={"validated": False},
            )

        result, latency = await self.probe(record, str(path))
        details: dict[str, Any] = {"status_code": result.status_code, "validated": True}
        if result.status_code in (401, 403):
            return HealthCheckResult(
                healthy=False,
                message="API key rejected by the server",
                latency_ms=latency,
                token_status=TokenStatus.INVALID,
                details=details,
            )
        if result.status_code == 429:
            return HealthCheckResult(
                healthy=True,
                message="API key valid but rate limited",
                latency_ms=latency,
                token_status=TokenStatus.VALID,
                details={**details, "rate_limited": True},
            )
        return HealthCheckResult(
            healthy=result.success,
            message="API key is valid" if result.success else (result.error or "Health check failed"),
            latency_ms=latency,
            token_status=TokenStatus.VALID,
            details=details,
        )
