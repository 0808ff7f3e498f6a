"""cURL template module.

This module provides :class:`CurlDefaultModule`, which implements the
``curl-default`` protocol type. The handshake stores a whole cURL command
with ``{{placeholder}}`` markers, e.g.::

    curl -X POST 'https://api.example.com/v1/items' \\
      -H 'Authorization: Bearer {{access_token}}' \\
      -d '{"name": "{{name}}"}'

Authentication is whatever the template carries. Each call parses the
template, fills placeholders from the record's ``placeholderValues`` and
the call's own variables, and sends it through the shared pipeline with the
retry, redirect and timeout settings configured on the record.

A call whose context has a URL replaces the template's method and URL;
headers and body supplied by the caller win over the template's.
"""

from __future__ import annotations

import base64
import logging
from typing import Any, Optional
from urllib.parse import urlsplit, urlunsplit

from handshake_engine.auth.base import ProtocolModule, field_bool, field_int, field_json
from handshake_engine.auth.redirect import url_field
from handshake_engine.client.pipeline import RetryPolicy
from handshake_engine.curl import parse_curl
from handshake_engine.exceptions import HandshakeError, ParseError, ValidationError_
from handshake_engine.masking import mask_template
from handshake_engine.models import (
    AuthFlowStep,
    AuthInjection,
    CredentialRecord,
    ErrorCode,
    ExecutionContext,
    ExecutionResult,
    FieldDefinition,
    FieldKind,
    HealthCheckResult,
    ParsedCurlCommand,
    ProtocolCapabilities,
    ProtocolMetadata,
    StepKind,
    TokenStatus,
    VisibilityRule,
)
from handshake_engine.placeholders import find_placeholders

logger = logging.getLogger(__name__)


def rebase_url(url: str, base_url: str) -> str:
    """Swap the scheme and host of *url* for those of *base_url*.

    The path of *base_url* prefixes the original path. Relative *url*
    values are joined onto *base_url*.

    Example::

        >>> rebase_url("https://prod.x.com/v1/items?a=1", "http://localhost:8080")
        'http://localhost:8080/v1/items?a=1'
    """
    base = urlsplit(base_url)
    original = urlsplit(url)
    path = base.path.rstrip("/") + "/" + original.path.lstrip("/")
    return urlunsplit((base.scheme, base.netloc, path, original.query, original.fragment))


class CurlDefaultModule(ProtocolModule):
    """Execute requests from a stored cURL command template."""

    def metadata(self) -> ProtocolMetadata:
        return ProtocolMetadata(
            type="curl-default",
            display_name="cURL Default",
            description="Execute HTTP requests from cURL command templates with placeholder substitution.",
            version="1.0.0",
            capabilities=ProtocolCapabilities(requires_server_side=True),
            use_cases=[
                "Replaying requests copied from browser dev tools",
                "APIs with bespoke authentication headers",
                "Quick prototyping against undocumented endpoints",
            ],
            example_platforms=["Any HTTP API"],
        )

    def required_fields(self) -> list[FieldDefinition]:
        return [
            FieldDefinition(
                id="curlCommand",
                label="cURL Command",
                kind=FieldKind.TEXTAREA,
                required=True,
                sensitive=True,
                description="Paste a cURL command. Use {{placeholder}} for dynamic values.",
                placeholder="curl -X GET 'https://api.example.com/v1/users' -H 'Authorization: Bearer {{token}}'",
                group="command",
                order=1,
            ),
        ]

    def optional_fields(self) -> list[FieldDefinition]:
        retry = VisibilityRule(field="retryOnFailure", value=True)
        return [
            url_field(
                "baseUrl",
                "Base URL Override",
                description="Replaces the scheme and host of the command URL.",
                group="overrides",
                order=2,
            ),
            FieldDefinition(
                id="defaultHeaders",
                label="Default Headers",
                kind=FieldKind.JSON,
                description="Headers added to every request unless the command sets them.",
                placeholder='{"Accept": "application/json"}',
                group="overrides",
                order=3,
            ),
            FieldDefinition(
                id="placeholderValues",
                label="Placeholder Values",
                kind=FieldKind.JSON,
                sensitive=True,
                description="Default values for {{placeholders}} in the command.",
                placeholder='{"token": "abc123"}',
                group="placeholders",
                order=4,
            ),
            FieldDefinition(
                id="timeout",
                label="Timeout (ms)",
                kind=FieldKind.NUMBER,
                default=30000,
                min=1000,
                max=300000,
                group="advanced",
                order=5,
            ),
            FieldDefinition(
                id="followRedirects",
                label="Follow Redirects",
                kind=FieldKind.CHECKBOX,
                default=True,
                group="advanced",
                order=6,
            ),
            FieldDefinition(
                id="maxRedirects",
                label="Max Redirects",
                kind=FieldKind.NUMBER,
                default=5,
                min=0,
                max=20,
                group="advanced",
                order=7,
                visible_when=VisibilityRule(field="followRedirects", value=True),
            ),
            FieldDefinition(
                id="validateSsl",
                label="Validate SSL",
                kind=FieldKind.CHECKBOX,
                default=True,
                description="Applied engine-wide through EngineConfig.verify_ssl.",
                group="advanced",
                order=8,
            ),
            FieldDefinition(
                id="retryOnFailure",
                label="Retry on Failure",
                kind=FieldKind.CHECKBOX,
                default=True,
                group="retry",
                order=9,
            ),
            FieldDefinition(
                id="maxRetries",
                label="Max Retries",
                kind=FieldKind.NUMBER,
                default=3,
                min=0,
                max=10,
                group="retry",
                order=10,
                visible_when=retry,
            ),
            FieldDefinition(
                id="retryDelay",
                label="Retry Delay (ms)",
                kind=FieldKind.NUMBER,
                default=1000,
                min=100,
                max=30000,
                group="retry",
                order=11,
                visible_when=retry,
            ),
            FieldDefinition(
                id="userAgent",
                label="User Agent",
                placeholder="MyApp/1.0",
                group="advanced",
                order=12,
            ),
        ]

    def parsed_command(self, record: CredentialRecord) -> ParsedCurlCommand:
        """Parse the record's template.

        Raises:
            ValidationError_: If no command is configured.
            ParseError: If the command cannot be parsed.
        """
        command = record.get("curlCommand")
        if not command:
            raise ValidationError_("No cURL command configured")
        return parse_curl(str(command))

    def placeholders(self, record: CredentialRecord) -> list[str]:
        """Placeholder names used by the template."""
        return find_placeholders(str(record.get("curlCommand", "")))

    def masked_command(self, record: CredentialRecord) -> str:
        return mask_template(str(record.get("curlCommand", "")))

    async def authenticate(self, record: CredentialRecord, step: int = 1) -> AuthFlowStep:
        try:
            parsed = self.parsed_command(record)
        except HandshakeError as exc:
            return AuthFlowStep.failed(
                "Invalid cURL Command",
                str(exc),
                ErrorCode.PARSE_ERROR,
                description="Failed to parse the cURL command.",
            )

        values = field_json(record, "placeholderValues")
        missing = [
            name
            for name in self.placeholders(record)
            if name not in values and not name.startswith("$")
        ]
        logger.debug("cURL template configured: %s", self.masked_command(record))
        return AuthFlowStep(
            kind=StepKind.COMPLETE,
            title="Configuration Complete",
            description=f"cURL command configured for {parsed.method} {parsed.url}",
            data={
                "method": parsed.method,
                "url": parsed.url,
                "header_count": len(parsed.headers),
                "has_body": parsed.body is not None,
                "placeholders": self.placeholders(record),
                "unfilled_placeholders": missing,
            },
        )

    def default_headers(self, record: CredentialRecord) -> dict[str, str]:
        headers = {str(k): str(v) for k, v in field_json(record, "defaultHeaders").items()}
        if record.get("userAgent"):
            headers["User-Agent"] = str(record.get("userAgent"))
        return headers

    def base_url(self, record: CredentialRecord) -> Optional[str]:
        # The override is applied to the template URL in execute_request.
        return None

    def retry_policy(self, record: CredentialRecord) -> Optional[RetryPolicy]:
        if not field_bool(record, "retryOnFailure", True):
            return RetryPolicy.disabled()
        return RetryPolicy(
            max_retries=field_int(record, "maxRetries", 3),
            retry_delay_ms=field_int(record, "retryDelay", 1000),
        )

    def inject_authentication(self, context: ExecutionContext) -> AuthInjection:
        """The template's own headers, plus ``-u`` credentials as Basic auth."""
        parsed = self.parsed_command(context.credentials)
        headers = dict(parsed.headers)
        if parsed.basic_auth is not None:
            user, password = parsed.basic_auth
            encoded = base64.b64encode(f"{user}:{password}".encode()).decode("ascii")
            headers["Authorization"] = f"Basic {encoded}"
        return AuthInjection(headers=headers)

    def build_context(self, context: ExecutionContext) -> ExecutionContext:
        """Fold the template into *context*, returning a new context."""
        record = context.credentials
        parsed = self.parsed_command(record)

        url = context.url or parsed.url
        # GET is the context default, so only another verb overrides the template.
        method = context.method if context.method.upper() != "GET" else parsed.method
        base = record.get("baseUrl")
        if base:
            url = rebase_url(url, str(base))

        variables: dict[str, Any] = {
            str(k): "" if v is None else str(v)
            for k, v in field_json(record, "placeholderValues").items()
        }
        variables.update(context.variables)

        timeout_ms = context.timeout_ms
        if timeout_ms is None:
            if parsed.max_time_s is not None:
                timeout_ms = int(parsed.max_time_s * 1000)
            else:
                timeout_ms = field_int(record, "timeout", 30000)

        follow = context.follow_redirects
        if follow is None:
            follow = parsed.follow_redirects or field_bool(record, "followRedirects", True)

        return context.model_copy(
            update={
                "url": url,
                "method": method,
                "body": context.body if context.body is not None else parsed.body,
                "variables": variables,
                "timeout_ms": timeout_ms,
                "follow_redirects": follow,
                "max_redirects": (
                    context.max_redirects
                    if context.max_redirects is not None
                    else field_int(record, "maxRedirects", 5)
                ),
            }
        )

    async def execute_request(self, context: ExecutionContext) -> ExecutionResult:
        record = context.credentials
        try:
            prepared = self.build_context(context)
            injection = self.inject_authentication(prepared)
            defaults = self.default_headers(record)
            policy = self.retry_policy(record)
        except ParseError as exc:
            return ExecutionResult.failure(f"Failed to parse cURL command: {exc}", ErrorCode.PARSE_ERROR)
        except HandshakeError as exc:
            return ExecutionResult.failure(str(exc), exc.error_code or ErrorCode.VALIDATION_ERROR)
        return await self.pipeline.execute(
            prepared,
            injection,
            default_headers=defaults,
            retry_policy=policy,
        )

    async def health_check(self, record: CredentialRecord) -> HealthCheckResult:
        """Check that the template parses. No request is sent."""
        if not record.get("curlCommand"):
            return HealthCheckResult(
                healthy=False,
                message="No cURL command configured",
                token_status=TokenStatus.MISSING,
            )
        try:
            parsed = self.parsed_command(record)
        except HandshakeError as exc:
            return HealthCheckResult(
                healthy=False,
                message=f"Invalid cURL command: {exc}",
                token_status=TokenStatus.INVALID,
            )
        return HealthCheckResult(
            healthy=True,
            message=f"Command configured for {parsed.method} {parsed.url}",
            token_status=TokenStatus.VALID,
            details={
                "method": parsed.method,
                "url": parsed.url,
                "header_count": len(parsed.headers),
                "has_body": parsed.body is not None,
            },
        )
