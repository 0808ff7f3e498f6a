"""OAuth 2.0 client credentials module.

This module provides :class:`ClientCredentialsModule`, which implements the
``client-credentials`` protocol type. It performs the non-interactive
client credentials grant (:rfc:`6749` section 4.4), exchanging a
``clientId`` and ``clientSecret`` for an access token at ``tokenUrl``.

The grant issues no refresh token. "Refreshing" simply repeats the grant,
which the token lifecycle manager does once the stored expiry has passed.

Health checks use the :rfc:`7662` introspection endpoint when one is
configured; otherwise the token is judged from its stored expiry.
"""

from __future__ import annotations

import logging
from typing import Any, Optional
from urllib.parse import urlencode

from handshake_engine.auth.base import ProtocolModule, field_json, field_list
from handshake_engine.auth.oauth import (
    basic_auth_header,
    request_token,
    revoke_token,
    token_result,
)
from handshake_engine.auth.redirect import bearer_header, url_field
from handshake_engine.exceptions import HandshakeError
from handshake_engine.models import (
    AuthFlowStep,
    AuthInjection,
    CredentialRecord,
    ExecutionContext,
    FieldDefinition,
    FieldKind,
    FieldOption,
    HealthCheckResult,
    ProtocolCapabilities,
    ProtocolMetadata,
    RevocationResult,
    StepKind,
    TokenRefreshResult,
    TokenStatus,
)

logger = logging.getLogger(__name__)


class ClientCredentialsModule(ProtocolModule):
    """Authenticate via the OAuth 2.0 client credentials grant."""

    def metadata(self) -> ProtocolMetadata:
        return ProtocolMetadata(
            type="client-credentials",
            display_name="OAuth 2.0 Client Credentials",
            description="Machine-to-machine access token from a client ID and secret.",
            version="1.0.0",
            documentation_url="https://datatracker.ietf.org/doc/html/rfc6749#section-4.4",
            capabilities=ProtocolCapabilities(
                supports_token_refresh=True,
                supports_token_revocation=True,
                supports_scopes=True,
                requires_server_side=True,
            ),
            use_cases=["Service-to-service calls", "Scheduled jobs", "Backend integrations"],
            example_platforms=["Auth0", "Okta", "Azure AD", "Spotify", "PayPal"],
        )

    def required_fields(self) -> list[FieldDefinition]:
        return [
            url_field("tokenUrl", "Token URL", required=True, order=1, group="endpoints"),
            FieldDefinition(id="clientId", label="Client ID", required=True, order=2, group="credentials"),
            FieldDefinition(
                id="clientSecret",
                label="Client Secret",
                kind=FieldKind.SECRET,
                required=True,
                order=3,
                group="credentials",
            ),
        ]

    def optional_fields(self) -> list[FieldDefinition]:
        return [
            FieldDefinition(id="scopes", label="Scopes", kind=FieldKind.SCOPES, order=10),
            FieldDefinition(
                id="clientAuthMethod",
                label="Client Authentication",
                kind=FieldKind.SELECT,
                default="client_secret_basic",
                options=[
                    FieldOption(value="client_secret_basic", label="Basic Auth (Header)"),
                    FieldOption(value="client_secret_post", label="POST Body"),
                ],
                description="How to authenticate with the token endpoint.",
                order=11,
            ),
            FieldDefinition(
                id="audience",
                label="Audience",
                description="Target API audience (required by some providers like Auth0).",
                order=12,
            ),
            FieldDefinition(id="resource", label="Resource", description="RFC 8707 resource indicator", order=13),
            url_field("introspectionUrl", "Introspection URL", order=14),
            url_field("revocationUrl", "Revocation URL", order=15),
            url_field("baseUrl", "API Base URL", order=16),
            FieldDefinition(
                id="additionalTokenParams",
                label="Additional Token Parameters",
                kind=FieldKind.JSON,
                order=20,
            ),
        ]

    def _uses_post_auth(self, record: CredentialRecord) -> bool:
        return record.get("clientAuthMethod", "client_secret_basic") == "client_secret_post"

    def _client_auth(self, record: CredentialRecord) -> tuple[dict[str, str], Optional[str]]:
        """Client authentication as (form fields, Authorization header)."""
        client_id = str(record.get("clientId"))
        client_secret = str(record.get("clientSecret"))
        if self._uses_post_auth(record):
            return {"client_id": client_id, "client_secret": client_secret}, None
        return {}, basic_auth_header(client_id, client_secret)

    async def _fetch(self, record: CredentialRecord) -> TokenRefreshResult:
        form, header = self._client_auth(record)
        data: dict[str, str] = {"grant_type": "client_credentials", **form}
        scopes = field_list(record, "scopes")
        if scopes:
            data["scope"] = " ".join(scopes)
        for key in ("audience", "resource"):
            if record.get(key):
                data[key] = str(record.get(key))
        data.update({k: str(v) for k, v in field_json(record, "additionalTokenParams").items()})

        token_data = await request_token(
            self.pipeline.client,
            str(record.get("tokenUrl")),
            data,
            auth_header=header,
            timeout=self.pipeline.timeout_seconds(),
        )
        return token_result(token_data, self.now())

    async def authenticate(self, record: CredentialRecord, step: int = 1) -> AuthFlowStep:
        result = await self._fetch(record)
        record.apply_tokens(
            result.access_token,
            expires_at=result.expires_at,
            token_type=result.token_type,
            scopes=result.scopes,
        )
        logger.debug("Client credentials token issued for %s", record.id)
        return AuthFlowStep(
            kind=StepKind.COMPLETE,
            title="Authentication Successful",
            description="Access token obtained from the token endpoint.",
            data={
                "token_type": record.token_type,
                "scopes": list(record.scopes),
                "expires_at": record.expires_at.isoformat() if record.expires_at else None,
            },
        )

    def inject_authentication(self, context: ExecutionContext) -> AuthInjection:
        return AuthInjection(headers={"Authorization": bearer_header(context.credentials)})

    async def refresh_tokens(self, record: CredentialRecord) -> TokenRefreshResult:
        try:
            return await self._fetch(record)
        except HandshakeError as exc:
            return TokenRefreshResult(success=False, error=str(exc))

    async def revoke_tokens(self, record: CredentialRecord) -> RevocationResult:
        url = record.get("revocationUrl")
        token = record.access_token
        record.clear_tokens()
        if not url or not token:
            return RevocationResult(success=True)
        form, header = self._client_auth(record)
        try:
            await revoke_token(
                self.pipeline.client, str(url), token, "access_token",
                data=form, auth_header=header,
                timeout=self.pipeline.timeout_seconds(),
            )
        except HandshakeError as exc:
            return RevocationResult(success=False, error=str(exc))
        return RevocationResult(success=True, revoked_remotely=True)

    async def health_check(self, record: CredentialRecord) -> HealthCheckResult:
        status = self.local_token_status(record)
        if status != TokenStatus.VALID:
            return HealthCheckResult(
                healthy=False,
                message="No access token" if status == TokenStatus.MISSING else "Access token expired",
                token_status=status,
                token_expires_in=0 if status == TokenStatus.EXPIRED else -1,
                can_refresh=True,
            )

        url = record.get("introspectionUrl")
        if not url:
            return HealthCheckResult(
                healthy=True,
                message="Token present",
                token_status=status,
                token_expires_in=self.seconds_until_expiry(record),
                can_refresh=True,
                details={"validated": False},
            )

        form, header = self._client_auth(record)
        headers = {"Content-Type": "application/x-www-form-urlencoded"}
        if header:
            headers["Authorization"] = header
        result, latency = await self.probe(
            record,
            str(url),
            method="POST",
            headers=headers,
            body=urlencode({"token": record.access_token or "", **form}),
        )
        body: Any = result.body if isinstance(result.body, dict) else {}
        if not result.success:
            return HealthCheckResult(
                healthy=False,
                message=result.error or "Introspection failed",
                latency_ms=latency,
                token_status=TokenStatus.INVALID if result.status_code in (401, 403) else status,
                can_refresh=True,
            )
        active = body.get("active") is True
        expires_in = self.seconds_until_expiry(record)
        if isinstance(body.get("exp"), (int, float)):
            expires_in = max(0, int(body["exp"] - self.now().timestamp()))
        return HealthCheckResult(
            healthy=active,
            message="Token is active (verified via introspection)" if active else "Token is not active",
            latency_ms=latency,
            token_status=TokenStatus.VALID if active else TokenStatus.INVALID,
            token_expires_in=expires_in,
            can_refresh=True,
            details={"scope": body.get("scope"), "client_id": body.get("client_id")},
        )
