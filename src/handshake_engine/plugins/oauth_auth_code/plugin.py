"""OAuth 2.0 authorization code module for confidential clients.

This module provides :class:`OAuthAuthCodeModule`, which implements the
``oauth-auth-code`` protocol type (:rfc:`6749` section 4.1). The client
authenticates to the token endpoint with its secret, either in an HTTP
Basic header (``client_secret_basic``, the default) or in the form body
(``client_secret_post``).

When ``openid`` is among the requested scopes a ``nonce`` is sent with the
authorization request and the returned ``id_token`` is kept on the record.
"""

from __future__ import annotations

import secrets
from typing import Optional

from handshake_engine.auth.base import field_list
from handshake_engine.auth.oauth import basic_auth_header
from handshake_engine.auth.redirect import STATE_KEY, RedirectFlowModule, url_field
from handshake_engine.models import (
    CredentialRecord,
    FieldDefinition,
    FieldKind,
    FieldOption,
    ProtocolCapabilities,
    ProtocolMetadata,
)

NONCE_KEY = "_oidcNonce"


class OAuthAuthCodeModule(RedirectFlowModule):
    """Authenticate via the authorization code grant with a client secret."""

    flow_state_keys = (STATE_KEY, NONCE_KEY)

    def metadata(self) -> ProtocolMetadata:
        return ProtocolMetadata(
            type="oauth-auth-code",
            display_name="OAuth 2.0 Authorization Code",
            description=(
                "Traditional authorization code flow for confidential clients "
                "holding a client secret. Requires a server-side component."
            ),
            version="1.0.0",
            documentation_url="https://datatracker.ietf.org/doc/html/rfc6749#section-4.1",
            capabilities=ProtocolCapabilities(
                supports_redirect_flow=True,
                supports_token_refresh=True,
                supports_token_revocation=True,
                supports_scopes=True,
                requires_server_side=True,
            ),
            use_cases=["Server-rendered web apps", "Backend integrations acting for a user"],
            example_platforms=["Google", "Salesforce", "Dropbox", "LinkedIn"],
        )

    def required_fields(self) -> list[FieldDefinition]:
        return [
            *super().required_fields(),
            FieldDefinition(
                id="clientSecret",
                label="Client Secret",
                kind=FieldKind.SECRET,
                required=True,
                order=1,
                group="credentials",
            ),
            url_field("tokenUrl", "Token URL", required=True, order=3, group="endpoints"),
        ]

    def optional_fields(self) -> list[FieldDefinition]:
        return [
            *super().optional_fields(),
            FieldDefinition(
                id="clientAuthMethod",
                label="Client Authentication",
                kind=FieldKind.SELECT,
                default="client_secret_basic",
                options=[
                    FieldOption(value="client_secret_basic", label="Basic Auth (Header)"),
                    FieldOption(value="client_secret_post", label="POST Body"),
                ],
                order=15,
                group="authentication",
            ),
            url_field("revocationUrl", "Revocation URL", order=13, group="endpoints"),
            FieldDefinition(id="audience", label="Audience", order=14, group="authorization"),
            FieldDefinition(
                id="additionalTokenParams",
                label="Additional Token Parameters",
                kind=FieldKind.JSON,
                order=21,
                group="advanced",
            ),
        ]

    def _uses_post_auth(self, record: CredentialRecord) -> bool:
        return record.get("clientAuthMethod", "client_secret_basic") == "client_secret_post"

    def _authorization_params(self, record: CredentialRecord, state: str) -> dict[str, str]:
        params = super()._authorization_params(record, state)
        if "openid" in field_list(record, "scopes"):
            nonce = secrets.token_urlsafe(16)
            record.fields[NONCE_KEY] = nonce
            params["nonce"] = nonce
        if record.get("audience"):
            params["audience"] = str(record.get("audience"))
        return params

    def _client_auth_header(self, record: CredentialRecord) -> Optional[str]:
        if self._uses_post_auth(record):
            return None
        return basic_auth_header(str(record.get("clientId")), str(record.get("clientSecret")))

    def _token_request_extra(self, record: CredentialRecord) -> dict[str, str]:
        if self._uses_post_auth(record):
            return {"client_secret": str(record.get("clientSecret"))}
        return {}

    def _refresh_request_extra(self, record: CredentialRecord) -> dict[str, str]:
        return self._token_request_extra(record)

    def _revocation_extra(self, record: CredentialRecord) -> dict[str, str]:
        return {**super()._revocation_extra(record), **self._token_request_extra(record)}
