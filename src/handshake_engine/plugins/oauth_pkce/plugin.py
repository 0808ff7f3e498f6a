"""OAuth 2.0 PKCE module -- authorization code flow for public clients.

This module provides :class:`OAuthPkceModule`, which implements the
``oauth-pkce`` protocol type (:rfc:`7636`). Step 1 generates a
``code_verifier`` / ``code_challenge`` pair and sends the user to the
authorization endpoint with the S256 challenge. The verifier is kept on the
record until the callback's code is exchanged, then discarded.

No client secret is involved, so the flow is safe for browser and CLI
clients.
"""

from __future__ import annotations

from handshake_engine.auth.oauth import generate_pkce_pair
from handshake_engine.auth.redirect import STATE_KEY, RedirectFlowModule, url_field
from handshake_engine.exceptions import AuthError
from handshake_engine.models import (
    CredentialRecord,
    FieldDefinition,
    FieldKind,
    ProtocolCapabilities,
    ProtocolMetadata,
)

VERIFIER_KEY = "_pkceVerifier"


class OAuthPkceModule(RedirectFlowModule):
    """Authenticate via the authorization code grant with PKCE (S256)."""

    flow_state_keys = (STATE_KEY, VERIFIER_KEY)

    def metadata(self) -> ProtocolMetadata:
        return ProtocolMetadata(
            type="oauth-pkce",
            display_name="OAuth 2.0 PKCE",
            description=(
                "Authorization code flow with Proof Key for Code Exchange. "
                "Recommended for public clients (SPAs, mobile, CLI)."
            ),
            version="1.0.0",
            documentation_url="https://datatracker.ietf.org/doc/html/rfc7636",
            capabilities=ProtocolCapabilities(
                supports_redirect_flow=True,
                supports_token_refresh=True,
                supports_token_revocation=True,
                supports_scopes=True,
                supports_pkce=True,
            ),
            use_cases=["Single-page apps", "Mobile apps", "Command-line tools"],
            example_platforms=["Google", "Microsoft", "Auth0", "Okta", "Slack"],
        )

    def required_fields(self) -> list[FieldDefinition]:
        return [
            *super().required_fields(),
            url_field("tokenUrl", "Token URL", required=True, order=3, group="endpoints"),
        ]

    def optional_fields(self) -> list[FieldDefinition]:
        return [
            *super().optional_fields(),
            url_field("revocationUrl", "Revocation URL", order=13, group="endpoints"),
            FieldDefinition(
                id="audience",
                label="Audience",
                description="API audience (required by some providers, e.g. Auth0)",
                order=14,
                group="authorization",
            ),
            FieldDefinition(
                id="additionalTokenParams",
                label="Additional Token Parameters",
                kind=FieldKind.JSON,
                order=21,
                group="advanced",
            ),
        ]

    def _authorization_params(self, record: CredentialRecord, state: str) -> dict[str, str]:
        verifier, challenge = generate_pkce_pair()
        record.fields[VERIFIER_KEY] = verifier
        params = super()._authorization_params(record, state)
        params["code_challenge"] = challenge
        params["code_challenge_method"] = "S256"
        if record.get("audience"):
            params["audience"] = str(record.get("audience"))
        return params

    def _token_request_extra(self, record: CredentialRecord) -> dict[str, str]:
        verifier = record.get(VERIFIER_KEY)
        if not verifier:
            raise AuthError("No code verifier available. Start the authentication flow first.")
        return {"code_verifier": str(verifier)}
