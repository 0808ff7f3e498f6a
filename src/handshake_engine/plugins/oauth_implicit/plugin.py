"""Legacy OAuth 2.0 implicit grant.

This module provides :class:`OAuthImplicitModule`, which implements the
``oauth-implicit`` protocol type. The provider returns the access token in
the redirect URI's fragment::

    https://app.example.com/callback#access_token=...&token_type=Bearer&expires_in=3600&state=...

The implicit grant is removed in OAuth 2.1 and the module is flagged
deprecated. Tokens carry an expiry but cannot be refreshed; once expired,
the caller must run the flow again.
"""

from __future__ import annotations

import secrets
from urllib.parse import parse_qsl

from handshake_engine.auth.base import field_list
from handshake_engine.auth.oauth import expiry_from
from handshake_engine.auth.redirect import STATE_KEY, TOTAL_STEPS, RedirectFlowModule
from handshake_engine.models import (
    AuthFlowStep,
    CredentialRecord,
    FieldDefinition,
    FieldKind,
    FieldOption,
    ProtocolCapabilities,
    ProtocolMetadata,
)

NONCE_KEY = "_oidcNonce"


def parse_fragment(fragment: str) -> dict[str, str]:
    """Parse ``#access_token=abc&expires_in=3600`` into a dict."""
    return dict(parse_qsl(fragment.lstrip("#"), keep_blank_values=True))


class OAuthImplicitModule(RedirectFlowModule):
    """Authenticate via the implicit grant (deprecated)."""

    flow_state_keys = (STATE_KEY, NONCE_KEY)

    def metadata(self) -> ProtocolMetadata:
        return ProtocolMetadata(
            type="oauth-implicit",
            display_name="OAuth 2.0 Implicit (Legacy)",
            description=(
                "Deprecated implicit grant returning the token in the URL fragment. "
                "Use OAuth 2.0 PKCE instead."
            ),
            version="1.0.0",
            deprecated=True,
            documentation_url="https://oauth.net/2/grant-types/implicit/",
            capabilities=ProtocolCapabilities(
                supports_redirect_flow=True,
                supports_scopes=True,
            ),
            use_cases=["Maintaining legacy single-page apps"],
            example_platforms=["Legacy identity providers"],
        )

    def optional_fields(self) -> list[FieldDefinition]:
        return [
            *super().optional_fields(),
            FieldDefinition(
                id="responseType",
                label="Response Type",
                kind=FieldKind.SELECT,
                default="token",
                options=[
                    FieldOption(value="token", label="token"),
                    FieldOption(value="id_token token", label="id_token token"),
                ],
                order=15,
                group="authorization",
            ),
        ]

    def _authorization_params(self, record: CredentialRecord, state: str) -> dict[str, str]:
        params = super()._authorization_params(record, state)
        response_type = str(record.get("responseType", "token"))
        params["response_type"] = response_type
        if "id_token" in response_type or "openid" in field_list(record, "scopes"):
            nonce = secrets.token_urlsafe(16)
            record.fields[NONCE_KEY] = nonce
            params["nonce"] = nonce
        return params

    async def handle_callback(
        self, record: CredentialRecord, params: dict[str, str]
    ) -> AuthFlowStep:
        if "fragment" in params:
            params = {**parse_fragment(params["fragment"]), **params}
        return await super().handle_callback(record, params)

    async def _complete_from_callback(
        self, record: CredentialRecord, params: dict[str, str]
    ) -> AuthFlowStep:
        access_token = params.get("access_token")
        if not access_token:
            return AuthFlowStep.failed(
                "Missing Access Token",
                "Missing access_token in fragment",
                step=2,
                total_steps=TOTAL_STEPS,
            )
        scope = params.get("scope")
        record.apply_tokens(
            access_token,
            expires_at=expiry_from(params, self.now()),
            token_type=params.get("token_type") or "Bearer",
            scopes=scope.split() if scope else None,
        )
        if params.get("id_token"):
            record.fields["idToken"] = params["id_token"]
        return self._completed(record)
