"""Shared three-step browser redirect flow for the OAuth-family modules.

:class:`RedirectFlowModule` implements the flow that the PKCE,
authorization-code and implicit modules have in common::

    step 1 (redirect)  build the authorization URL, remember ``state``
    step 2 (prompt)    wait for the provider to call back
    step 3 (complete)  tokens stored on the record

Callback data arrives through
:meth:`~RedirectFlowModule.handle_callback` (or merged into the record's
fields before ``authenticate(record, 2)``). ``state`` is compared with the
value issued in step 1 before anything else is trusted.

Per-flow secrets live in the record under the keys listed in
:attr:`RedirectFlowModule.flow_state_keys`, never on the module.
Subclasses choose the grant by overriding :meth:`_authorization_params`
and :meth:`_complete_from_callback`.
"""

from __future__ import annotations

import logging
from typing import Any, Optional

from handshake_engine.auth.base import ProtocolModule, field_json, field_list
from handshake_engine.auth.oauth import (
    build_authorization_url,
    generate_state,
    request_token,
    revoke_token,
    token_result,
)
from handshake_engine.exceptions import AuthError, HandshakeError
from handshake_engine.models import (
    AuthFlowStep,
    AuthInjection,
    CredentialRecord,
    ErrorCode,
    ExecutionContext,
    FieldDefinition,
    FieldKind,
    HealthCheckResult,
    RevocationResult,
    StepKind,
    TokenRefreshResult,
    TokenStatus,
)

logger = logging.getLogger(__name__)

STATE_KEY = "_oauthState"
TOTAL_STEPS = 3
CALLBACK_KEYS = (
    "code",
    "state",
    "error",
    "error_description",
    "access_token",
    "token_type",
    "expires_in",
    "scope",
    "id_token",
    "fragment",
)
_URL_PATTERN = r"^https?://"


def url_field(field_id: str, label: str, required: bool = False, **kwargs: Any) -> FieldDefinition:
    return FieldDefinition(
        id=field_id,
        label=label,
        kind=FieldKind.URL,
        required=required,
        pattern=_URL_PATTERN,
        pattern_error=f"{label} must start with http:// or https://",
        **kwargs,
    )


def bearer_header(record: CredentialRecord) -> str:
    """``Authorization`` value for the record's access token."""
    if not record.access_token:
        raise AuthError("Not authenticated: complete the authentication flow first")
    token_type = record.token_type or "Bearer"
    if token_type.lower() == "bearer":
        token_type = "Bearer"
    return f"{token_type} {record.access_token}"


class RedirectFlowModule(ProtocolModule):
    """Base for modules that authenticate through a browser redirect."""

    flow_state_keys: tuple[str, ...] = (STATE_KEY,)
    response_type = "code"

    # ------------------------------------------------------------------ #
    # Fields
    # ------------------------------------------------------------------ #

    def required_fields(self) -> list[FieldDefinition]:
        return [
            FieldDefinition(id="clientId", label="Client ID", required=True, order=1, group="credentials"),
            url_field("authorizationUrl", "Authorization URL", required=True, order=2, group="endpoints"),
            url_field("redirectUri", "Redirect URI", required=True, order=4, group="endpoints"),
        ]

    def optional_fields(self) -> list[FieldDefinition]:
        return [
            FieldDefinition(
                id="scopes",
                label="Scopes",
                kind=FieldKind.SCOPES,
                description="Space or comma separated",
                order=10,
                group="authorization",
            ),
            url_field("userInfoUrl", "User Info URL", order=11, group="endpoints",
                      description="Used by health checks"),
            url_field("baseUrl", "API Base URL", order=12, group="advanced",
                      description="Base for relative request URLs"),
            FieldDefinition(
                id="additionalAuthParams",
                label="Additional Authorization Parameters",
                kind=FieldKind.JSON,
                placeholder='{"prompt": "consent"}',
                order=20,
                group="advanced",
            ),
        ]

    # ------------------------------------------------------------------ #
    # Flow
    # ------------------------------------------------------------------ #

    async def authenticate(self, record: CredentialRecord, step: int = 1) -> AuthFlowStep:
        if step <= 1:
            return self._start(record)
        if step == 2:
            params = {
                key: str(record.fields[key])
                for key in CALLBACK_KEYS
                if record.fields.get(key)
            }
            if params:
                return await self.handle_callback(record, params)
            return AuthFlowStep(
                step=2,
                total_steps=TOTAL_STEPS,
                kind=StepKind.PROMPT,
                title="Awaiting Authorization",
                description="Complete the authorization in the browser, then submit the callback parameters.",
                data={"state": record.get(STATE_KEY)},
            )
        if not record.access_token:
            return AuthFlowStep.failed(
                "Authentication Failed",
                "Missing access token",
                description="No access token received.",
                step=TOTAL_STEPS,
                total_steps=TOTAL_STEPS,
            )
        return self._completed(record)

    def _start(self, record: CredentialRecord) -> AuthFlowStep:
        self._clear_flow_state(record)
        state = generate_state()
        try:
            params = self._authorization_params(record, state)
            params.update({k: str(v) for k, v in field_json(record, "additionalAuthParams").items()})
        except HandshakeError as exc:
            return AuthFlowStep.failed(
                "Configuration Error",
                str(exc),
                exc.error_code or ErrorCode.VALIDATION_ERROR,
                total_steps=TOTAL_STEPS,
            )
        record.fields[STATE_KEY] = state
        url = build_authorization_url(str(record.get("authorizationUrl")), params)
        return AuthFlowStep(
            step=1,
            total_steps=TOTAL_STEPS,
            kind=StepKind.REDIRECT,
            title="Authorize Access",
            description="Open the authorization URL and approve access.",
            redirect_url=url,
            data={"state": state, "authorization_url": url},
        )

    def _authorization_params(self, record: CredentialRecord, state: str) -> dict[str, str]:
        return {
            "client_id": str(record.get("clientId")),
            "redirect_uri": str(record.get("redirectUri")),
            "response_type": self.response_type,
            "scope": " ".join(field_list(record, "scopes")),
            "state": state,
        }

    async def handle_callback(
        self, record: CredentialRecord, params: dict[str, str]
    ) -> AuthFlowStep:
        if params.get("error"):
            description = params.get("error_description") or "No description"
            return AuthFlowStep.failed(
                "Authorization Denied",
                f"{params['error']}: {description}",
                description=params.get("error_description") or "The user denied authorization.",
                step=2,
                total_steps=TOTAL_STEPS,
            )

        expected = record.get(STATE_KEY)
        if not expected:
            logger.warning("Callback for %s arrived with no stored state; rejecting", record.id)
            return AuthFlowStep.failed(
                "Invalid State",
                "No authorization request is pending for this callback",
                description="Start the authorization flow again to issue a new state.",
                step=2,
                total_steps=TOTAL_STEPS,
            )
        if params.get("state") != expected:
            return AuthFlowStep.failed(
                "Invalid State",
                "State validation failed",
                description="State parameter mismatch. The callback may have been forged.",
                step=2,
                total_steps=TOTAL_STEPS,
            )

        step = await self._complete_from_callback(record, params)
        if step.kind == StepKind.COMPLETE:
            self._clear_flow_state(record)
        return step

    async def _complete_from_callback(
        self, record: CredentialRecord, params: dict[str, str]
    ) -> AuthFlowStep:
        code = params.get("code")
        if not code:
            return AuthFlowStep.failed(
                "Missing Authorization Code",
                "Missing code parameter",
                step=2,
                total_steps=TOTAL_STEPS,
            )
        data = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": str(record.get("redirectUri")),
            "client_id": str(record.get("clientId")),
            **self._token_request_extra(record),
            **{k: str(v) for k, v in field_json(record, "additionalTokenParams").items()},
        }
        token_data = await request_token(
            self.pipeline.client,
            str(record.get("tokenUrl")),
            data,
            auth_header=self._client_auth_header(record),
            timeout=self.pipeline.timeout_seconds(),
        )
        self._store(record, token_result(token_data, self.now()))
        if token_data.get("id_token"):
            record.fields["idToken"] = token_data["id_token"]
        return self._completed(record)

    def _token_request_extra(self, record: CredentialRecord) -> dict[str, str]:
        """Extra form fields for token requests (verifier, client secret)."""
        return {}

    def _client_auth_header(self, record: CredentialRecord) -> Optional[str]:
        return None

    def _store(self, record: CredentialRecord, result: TokenRefreshResult) -> None:
        record.apply_tokens(
            result.access_token,
            refresh_token=result.refresh_token,
            expires_at=result.expires_at,
            token_type=result.token_type,
            scopes=result.scopes,
        )

    def _completed(self, record: CredentialRecord) -> AuthFlowStep:
        return AuthFlowStep(
            step=TOTAL_STEPS,
            total_steps=TOTAL_STEPS,
            kind=StepKind.COMPLETE,
            title="Authentication Successful",
            description="You are now authenticated.",
            data={
                "has_access_token": record.access_token is not None,
                "has_refresh_token": record.refresh_token is not None,
                "scopes": list(record.scopes) or field_list(record, "scopes"),
                "expires_at": record.expires_at.isoformat() if record.expires_at else None,
            },
        )

    def _clear_flow_state(self, record: CredentialRecord) -> None:
        for key in (*self.flow_state_keys, *CALLBACK_KEYS):
            record.fields.pop(key, None)

    # ------------------------------------------------------------------ #
    # Requests and tokens
    # ------------------------------------------------------------------ #

    def inject_authentication(self, context: ExecutionContext) -> AuthInjection:
        return AuthInjection(headers={"Authorization": bearer_header(context.credentials)})

    async def refresh_tokens(self, record: CredentialRecord) -> TokenRefreshResult:
        if not self.supports_refresh:
            return TokenRefreshResult.noop()
        if not record.refresh_token:
            return TokenRefreshResult(
                success=False, error="No refresh token available", requires_reauth=True
            )
        data = {
            "grant_type": "refresh_token",
            "refresh_token": record.refresh_token,
            "client_id": str(record.get("clientId")),
            **self._refresh_request_extra(record),
        }
        try:
            token_data = await request_token(
                self.pipeline.client,
                str(record.get("tokenUrl")),
                data,
                auth_header=self._client_auth_header(record),
                timeout=self.pipeline.timeout_seconds(),
            )
        except AuthError as exc:
            return TokenRefreshResult(success=False, error=str(exc), requires_reauth=True)
        except HandshakeError as exc:
            return TokenRefreshResult(success=False, error=str(exc))
        return token_result(token_data, self.now())

    def _refresh_request_extra(self, record: CredentialRecord) -> dict[str, str]:
        return {}

    async def revoke_tokens(self, record: CredentialRecord) -> RevocationResult:
        url = record.get("revocationUrl")
        access_token, refresh_token = record.access_token, record.refresh_token
        record.clear_tokens()
        if not url or not access_token:
            return RevocationResult(success=True)

        try:
            if refresh_token:
                await revoke_token(
                    self.pipeline.client, str(url), refresh_token, "refresh_token",
                    data=self._revocation_extra(record),
                    auth_header=self._client_auth_header(record),
                )
            await revoke_token(
                self.pipeline.client, str(url), access_token, "access_token",
                data=self._revocation_extra(record),
                auth_header=self._client_auth_header(record),
            )
        except HandshakeError as exc:
            logger.warning("Remote revocation failed: %s", exc)
            return RevocationResult(success=False, error=str(exc))
        return RevocationResult(success=True, revoked_remotely=True)

    def _revocation_extra(self, record: CredentialRecord) -> dict[str, str]:
        return {"client_id": str(record.get("clientId"))}

    async def health_check(self, record: CredentialRecord) -> HealthCheckResult:
        status = self.local_token_status(record)
        can_refresh = self.supports_refresh and record.refresh_token is not None
        if status == TokenStatus.MISSING:
            return HealthCheckResult(
                healthy=False,
                message="Not authenticated",
                token_status=status,
            )
        if status == TokenStatus.EXPIRED:
            return HealthCheckResult(
                healthy=False,
                message="Access token expired" + ("" if can_refresh else "; re-authenticate"),
                token_status=status,
                token_expires_in=0,
                can_refresh=can_refresh,
            )

        user_info_url = record.get("userInfoUrl")
        if not user_info_url:
            return HealthCheckResult(
                healthy=True,
                message="Token present (no user info endpoint to validate against)",
                token_status=status,
                token_expires_in=self.seconds_until_expiry(record),
                can_refresh=can_refresh,
                details={"validated": False},
            )

        result, latency = await self.probe(record, str(user_info_url))
        if result.status_code in (401, 403):
            return HealthCheckResult(
                healthy=False,
                message="Access token rejected by the provider",
                latency_ms=latency,
                token_status=TokenStatus.INVALID,
                can_refresh=can_refresh,
            )
        details: dict[str, Any] = {"validated": result.success}
        if result.success and isinstance(result.body, dict):
            for key in ("sub", "email", "name", "login"):
                if key in result.body:
                    details[key] = result.body[key]
        return HealthCheckResult(
            healthy=result.success,
            message="Token valid" if result.success else (result.error or "Probe failed"),
            latency_ms=latency,
            token_status=status,
            token_expires_in=self.seconds_until_expiry(record),
            can_refresh=can_refresh,
            details=details,
        )
