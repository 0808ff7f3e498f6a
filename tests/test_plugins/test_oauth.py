"""Tests for the OAuth helpers and the redirect-flow modules (PKCE, auth code, implicit)."""

from __future__ import annotations

import base64
import hashlib
from datetime import timedelta
from urllib.parse import parse_qs, urlsplit

import httpx
import pytest
from conftest import T0, form_of, json_response, record_for

from handshake_engine.auth.oauth import (
    basic_auth_header,
    build_authorization_url,
    expiry_from,
    generate_pkce_pair,
    request_token,
    token_result,
)
from handshake_engine.auth.redirect import STATE_KEY
from handshake_engine.exceptions import AuthError, NetworkError, ParseError, ProviderError
from handshake_engine.models import (
    CredentialStatus,
    ErrorCode,
    ExecutionContext,
    StepKind,
    TokenStatus,
)
from handshake_engine.plugins.oauth_implicit.plugin import parse_fragment
from handshake_engine.plugins.oauth_pkce.plugin import VERIFIER_KEY

TOKEN_URL = "https://auth.example.com/oauth/token"


def _pkce_record(**extra):
    return record_for(
        "oauth-pkce",
        clientId="app-1",
        authorizationUrl="https://auth.example.com/authorize",
        tokenUrl=TOKEN_URL,
        redirectUri="http://localhost:8765/callback",
        scopes="read write",
        **extra,
    )


def _auth_code_record(**extra):
    return record_for(
        "oauth-auth-code",
        clientId="app-1",
        clientSecret="s3cret",
        authorizationUrl="https://auth.example.com/authorize",
        tokenUrl=TOKEN_URL,
        redirectUri="https://app.example.com/callback",
        **extra,
    )


def _query(url: str) -> dict[str, str]:
    return {k: v[0] for k, v in parse_qs(urlsplit(url).query).items()}


def _token_endpoint(request: httpx.Request) -> httpx.Response:
    return json_response(
        {
            "access_token": "at_1",
            "refresh_token": "rt_1",
            "expires_in": 3600,
            "token_type": "bearer",
            "scope": "read write",
        }
    )


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class TestHelpers:
    def test_pkce_pair_is_s256(self):
        verifier, challenge = generate_pkce_pair()
        assert 43 <= len(verifier) <= 128
        digest = hashlib.sha256(verifier.encode("ascii")).digest()
        assert challenge == base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")

    def test_authorization_url_merges_existing_query(self):
        url = build_authorization_url(
            "https://auth.example.com/authorize?tenant=t1", {"client_id": "c", "scope": ""}
        )
        assert _query(url) == {"tenant": "t1", "client_id": "c"}

    def test_basic_auth_header(self):
        assert basic_auth_header("user", "pass") == "Basic dXNlcjpwYXNz"

    def test_expiry_from(self):
        assert expiry_from({"expires_in": "60"}, T0) == T0 + timedelta(seconds=60)
        assert expiry_from({}, T0) is None
        assert expiry_from({"expires_in": "soon"}, T0) is None

    def test_token_result_defaults(self):
        result = token_result({"access_token": "a", "scope": "x y"}, T0)
        assert result.token_type == "Bearer"
        assert result.scopes == ["x", "y"]
        assert result.expires_at is None


class TestRequestToken:
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        ("response", "exc"),
        [
            (json_response({"error": "invalid_grant"}, 400), AuthError),
            (json_response({"message": "down"}, 503), ProviderError),
            (json_response(["not", "a", "dict"]), ParseError),
            (json_response({"error": "invalid_scope", "error_description": "bad scope"}), AuthError),
            (json_response({"token_type": "bearer"}), AuthError),
        ],
    )
    async def test_failures(self, response, exc):
        async with httpx.AsyncClient(transport=httpx.MockTransport(lambda r: response)) as client:
            with pytest.raises(exc):
                await request_token(client, TOKEN_URL, {"grant_type": "client_credentials"})

    @pytest.mark.asyncio
    async def test_network_error(self):
        def _down(request):
            raise httpx.ConnectError("refused", request=request)

        async with httpx.AsyncClient(transport=httpx.MockTransport(_down)) as client:
            with pytest.raises(NetworkError, match="Token request failed"):
                await request_token(client, TOKEN_URL, {"grant_type": "client_credentials"})

    @pytest.mark.asyncio
    async def test_sends_form_and_auth_header(self, recorder):
        rec = recorder(_token_endpoint)
        async with httpx.AsyncClient(transport=rec.transport) as client:
            body = await request_token(
                client, TOKEN_URL, {"grant_type": "refresh_token"}, auth_header="Basic abc"
            )
        assert body["access_token"] == "at_1"
        assert form_of(rec.last) == {"grant_type": "refresh_token"}
        assert rec.last.headers["Authorization"] == "Basic abc"


# ---------------------------------------------------------------------------
# PKCE
# ---------------------------------------------------------------------------


class TestPkceFlow:
    @pytest.mark.asyncio
    async def test_full_flow(self, recorder, make_engine):
        rec = recorder(_token_endpoint)
        async with make_engine(rec) as engine:
            record = _pkce_record()
            step = await engine.authenticate(record)
            assert step.kind == StepKind.REDIRECT
            assert step.step == 1 and step.total_steps == 3
            query = _query(step.redirect_url)
            assert query["client_id"] == "app-1"
            assert query["response_type"] == "code"
            assert query["code_challenge_method"] == "S256"
            assert query["scope"] == "read write"
            assert query["state"] == step.data["state"] == record.fields[STATE_KEY]
            verifier = record.fields[VERIFIER_KEY]
            assert record.status == CredentialStatus.CONFIGURING
            assert rec.calls == 0

            done = await engine.handle_callback(
                record, {"code": "c_1", "state": query["state"]}
            )

        assert done.kind == StepKind.COMPLETE
        assert done.data["has_refresh_token"] is True
        assert record.status == CredentialStatus.AUTHENTICATED
        assert record.access_token == "at_1"
        assert record.token_type == "bearer"
        assert record.expires_at == T0 + timedelta(hours=1)
        assert STATE_KEY not in record.fields
        assert VERIFIER_KEY not in record.fields
        assert form_of(rec.last) == {
            "grant_type": "authorization_code",
            "code": "c_1",
            "redirect_uri": "http://localhost:8765/callback",
            "client_id": "app-1",
            "code_verifier": verifier,
        }

    @pytest.mark.asyncio
    async def test_callback_data_through_step_two(self, recorder, make_engine):
        rec = recorder(_token_endpoint)
        async with make_engine(rec) as engine:
            record = _pkce_record()
            first = await engine.authenticate(record)
            waiting = await engine.authenticate(record, 2)
            assert waiting.kind == StepKind.PROMPT
            done = await engine.authenticate(
                record, 2, {"code": "c_1", "state": first.data["state"]}
            )
        assert done.kind == StepKind.COMPLETE
        assert "code" not in record.fields

    @pytest.mark.asyncio
    async def test_state_mismatch(self, recorder, make_engine):
        rec = recorder(_token_endpoint)
        async with make_engine(rec) as engine:
            record = _pkce_record()
            await engine.authenticate(record)
            step = await engine.handle_callback(record, {"code": "c", "state": "forged"})
        assert step.kind == StepKind.ERROR
        assert step.title == "Invalid State"
        assert record.status == CredentialStatus.ERROR
        assert rec.calls == 0

    @pytest.mark.asyncio
    async def test_state_without_stored_state(self, recorder, make_engine):
        rec = recorder(_token_endpoint)
        async with make_engine(rec) as engine:
            record = _pkce_record()
            await engine.authenticate(record)
            del record.fields[STATE_KEY]
            step = await engine.handle_callback(record, {"code": "c", "state": "anything"})
        assert step.kind == StepKind.ERROR
        assert step.title == "Invalid State"
        assert step.error == "No authorization request is pending for this callback"
        assert record.access_token is None
        assert rec.calls == 0

    @pytest.mark.asyncio
    async def test_denied(self, make_engine):
        async with make_engine(_token_endpoint) as engine:
            record = _pkce_record()
            await engine.authenticate(record)
            step = await engine.handle_callback(
                record, {"error": "access_denied", "error_description": "User said no"}
            )
        assert step.title == "Authorization Denied"
        assert step.error == "access_denied: User said no"

    @pytest.mark.asyncio
    async def test_missing_code(self, make_engine):
        async with make_engine(_token_endpoint) as engine:
            record = _pkce_record()
            first = await engine.authenticate(record)
            step = await engine.handle_callback(record, {"state": first.data["state"]})
        assert step.title == "Missing Authorization Code"

    @pytest.mark.asyncio
    async def test_rejected_exchange(self, make_engine):
        async with make_engine(lambda r: json_response({"error": "invalid_grant"}, 400)) as engine:
            record = _pkce_record()
            first = await engine.authenticate(record)
            step = await engine.handle_callback(
                record, {"code": "stale", "state": first.data["state"]}
            )
        assert step.kind == StepKind.ERROR
        assert step.error_code == ErrorCode.AUTH_ERROR
        assert record.access_token is None

    @pytest.mark.asyncio
    async def test_callback_without_flow(self, make_engine):
        async with make_engine(_token_endpoint) as engine:
            step = await engine.handle_callback(_pkce_record(), {"code": "c", "state": "s"})
        assert step.title == "No Flow In Progress"

    @pytest.mark.asyncio
    async def test_invalid_url_field(self, make_engine):
        async with make_engine(_token_endpoint) as engine:
            record = _pkce_record()
            record.fields["tokenUrl"] = "ftp://nope"
            step = await engine.authenticate(record)
        assert step.error_code == ErrorCode.VALIDATION_ERROR
        assert "tokenUrl" in step.field_errors


class TestRedirectTokens:
    @pytest.mark.asyncio
    async def test_execute_refreshes_expired_token(self, recorder, make_engine, clock):
        def _handler(request):
            if str(request.url) == TOKEN_URL:
                return json_response({"access_token": "at_2", "expires_in": 60})
            return json_response({"id": 1})

        rec = recorder(_handler)
        async with make_engine(rec) as engine:
            record = _pkce_record(baseUrl="https://api.example.com")
            record.apply_tokens("at_1", refresh_token="rt_1", expires_at=T0 - timedelta(seconds=1))
            result = await engine.execute(ExecutionContext(url="/items", credentials=record))

        assert result.success
        assert result.credentials_refreshed
        assert result.updated_credentials["access_token"] == "at_2"
        assert record.refresh_token == "rt_1"
        assert form_of(rec.requests[0])["grant_type"] == "refresh_token"
        assert rec.last.headers["Authorization"] == "Bearer at_2"
        assert str(rec.last.url) == "https://api.example.com/items"

    @pytest.mark.asyncio
    async def test_refresh_without_refresh_token(self, make_engine):
        async with make_engine(_token_endpoint) as engine:
            record = _pkce_record()
            record.apply_tokens("at_1", expires_at=T0 - timedelta(seconds=1))
            result = await engine.refresh(record)
        assert not result.success
        assert result.requires_reauth

    @pytest.mark.asyncio
    async def test_refresh_rejected_requires_reauth(self, make_engine):
        async with make_engine(lambda r: json_response({"error": "invalid_grant"}, 400)) as engine:
            record = _pkce_record()
            record.apply_tokens("at_1", refresh_token="rt_old")
            result = await engine.refresh(record)
        assert result.requires_reauth

    @pytest.mark.asyncio
    async def test_refresh_server_error_is_retryable(self, make_engine):
        async with make_engine(lambda r: json_response({}, 502)) as engine:
            record = _pkce_record()
            record.apply_tokens("at_1", refresh_token="rt_1")
            result = await engine.refresh(record)
        assert not result.success
        assert not result.requires_reauth

    @pytest.mark.asyncio
    async def test_revoke_both_tokens(self, recorder, make_engine):
        rec = recorder(lambda r: httpx.Response(200))
        async with make_engine(rec) as engine:
            record = _pkce_record(revocationUrl="https://auth.example.com/revoke")
            record.apply_tokens("at_1", refresh_token="rt_1")
            result = await engine.revoke(record)
        assert result.success and result.revoked_remotely
        hints = [form_of(r)["token_type_hint"] for r in rec.requests]
        assert hints == ["refresh_token", "access_token"]
        assert record.access_token is None and record.refresh_token is None

    @pytest.mark.asyncio
    async def test_revoke_failure_still_clears(self, make_engine):
        async with make_engine(lambda r: httpx.Response(500)) as engine:
            record = _pkce_record(revocationUrl="https://auth.example.com/revoke")
            record.apply_tokens("at_1")
            result = await engine.revoke(record)
        assert not result.success
        assert record.access_token is None

    @pytest.mark.asyncio
    async def test_health_with_user_info(self, make_engine):
        async with make_engine(lambda r: json_response({"sub": "u1", "email": "a@b.c"})) as engine:
            record = _pkce_record(userInfoUrl="https://auth.example.com/userinfo")
            record.apply_tokens("at_1", expires_at=T0 + timedelta(minutes=10))
            result = await engine.health_check(record)
        assert result.healthy
        assert result.details == {"validated": True, "sub": "u1", "email": "a@b.c"}
        assert result.token_expires_in == 600

    @pytest.mark.asyncio
    async def test_health_rejected(self, make_engine):
        async with make_engine(lambda r: json_response({}, 401)) as engine:
            record = _pkce_record(userInfoUrl="https://auth.example.com/userinfo")
            record.apply_tokens("at_1")
            result = await engine.health_check(record)
        assert not result.healthy
        assert result.token_status == TokenStatus.INVALID

    @pytest.mark.asyncio
    async def test_health_not_authenticated(self, make_engine):
        async with make_engine(_token_endpoint) as engine:
            result = await engine.health_check(_pkce_record())
        assert result.message == "Not authenticated"
        assert result.token_status == TokenStatus.MISSING

    def test_inject_without_token_raises(self, make_engine):
        engine = make_engine(_token_endpoint)
        with pytest.raises(AuthError):
            engine.inject(ExecutionContext(url="https://api.example.com", credentials=_pkce_record()))


# ---------------------------------------------------------------------------
# Authorization code (confidential client)
# ---------------------------------------------------------------------------


class TestAuthCode:
    @pytest.mark.asyncio
    async def test_basic_client_auth(self, recorder, make_engine):
        rec = recorder(_token_endpoint)
        async with make_engine(rec) as engine:
            record = _auth_code_record()
            first = await engine.authenticate(record)
            await engine.handle_callback(record, {"code": "c", "state": first.data["state"]})
        assert rec.last.headers["Authorization"] == basic_auth_header("app-1", "s3cret")
        assert "client_secret" not in form_of(rec.last)

    @pytest.mark.asyncio
    async def test_post_client_auth(self, recorder, make_engine):
        rec = recorder(_token_endpoint)
        async with make_engine(rec) as engine:
            record = _auth_code_record(clientAuthMethod="client_secret_post")
            first = await engine.authenticate(record)
            await engine.handle_callback(record, {"code": "c", "state": first.data["state"]})
        assert "Authorization" not in rec.last.headers
        assert form_of(rec.last)["client_secret"] == "s3cret"

    @pytest.mark.asyncio
    async def test_openid_nonce_and_id_token(self, make_engine):
        def _handler(request):
            return json_response({"access_token": "at", "id_token": "eyJ.x.y"})

        async with make_engine(_handler) as engine:
            record = _auth_code_record(scopes="openid profile")
            first = await engine.authenticate(record)
            assert "nonce" in _query(first.redirect_url)
            await engine.handle_callback(record, {"code": "c", "state": first.data["state"]})
        assert record.fields["idToken"] == "eyJ.x.y"

    def test_secret_is_masked(self, make_engine):
        masked = make_engine(_token_endpoint).masked(_auth_code_record())
        assert masked["clientSecret"] != "s3cret"
        assert masked["clientId"] == "app-1"

    @pytest.mark.asyncio
    async def test_additional_auth_params(self, make_engine):
        async with make_engine(_token_endpoint) as engine:
            record = _auth_code_record(additionalAuthParams='{"prompt": "consent"}')
            step = await engine.authenticate(record)
        assert _query(step.redirect_url)["prompt"] == "consent"


# ---------------------------------------------------------------------------
# Implicit (deprecated)
# ---------------------------------------------------------------------------


class TestImplicit:
    def _record(self):
        return record_for(
            "oauth-implicit",
            clientId="legacy",
            authorizationUrl="https://auth.example.com/authorize",
            redirectUri="https://app.example.com/cb",
        )

    def test_parse_fragment(self):
        assert parse_fragment("#access_token=a&expires_in=5") == {"access_token": "a", "expires_in": "5"}

    @pytest.mark.asyncio
    async def test_fragment_callback(self, recorder, make_engine, caplog):
        rec = recorder(_token_endpoint)
        async with make_engine(rec) as engine:
            record = self._record()
            first = await engine.authenticate(record)
            assert _query(first.redirect_url)["response_type"] == "token"
            state = first.data["state"]
            done = await engine.handle_callback(
                record, {"fragment": f"#access_token=imp_1&expires_in=600&state={state}"}
            )
        assert done.kind == StepKind.COMPLETE
        assert record.access_token == "imp_1"
        assert record.expires_at == T0 + timedelta(minutes=10)
        assert rec.calls == 0
        assert "deprecated" in caplog.text.lower()

    @pytest.mark.asyncio
    async def test_missing_access_token(self, make_engine):
        async with make_engine(_token_endpoint) as engine:
            record = self._record()
            first = await engine.authenticate(record)
            step = await engine.handle_callback(record, {"state": first.data["state"]})
        assert step.title == "Missing Access Token"

    @pytest.mark.asyncio
    async def test_cannot_refresh(self, make_engine):
        async with make_engine(_token_endpoint) as engine:
            record = self._record()
            record.apply_tokens("imp_1", expires_at=T0 - timedelta(seconds=1))
            assert engine.is_token_expired(record) is False
            result = await engine.refresh(record)
        assert result.success
        assert result.access_token is None
