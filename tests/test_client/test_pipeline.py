"""Tests for ExecutionPipeline: request assembly, retry, redirects and normalisation."""

from __future__ import annotations

import asyncio

import httpx
import pytest
from conftest import body_of, json_response

from handshake_engine.client.pipeline import RetryPolicy, linear_backoff, merge_headers
from handshake_engine.models import (
    AuthInjection,
    CredentialRecord,
    EngineConfig,
    ErrorCode,
    ExecutionContext,
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _ctx(url: str = "https://api.example.com/items", **kwargs) -> ExecutionContext:
    return ExecutionContext(
        url=url, credentials=CredentialRecord(protocol_type="api-key"), **kwargs
    )


def _always(exc_type: type[httpx.HTTPError]):
    def handler(request: httpx.Request) -> httpx.Response:
        raise exc_type("connection reset", request=request)

    return handler


# ---------------------------------------------------------------------------
# Retry policy
# ---------------------------------------------------------------------------


class TestRetryPolicy:
    def test_linear_delays(self):
        policy = RetryPolicy(max_retries=3, retry_delay_ms=1000)
        assert [policy.delay_for(n) for n in (1, 2, 3)] == [1.0, 2.0, 3.0]
        assert policy.max_attempts == 4

    def test_from_config(self):
        policy = RetryPolicy.from_config(EngineConfig(max_retries=1, retry_delay_ms=250))
        assert policy.max_retries == 1
        assert policy.delay_for(2) == 0.5

    def test_disabled(self):
        assert RetryPolicy.disabled().max_attempts == 1

    def test_custom_backoff(self):
        policy = RetryPolicy(retry_delay_ms=100, backoff=lambda base, n: base * 2**n)
        assert policy.delay_for(3) == pytest.approx(0.8)
        assert linear_backoff(0.5, 4) == 2.0

    @pytest.mark.parametrize(
        "exc",
        [httpx.ReadTimeout("t"), httpx.ConnectError("c"), httpx.RemoteProtocolError("r"), asyncio.TimeoutError()],
    )
    def test_transient(self, exc):
        assert RetryPolicy.is_transient(exc)

    def test_status_errors_not_transient(self):
        assert not RetryPolicy.is_transient(ValueError("x"))


# ---------------------------------------------------------------------------
# Request assembly
# ---------------------------------------------------------------------------


class TestMergeHeaders:
    def test_later_layers_win_case_insensitively(self):
        merged = merge_headers(
            {"User-Agent": "engine/1"},
            {"accept": "text/html"},
            {"Authorization": "Bearer injected"},
            {"authorization": "Bearer caller", "Accept": "application/json"},
        )
        assert merged == {
            "User-Agent": "engine/1",
            "authorization": "Bearer caller",
            "Accept": "application/json",
        }


class TestPrepare:
    def test_layers_and_placeholders(self, recorder, make_pipeline):
        pipeline = make_pipeline(recorder(lambda r: json_response({})))
        request = pipeline.prepare(
            _ctx(
                "/repos/{{owner}}/{{repo}}",
                headers={"X-Trace": "{{trace}}"},
                query_params={"page": "{{page}}"},
                variables={"owner": "octo", "repo": "hello", "page": "2"},
            ),
            AuthInjection(headers={"Authorization": "token abc"}, query_params={"sig": "s"}),
            default_headers={"Accept": "application/vnd.github+json"},
            base_url="https://api.github.com/",
        )
        assert request.url == "https://api.github.com/repos/octo/hello"
        assert request.headers["Authorization"] == "token abc"
        assert request.headers["Accept"] == "application/vnd.github+json"
        assert request.headers["User-Agent"] == EngineConfig().user_agent
        assert request.headers["X-Trace"] == "{{trace}}"
        assert request.params == {"sig": "s", "page": "2"}
        assert request.unresolved == ["trace"]

    def test_absolute_url_ignores_base(self, recorder, make_pipeline):
        pipeline = make_pipeline(recorder(lambda r: json_response({})))
        request = pipeline.prepare(_ctx("https://other.io/x"), base_url="https://api.io")
        assert request.url == "https://other.io/x"

    def test_body_merge_dicts(self, recorder, make_pipeline):
        pipeline = make_pipeline(recorder(lambda r: json_response({})))
        request = pipeline.prepare(
            _ctx(method="POST", body={"name": "{{name}}", "api_key": "caller"}, variables={"name": "x"}),
            AuthInjection(body={"api_key": "injected"}),
        )
        assert request.json_body == {"name": "x", "api_key": "injected"}

    def test_body_merge_json_string(self, recorder, make_pipeline):
        pipeline = make_pipeline(recorder(lambda r: json_response({})))
        request = pipeline.prepare(
            _ctx(method="POST", body='{"q": 1}'), AuthInjection(body={"key": "k"})
        )
        assert request.json_body == {"q": 1, "key": "k"}

    def test_text_body_kept_as_content(self, recorder, make_pipeline):
        pipeline = make_pipeline(recorder(lambda r: json_response({})))
        request = pipeline.prepare(_ctx(method="POST", body="<xml>{{v}}</xml>", variables={"v": "1"}))
        assert request.content == "<xml>1</xml>"
        assert request.json_body is None

    def test_context_not_modified(self, recorder, make_pipeline):
        pipeline = make_pipeline(recorder(lambda r: json_response({})))
        ctx = _ctx(headers={"A": "1"})
        injection = AuthInjection(headers={"B": "2"})
        pipeline.prepare(ctx, injection)
        assert ctx.headers == {"A": "1"}
        assert injection.headers == {"B": "2"}

    @pytest.mark.parametrize(("given", "expected"), [(None, 30.0), (10, 1.0), (999999, 300.0), (4500, 4.5)])
    def test_timeout_clamped(self, recorder, make_pipeline, given, expected):
        pipeline = make_pipeline(recorder(lambda r: json_response({})))
        assert pipeline.timeout_seconds(given) == expected


# ---------------------------------------------------------------------------
# Dispatch
# ---------------------------------------------------------------------------


class TestDispatch:
    @pytest.mark.asyncio
    async def test_success(self, recorder, make_pipeline):
        rec = recorder(lambda r: json_response({"ok": True}, headers={"X-Req": "1"}))
        result = await make_pipeline(rec).execute(_ctx())
        assert result.success
        assert result.status_code == 200
        assert result.body == {"ok": True}
        assert result.headers["x-req"] == "1"
        assert result.attempts == 1

    @pytest.mark.asyncio
    async def test_json_body_sent(self, recorder, make_pipeline):
        rec = recorder(lambda r: json_response({}, 201))
        await make_pipeline(rec).execute(_ctx(method="post", body={"a": 1}))
        assert rec.last.method == "POST"
        assert body_of(rec.last) == {"a": 1}

    @pytest.mark.asyncio
    async def test_get_drops_text_body(self, recorder, make_pipeline):
        rec = recorder(lambda r: json_response({}))
        await make_pipeline(rec).execute(_ctx(body="ignored"))
        assert rec.last.content == b""

    @pytest.mark.asyncio
    async def test_retries_transient_failures(self, recorder, make_pipeline, sleep):
        rec = recorder(_always(httpx.ConnectError))
        config = EngineConfig(max_retries=3, retry_delay_ms=1000)
        result = await make_pipeline(rec, config).execute(_ctx())
        assert rec.calls == 4
        assert sleep.delays == [1.0, 2.0, 3.0]
        assert not result.success
        assert result.error_code == ErrorCode.NETWORK_ERROR
        assert result.attempts == 4
        assert "after 4 attempts" in result.error
        assert "ConnectError" in result.error

    @pytest.mark.asyncio
    async def test_recovers_after_timeouts(self, recorder, make_pipeline, sleep):
        outcomes = iter([httpx.ReadTimeout, httpx.RemoteProtocolError, None])

        def handler(request):
            exc = next(outcomes)
            if exc is not None:
                raise exc("flaky", request=request)
            return json_response({"ok": 1})

        rec = recorder(handler)
        result = await make_pipeline(rec).execute(_ctx())
        assert result.success
        assert result.attempts == 3
        assert sleep.delays == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_no_retry_when_disabled(self, recorder, make_pipeline, sleep):
        rec = recorder(_always(httpx.ConnectError))
        result = await make_pipeline(rec).execute(_ctx(), retry_policy=RetryPolicy.disabled())
        assert rec.calls == 1
        assert result.attempts == 1
        assert sleep.delays == []

    @pytest.mark.asyncio
    async def test_server_errors_not_retried(self, recorder, make_pipeline):
        rec = recorder(lambda r: json_response({"message": "boom"}, 503))
        result = await make_pipeline(rec).execute(_ctx())
        assert rec.calls == 1
        assert result.status_code == 503
        assert result.error_code == ErrorCode.PROVIDER_ERROR
        assert result.error == "HTTP 503: boom"

    @pytest.mark.asyncio
    async def test_unauthorized_is_auth_error(self, recorder, make_pipeline):
        rec = recorder(lambda r: json_response({"error_description": "bad token"}, 401))
        result = await make_pipeline(rec).execute(_ctx())
        assert result.error_code == ErrorCode.AUTH_ERROR
        assert result.error == "HTTP 401: bad token"

    @pytest.mark.asyncio
    async def test_unresolved_placeholders_reported(self, recorder, make_pipeline):
        rec = recorder(lambda r: json_response({}))
        result = await make_pipeline(rec).execute(_ctx(headers={"X-Org": "{{org}}"}))
        assert result.success
        assert result.unresolved_placeholders == ["org"]
        assert rec.last.headers["X-Org"] == "{{org}}"


class TestRedirects:
    @staticmethod
    def _chain(hops: int):
        def handler(request):
            n = int(request.url.params.get("n", "0"))
            if n < hops:
                return httpx.Response(302, headers={"Location": f"/r?n={n + 1}"})
            return json_response({"hops": n})

        return handler

    @pytest.mark.asyncio
    async def test_follows_within_limit(self, recorder, make_pipeline):
        rec = recorder(self._chain(3))
        result = await make_pipeline(rec).execute(_ctx("https://x.io/r"))
        assert result.success
        assert result.body == {"hops": 3}
        assert rec.calls == 4

    @pytest.mark.asyncio
    async def test_limit_exceeded_is_network_error(self, recorder, make_pipeline):
        rec = recorder(self._chain(10))
        result = await make_pipeline(rec).execute(_ctx("https://x.io/r", max_redirects=2))
        assert not result.success
        assert result.error_code == ErrorCode.NETWORK_ERROR
        assert rec.calls == 3

    @pytest.mark.asyncio
    async def test_not_followed_when_disabled(self, recorder, make_pipeline):
        rec = recorder(self._chain(3))
        result = await make_pipeline(rec).execute(_ctx("https://x.io/r", follow_redirects=False))
        assert result.status_code == 302
        assert rec.calls == 1

    @pytest.mark.asyncio
    async def test_config_default_applies(self, recorder, make_pipeline):
        rec = recorder(self._chain(1))
        config = EngineConfig(follow_redirects=False)
        result = await make_pipeline(rec, config).execute(_ctx("https://x.io/r"))
        assert result.status_code == 302
