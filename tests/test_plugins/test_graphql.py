"""Tests for the graphql protocol module."""

from __future__ import annotations

import pytest
from conftest import body_of, json_response, record_for

from handshake_engine.models import ErrorCode, ExecutionContext, StepKind, TokenStatus
from handshake_engine.plugins.graphql.plugin import (
    HEALTH_QUERY,
    INTROSPECTION_TEST_QUERY,
    format_errors,
    parse_operation,
)

ENDPOINT = "https://api.example.com/graphql"


def _record(**extra):
    fields = {"endpoint": ENDPOINT, "authMethod": "bearer", "authToken": "gql_tok"}
    fields.update(extra)
    return record_for("graphql", **fields)


def _data(request):
    return json_response({"data": {"__schema": {"queryType": {"name": "Query"}}, "__typename": "Query"}})


class TestHelpers:
    @pytest.mark.parametrize(
        ("document", "expected"),
        [
            ("mutation AddUser { add { id } }", ("mutation", "AddUser")),
            ("  query { viewer { login } }", ("query", None)),
            ("subscription OnEvent { event }", ("subscription", "OnEvent")),
            ("{ viewer { login } }", ("query", None)),
        ],
    )
    def test_parse_operation(self, document, expected):
        assert parse_operation(document) == expected

    def test_format_errors(self):
        text = format_errors(
            [
                {"message": "Field 'x' missing", "path": ["user", 0, "x"], "locations": [{"line": 2, "column": 5}]},
                {"message": "Another"},
            ]
        )
        assert text == "1. Field 'x' missing (at user.0.x) [line 2, col 5]\n2. Another"


class TestInjection:
    @pytest.mark.parametrize(
        ("extra", "headers"),
        [
            ({}, {"Authorization": "Bearer gql_tok"}),
            ({"authMethod": "api-key"}, {"X-API-Key": "gql_tok"}),
            ({"authMethod": "api-key", "authHeaderName": "X-Shopify-Access-Token"}, {"X-Shopify-Access-Token": "gql_tok"}),
            ({"authMethod": "basic", "authToken": "u:p"}, {"Authorization": "Basic dTpw"}),
            ({"authMethod": "basic", "authToken": "dTpw"}, {"Authorization": "Basic dTpw"}),
            (
                {"authMethod": "custom-header", "authHeaderName": "Authorization", "authHeaderPrefix": "Token "},
                {"Authorization": "Token gql_tok"},
            ),
            ({"authMethod": "none"}, {}),
        ],
    )
    def test_methods(self, make_engine, extra, headers):
        context = ExecutionContext(url="", credentials=_record(**extra))
        assert make_engine(_data).inject(context).headers == headers


class TestExecute:
    @pytest.mark.asyncio
    async def test_query_string_body(self, recorder, make_engine):
        rec = recorder(lambda r: json_response({"data": {"viewer": {"login": "ada"}}}))
        async with make_engine(rec) as engine:
            result = await engine.execute(
                ExecutionContext(url="", body="{ viewer { login } }", credentials=_record())
            )
        assert result.success
        assert result.body == {"data": {"viewer": {"login": "ada"}}}
        request = rec.last
        assert request.method == "POST"
        assert str(request.url) == ENDPOINT
        assert request.headers["Authorization"] == "Bearer gql_tok"
        assert request.headers["Content-Type"] == "application/json"
        assert body_of(request) == {"query": "{ viewer { login } }"}

    @pytest.mark.asyncio
    async def test_dict_body_keeps_only_graphql_keys(self, recorder, make_engine):
        rec = recorder(lambda r: json_response({"data": {}}))
        async with make_engine(rec) as engine:
            await engine.execute(
                ExecutionContext(
                    url="",
                    body={
                        "query": "query Get($id: ID!) { node(id: $id) { id } }",
                        "variables": {"id": "1"},
                        "operationName": "Get",
                        "extra": True,
                    },
                    credentials=_record(additionalHeaders={"X-Client": "tests"}),
                )
            )
        assert set(body_of(rec.last)) == {"query", "variables", "operationName"}
        assert rec.last.headers["X-Client"] == "tests"

    @pytest.mark.asyncio
    async def test_body_without_query(self, recorder, make_engine):
        rec = recorder(_data)
        async with make_engine(rec) as engine:
            result = await engine.execute(
                ExecutionContext(url="", body={"variables": {}}, credentials=_record())
            )
        assert result.error_code == ErrorCode.VALIDATION_ERROR
        assert rec.calls == 0

    @pytest.mark.asyncio
    async def test_errors_without_data_fail(self, make_engine):
        async with make_engine(
            lambda r: json_response({"errors": [{"message": "Syntax error"}]})
        ) as engine:
            result = await engine.execute(
                ExecutionContext(url="", body="{ bad", credentials=_record())
            )
        assert not result.success
        assert result.status_code == 200
        assert result.error == "1. Syntax error"
        assert result.error_code == ErrorCode.PROVIDER_ERROR

    @pytest.mark.asyncio
    async def test_unauthenticated_code_is_auth_error(self, make_engine):
        payload = {"errors": [{"message": "Nope", "extensions": {"code": "UNAUTHENTICATED"}}]}
        async with make_engine(lambda r: json_response(payload)) as engine:
            result = await engine.execute(
                ExecutionContext(url="", body="{ viewer { id } }", credentials=_record())
            )
        assert result.error_code == ErrorCode.AUTH_ERROR

    @pytest.mark.asyncio
    async def test_partial_data_is_success(self, make_engine):
        payload = {
            "data": {"user": None},
            "errors": [{"message": "Not found", "path": ["user"]}],
        }
        async with make_engine(lambda r: json_response(payload)) as engine:
            result = await engine.execute(
                ExecutionContext(url="", body="{ user { id } }", credentials=_record())
            )
        assert result.success
        assert result.error == "1. Not found (at user)"


class TestAuthenticate:
    @pytest.mark.asyncio
    async def test_introspection_probe(self, recorder, make_engine):
        rec = recorder(_data)
        async with make_engine(rec) as engine:
            step = await engine.authenticate(_record(subscriptionEndpoint="wss://api.example.com/graphql"))
        assert step.kind == StepKind.COMPLETE
        assert step.data["has_subscriptions"] is True
        assert body_of(rec.last)["query"] == INTROSPECTION_TEST_QUERY

    @pytest.mark.asyncio
    async def test_introspection_disabled_on_server(self, make_engine):
        payload = {"errors": [{"message": "GraphQL introspection is not allowed"}]}
        async with make_engine(lambda r: json_response(payload)) as engine:
            step = await engine.authenticate(_record())
        assert step.kind == StepKind.COMPLETE

    @pytest.mark.asyncio
    async def test_skip_introspection(self, recorder, make_engine):
        rec = recorder(_data)
        async with make_engine(rec) as engine:
            step = await engine.authenticate(_record(enableIntrospection=False))
        assert step.kind == StepKind.COMPLETE
        assert rec.calls == 0

    @pytest.mark.asyncio
    async def test_rejected_token(self, make_engine):
        async with make_engine(lambda r: json_response({"message": "Bad token"}, 401)) as engine:
            step = await engine.authenticate(_record())
        assert step.kind == StepKind.ERROR
        assert step.error_code == ErrorCode.AUTH_ERROR

    @pytest.mark.asyncio
    async def test_token_required_unless_public(self, make_engine):
        async with make_engine(_data) as engine:
            missing = await engine.authenticate(_record(authToken=""))
            public = await engine.authenticate(_record(authToken="", authMethod="none"))
        assert missing.missing_fields == ["authToken"]
        assert public.kind == StepKind.COMPLETE


class TestHealth:
    @pytest.mark.asyncio
    async def test_healthy(self, recorder, make_engine):
        rec = recorder(_data)
        async with make_engine(rec) as engine:
            result = await engine.health_check(_record())
        assert result.healthy
        assert result.details == {"typename": "Query"}
        assert body_of(rec.last)["query"] == HEALTH_QUERY

    @pytest.mark.asyncio
    async def test_auth_failure(self, make_engine):
        async with make_engine(lambda r: json_response({}, 403)) as engine:
            result = await engine.health_check(_record())
        assert not result.healthy
        assert result.message == "Authentication failed"
        assert result.token_status == TokenStatus.INVALID
