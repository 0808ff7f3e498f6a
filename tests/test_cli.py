"""Tests for the ``handshake`` command line.

Commands are invoked through the real Typer app. ``make_engine`` is
replaced so every engine talks to a mock transport.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import httpx
import pytest
from conftest import Recorder, json_response

from handshake_engine.app import app
from handshake_engine.engine import HandshakeEngine
from handshake_engine.models import EngineConfig

API_KEY = "sk_live_abcdefghijklmnop"


@pytest.fixture
def cli_engine(monkeypatch, clock, sleep):
    """Route the CLI's engines through ``Recorder(handler)``; returns the recorder."""

    def _install(handler) -> Recorder:
        rec = Recorder(handler)
        monkeypatch.setattr(
            "handshake_engine.commands.handshake.make_engine",
            lambda: HandshakeEngine(EngineConfig(), transport=rec.transport, clock=clock, sleep=sleep),
        )
        return rec

    return _install


def _write(path: Path, protocol_type: str, fields: dict[str, Any], **extra: Any) -> Path:
    data = {"id": f"{protocol_type}-cli", "protocol_type": protocol_type, "fields": fields, **extra}
    path.write_text(json.dumps(data), encoding="utf-8")
    return path


def _stored(path: Path) -> dict[str, Any]:
    return json.loads(path.read_text(encoding="utf-8"))


@pytest.fixture
def key_record(isolated_config: Path) -> Path:
    return _write(
        isolated_config / "key.json",
        "api-key",
        {"apiKey": API_KEY, "baseUrl": "https://api.example.com"},
    )


# ---------------------------------------------------------------------------
# Root and protocols
# ---------------------------------------------------------------------------


class TestProtocols:
    def test_version(self, cli_runner):
        result = cli_runner.invoke(app, ["--version"])
        assert result.exit_code == 0
        assert "handshake 0.1.0" in result.output

    def test_list_json(self, cli_runner):
        result = cli_runner.invoke(app, ["--json", "--quiet", "protocols", "list"])
        assert result.exit_code == 0
        rows = json.loads(result.stdout)
        types = [row["Type"] for row in rows]
        assert "github" in types and "oauth-pkce" in types
        implicit = next(row for row in rows if row["Type"] == "oauth-implicit")
        assert implicit["Name"].endswith("(deprecated)")

    def test_fields_json(self, cli_runner):
        result = cli_runner.invoke(app, ["--json", "--quiet", "protocols", "fields", "api-key"])
        assert result.exit_code == 0
        rows = json.loads(result.stdout)
        assert rows[0]["Field"] == "apiKey"
        assert rows[0]["Required"] == "yes"

    def test_fields_unknown_protocol(self, cli_runner):
        result = cli_runner.invoke(app, ["protocols", "fields", "kerberos"])
        assert result.exit_code == 2
        assert "kerberos" in result.output


# ---------------------------------------------------------------------------
# auth / callback
# ---------------------------------------------------------------------------


class TestAuth:
    def test_auth_keeps_env_reference(self, cli_runner, cli_engine, isolated_config, monkeypatch):
        monkeypatch.setenv("TEST_API_KEY", API_KEY)
        rec = cli_engine(lambda r: json_response({"id": "me"}))
        path = _write(
            isolated_config / "env.json",
            "api-key",
            {"apiKey": "env:TEST_API_KEY", "baseUrl": "https://api.example.com", "healthCheckPath": "/me"},
        )

        result = cli_runner.invoke(app, ["auth", str(path)])

        assert result.exit_code == 0, result.output
        assert rec.last.headers["X-API-Key"] == API_KEY
        stored = _stored(path)
        assert stored["status"] == "authenticated"
        assert stored["fields"]["apiKey"] == "env:TEST_API_KEY"

    def test_auth_rejected_key(self, cli_runner, cli_engine, isolated_config):
        cli_engine(lambda r: json_response({"error": "bad key"}, 401))
        path = _write(
            isolated_config / "bad.json",
            "api-key",
            {"apiKey": API_KEY, "baseUrl": "https://api.example.com", "healthCheckPath": "/me"},
        )
        result = cli_runner.invoke(app, ["auth", str(path)])
        assert result.exit_code == 3
        assert _stored(path)["status"] == "error"

    def test_auth_set_values(self, cli_runner, cli_engine, isolated_config):
        cli_engine(lambda r: json_response({}))
        path = _write(isolated_config / "empty.json", "api-key", {})
        result = cli_runner.invoke(app, ["auth", str(path), "--set", f"apiKey={API_KEY}"])
        assert result.exit_code == 0, result.output
        assert _stored(path)["fields"]["apiKey"] == API_KEY

    def test_auth_missing_field(self, cli_runner, cli_engine, isolated_config):
        cli_engine(lambda r: json_response({}))
        path = _write(isolated_config / "empty.json", "api-key", {})
        result = cli_runner.invoke(app, ["auth", str(path)])
        assert result.exit_code == 4

    def test_missing_record_file(self, cli_runner, cli_engine, isolated_config):
        cli_engine(lambda r: json_response({}))
        result = cli_runner.invoke(app, ["auth", str(isolated_config / "nope.json")])
        assert result.exit_code == 1
        assert "not found" in result.output

    def test_callback_requires_params(self, cli_runner, key_record):
        result = cli_runner.invoke(app, ["callback", str(key_record)])
        assert result.exit_code == 2

    def test_callback_without_redirect_flow(self, cli_runner, cli_engine, key_record):
        cli_engine(lambda r: json_response({}))
        result = cli_runner.invoke(app, ["callback", str(key_record), "-p", "code=abc"])
        assert result.exit_code == 4
        assert "Start the authentication flow" in result.output


# ---------------------------------------------------------------------------
# exec
# ---------------------------------------------------------------------------


class TestExec:
    def test_success_prints_body(self, cli_runner, cli_engine, key_record):
        rec = cli_engine(lambda r: json_response({"login": "ada"}))
        result = cli_runner.invoke(
            app,
            [
                "--json",
                "--quiet",
                "exec",
                str(key_record),
                "--url",
                "/user",
                "-H",
                "X-Trace: 1",
                "-q",
                "page=2",
            ],
        )
        assert result.exit_code == 0, result.output
        assert json.loads(result.stdout) == {"login": "ada"}
        request = rec.last
        assert str(request.url) == "https://api.example.com/user?page=2"
        assert request.headers["X-API-Key"] == API_KEY
        assert request.headers["X-Trace"] == "1"

    def test_post_json_body(self, cli_runner, cli_engine, key_record):
        rec = cli_engine(lambda r: json_response({"id": 1}, 201))
        result = cli_runner.invoke(
            app, ["exec", str(key_record), "--url", "/items", "-X", "post", "-d", '{"name": "x"}']
        )
        assert result.exit_code == 0, result.output
        assert rec.last.method == "POST"
        assert json.loads(rec.last.content) == {"name": "x"}

    @pytest.mark.parametrize(
        ("status", "exit_code"),
        [(401, 3), (403, 3), (404, 5), (500, 5)],
    )
    def test_http_failures(self, cli_runner, cli_engine, key_record, status, exit_code):
        cli_engine(lambda r: json_response({"error": "nope"}, status))
        result = cli_runner.invoke(app, ["exec", str(key_record), "--url", "/user"])
        assert result.exit_code == exit_code

    def test_network_failure(self, cli_runner, cli_engine, key_record):
        def _down(request):
            raise httpx.ConnectError("refused", request=request)

        cli_engine(_down)
        result = cli_runner.invoke(app, ["exec", str(key_record), "--url", "/user"])
        assert result.exit_code == 6

    def test_unknown_protocol(self, cli_runner, cli_engine, isolated_config):
        cli_engine(lambda r: json_response({}))
        path = _write(isolated_config / "k.json", "kerberos", {})
        result = cli_runner.invoke(app, ["exec", str(path), "--url", "https://x.example.com"])
        assert result.exit_code == 4


# ---------------------------------------------------------------------------
# health / refresh / revoke
# ---------------------------------------------------------------------------


class TestLifecycle:
    def test_health_ok(self, cli_runner, cli_engine, key_record):
        cli_engine(lambda r: json_response({}))
        result = cli_runner.invoke(app, ["--json", "--quiet", "health", str(key_record)])
        assert result.exit_code == 0
        assert json.loads(result.stdout)["healthy"] is True

    def test_health_unhealthy_exits_one(self, cli_runner, cli_engine, isolated_config):
        cli_engine(lambda r: json_response({}))
        path = _write(isolated_config / "nokey.json", "api-key", {})
        result = cli_runner.invoke(app, ["health", str(path)])
        assert result.exit_code == 1
        assert "No API key configured" in result.output

    def test_refresh_nothing_to_do(self, cli_runner, cli_engine, key_record):
        rec = cli_engine(lambda r: json_response({}))
        result = cli_runner.invoke(app, ["refresh", str(key_record)])
        assert result.exit_code == 0
        assert "Nothing to refresh" in result.output
        assert rec.calls == 0

    def test_refresh_without_refresh_token(self, cli_runner, cli_engine, isolated_config):
        cli_engine(lambda r: json_response({}))
        path = _write(
            isolated_config / "pkce.json",
            "oauth-pkce",
            {
                "clientId": "cid",
                "authorizationUrl": "https://idp.example.com/authorize",
                "tokenUrl": "https://idp.example.com/token",
                "redirectUri": "http://localhost:8080/callback",
            },
            status="authenticated",
            access_token="at_1",
        )
        result = cli_runner.invoke(app, ["refresh", str(path)])
        assert result.exit_code == 8

    def test_revoke_clears_file(self, cli_runner, cli_engine, isolated_config):
        cli_engine(lambda r: json_response({}))
        path = _write(
            isolated_config / "tok.json",
            "api-key",
            {"apiKey": API_KEY},
            access_token="at_1",
        )
        result = cli_runner.invoke(app, ["revoke", str(path)])
        assert result.exit_code == 0
        assert "access_token" not in _stored(path)


# ---------------------------------------------------------------------------
# show / mask
# ---------------------------------------------------------------------------


class TestInspection:
    def test_show_masks_secrets(self, cli_runner, cli_engine, key_record):
        cli_engine(lambda r: json_response({}))
        result = cli_runner.invoke(app, ["--json", "--quiet", "show", str(key_record)])
        assert result.exit_code == 0
        assert API_KEY not in result.stdout
        shown = json.loads(result.stdout)
        assert shown["protocol_type"] == "api-key"
        assert shown["fields"]["baseUrl"] == "https://api.example.com"
        assert shown["valid"] is True

    def test_mask_template(self, cli_runner):
        command = f"curl -H 'Authorization: Bearer {API_KEY}' https://api.example.com"
        result = cli_runner.invoke(app, ["mask", command])
        assert result.exit_code == 0
        assert API_KEY not in result.stdout
        assert "https://api.example.com" in result.stdout

    def test_mask_normalize(self, cli_runner):
        command = f"curl https://api.example.com -H 'X-API-Key: {API_KEY}'"
        result = cli_runner.invoke(app, ["mask", "--normalize", command])
        assert result.exit_code == 0
        assert API_KEY not in result.stdout

    def test_mask_normalize_parse_error(self, cli_runner):
        result = cli_runner.invoke(app, ["mask", "--normalize", "curl 'unterminated"])
        assert result.exit_code == 7
