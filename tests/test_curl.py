"""Tests for cURL command parsing and rendering."""

from __future__ import annotations

import pytest

from handshake_engine.curl import parse_curl, to_curl
from handshake_engine.exceptions import ParseError
from handshake_engine.models import ParsedCurlCommand


class TestParseCurl:
    def test_post_with_headers_and_body(self):
        parsed = parse_curl(
            "curl -X POST 'https://api.example.com/v1/items' "
            "-H 'Authorization: Bearer {{access_token}}' "
            "-H 'Content-Type: application/json' "
            """-d '{"name": "{{name}}"}'"""
        )
        assert parsed.method == "POST"
        assert parsed.url == "https://api.example.com/v1/items"
        assert parsed.headers == {
            "Authorization": "Bearer {{access_token}}",
            "Content-Type": "application/json",
        }
        assert parsed.body == '{"name": "{{name}}"}'

    def test_data_implies_post(self):
        assert parse_curl("curl https://x.io -d a=1").method == "POST"

    def test_explicit_method_wins_over_data(self):
        assert parse_curl("curl -X PUT https://x.io -d a=1").method == "PUT"

    def test_repeated_data_is_joined(self):
        assert parse_curl("curl https://x.io -d a=1 -d b=2").body == "a=1&b=2"

    def test_head_flag(self):
        assert parse_curl("curl -I https://x.io").method == "HEAD"

    def test_json_flag_sets_headers(self):
        parsed = parse_curl("""curl --json '{"a": 1}' https://x.io""")
        assert parsed.method == "POST"
        assert parsed.headers["Content-Type"] == "application/json"
        assert parsed.headers["Accept"] == "application/json"

    def test_user_and_convenience_headers(self):
        parsed = parse_curl("curl -u alice:s3cret -A bot/1 -b sid=1 -e https://ref.io https://x.io")
        assert parsed.basic_auth == ("alice", "s3cret")
        assert parsed.headers == {"User-Agent": "bot/1", "Cookie": "sid=1", "Referer": "https://ref.io"}
        assert parsed.url == "https://x.io"

    def test_boolean_flags(self):
        parsed = parse_curl("curl -sSL -k --compressed -L -k https://x.io")
        assert parsed.follow_redirects is True
        assert parsed.insecure is True

    def test_max_time(self):
        assert parse_curl("curl -m 7.5 https://x.io").max_time_s == 7.5

    def test_line_continuations(self):
        parsed = parse_curl("curl \\\n  -H 'Accept: text/xml' \\\n  https://x.io/soap")
        assert parsed.headers == {"Accept": "text/xml"}
        assert parsed.url == "https://x.io/soap"

    def test_url_flag_and_placeholder_url(self):
        assert parse_curl("curl --url '{{base}}/x'").url == "{{base}}/x"
        assert parse_curl("curl {{base}}/items").url == "{{base}}/items"

    def test_without_leading_curl(self):
        assert parse_curl("-X DELETE https://x.io/1").method == "DELETE"

    def test_ignored_value_flags_consume_their_value(self):
        parsed = parse_curl("curl -o out.json https://x.io")
        assert parsed.url == "https://x.io"

    @pytest.mark.parametrize(
        ("command", "message"),
        [
            ("", "empty"),
            ("curl 'https://x.io", "Malformed"),
            ("curl -H 'NoColon' https://x.io", "Malformed header"),
            ("curl -X POST", "no URL"),
            ("curl https://x.io -H", "expects a value"),
            ("curl -m soon https://x.io", "max-time"),
        ],
    )
    def test_errors(self, command, message):
        with pytest.raises(ParseError, match=message):
            parse_curl(command)


class TestToCurl:
    def test_renders_multiline(self):
        parsed = ParsedCurlCommand(
            method="POST",
            url="https://x.io/items",
            headers={"Accept": "application/json"},
            body='{"a": 1}',
            follow_redirects=True,
        )
        assert to_curl(parsed) == (
            "curl \\\n  -X POST \\\n  https://x.io/items \\\n"
            "  -H 'Accept: application/json' \\\n  -d '{\"a\": 1}' \\\n  -L"
        )

    def test_get_omits_method(self):
        assert to_curl(ParsedCurlCommand(url="https://x.io")) == "curl \\\n  https://x.io"

    def test_reparses_to_same_command(self):
        original = parse_curl("curl -X PATCH https://x.io/1 -H 'X-Org: acme' -u bob:pw -k")
        assert parse_curl(to_curl(original)) == original
