"""Tests for ``{{name}}`` placeholder discovery and substitution."""

from __future__ import annotations

import re

from conftest import T0

from handshake_engine.placeholders import find_placeholders, substitute, substitute_mapping


def _clock():
    return T0


class TestFindPlaceholders:
    def test_distinct_in_order(self):
        assert find_placeholders("{{b}}/{{a}}/{{b}}/{{ $uuid }}") == ["b", "a", "$uuid"]

    def test_no_placeholders(self):
        assert find_placeholders("https://api.example.com") == []

    def test_single_braces_ignored(self):
        assert find_placeholders('{"a": {b}}') == []


class TestSubstitute:
    def test_replaces_known_values(self):
        result = substitute("https://api.x.com/{{org}}/{{ id }}", {"org": "acme", "id": 42})
        assert result.output == "https://api.x.com/acme/42"
        assert result.replaced == ["org", "id"]
        assert result.complete

    def test_unresolved_left_verbatim(self):
        result = substitute("{{a}}/{{b}}/{{a}}", {"a": "1"})
        assert result.output == "1/{{b}}/1"
        assert result.unresolved == ["b"]
        assert not result.complete

    def test_none_value_is_unresolved(self):
        result = substitute("{{a}}", {"a": None})
        assert result.output == "{{a}}"
        assert result.unresolved == ["a"]

    def test_date_time_builtins_use_clock(self):
        result = substitute("{{$date}} {{$time}} {{$unix_timestamp}}", {}, clock=_clock)
        assert result.output == f"2026-01-15 12:00:00 {int(T0.timestamp())}"

    def test_timestamp_builtin(self):
        assert substitute("{{$timestamp}}", {}, clock=_clock).output == T0.isoformat()

    def test_random_builtins(self):
        result = substitute("{{$uuid}}|{{$random}}", {})
        uuid_part, random_part = result.output.split("|")
        assert re.fullmatch(r"[0-9a-f-]{36}", uuid_part)
        assert re.fullmatch(r"[0-9a-f]{32}", random_part)

    def test_caller_value_overrides_builtin(self):
        assert substitute("{{$date}}", {"$date": "yesterday"}).output == "yesterday"

    def test_unknown_builtin_unresolved(self):
        assert substitute("{{$nope}}", {}).unresolved == ["$nope"]


class TestSubstituteMapping:
    def test_collects_unresolved_across_values(self):
        data, unresolved = substitute_mapping(
            {"Authorization": "Bearer {{token}}", "X-Org": "{{org}}", "X-Other": "{{token}}"},
            {"org": "acme"},
        )
        assert data["X-Org"] == "acme"
        assert data["Authorization"] == "Bearer {{token}}"
        assert unresolved == ["token"]
