"""Shared test fixtures for handshake_engine.

Provides a fixed clock, a recording sleep, a call-recording
``httpx.MockTransport`` factory, engine and pipeline builders, isolated
config directories and a CLI runner. These fixtures are discovered by
pytest and available to all test modules without explicit imports.
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

import httpx
import pytest

from handshake_engine.auth.base import ProtocolModule
from handshake_engine.client.pipeline import ExecutionPipeline
from handshake_engine.engine import HandshakeEngine
from handshake_engine.models import (
    AuthFlowStep,
    AuthInjection,
    CredentialRecord,
    EngineConfig,
    FieldDefinition,
    FieldKind,
    FieldOption,
    ProtocolCapabilities,
    ProtocolMetadata,
    StepKind,
    TokenRefreshResult,
    VisibilityRule,
)
from handshake_engine.output import OutputFormat, OutputManager, reset_output, set_output

T0 = datetime(2026, 1, 15, 12, 0, 0, tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# Auto-reset global output state between tests
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def _reset_output_between_tests() -> None:
    """Reset the global OutputManager after every test.

    The OutputManager caches references to sys.stdout/sys.stderr at
    creation time. When Typer's CliRunner redirects those streams the
    cached references go stale, so a fresh manager is created on next use.
    """
    yield
    reset_output()


# ---------------------------------------------------------------------------
# Time
# ---------------------------------------------------------------------------


class FakeClock:
    """A settable clock. Call it to read the time; :meth:`advance` to move it."""

    def __init__(self, now: datetime = T0) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class RecordingSleep:
    """Awaitable sleep that records delays instead of waiting."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def sleep() -> RecordingSleep:
    return RecordingSleep()


# ---------------------------------------------------------------------------
# HTTP
# ---------------------------------------------------------------------------


class Recorder:
    """Wraps a handler in an ``httpx.MockTransport`` and keeps every request it saw."""

    def __init__(self, handler: Callable[[httpx.Request], httpx.Response]) -> None:
        self.requests: list[httpx.Request] = []
        self._handler = handler
        self.transport = httpx.MockTransport(self._handle)

    def _handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self._handler(request)

    @property
    def calls(self) -> int:
        return len(self.requests)

    @property
    def last(self) -> httpx.Request:
        return self.requests[-1]


def json_response(data: Any, status_code: int = 200, **kwargs: Any) -> httpx.Response:
    """Build an ``httpx.Response`` with a JSON body."""
    return httpx.Response(status_code, json=data, **kwargs)


def form_of(request: httpx.Request) -> dict[str, str]:
    """Decode a form-encoded request body."""
    from urllib.parse import parse_qsl

    return dict(parse_qsl(request.content.decode()))


def body_of(request: httpx.Request) -> Any:
    return json.loads(request.content.decode())


@pytest.fixture
def recorder() -> Callable[[Callable[[httpx.Request], httpx.Response]], Recorder]:
    """Factory: ``recorder(handler)`` returns a :class:`Recorder`."""
    return Recorder


@pytest.fixture
def make_engine(clock: FakeClock, sleep: RecordingSleep):
    """Factory for engines wired to a mock transport, the fake clock and the recording sleep."""

    def _make(handler_or_recorder: Any, config: EngineConfig | None = None) -> HandshakeEngine:
        rec = (
            handler_or_recorder
            if isinstance(handler_or_recorder, Recorder)
            else Recorder(handler_or_recorder)
        )
        return HandshakeEngine(
            config or EngineConfig(),
            transport=rec.transport,
            clock=clock,
            sleep=sleep,
        )

    return _make


@pytest.fixture
def make_pipeline(clock: FakeClock, sleep: RecordingSleep):
    """Factory for a bare :class:`ExecutionPipeline` over a mock transport."""

    def _make(rec: Recorder, config: EngineConfig | None = None) -> ExecutionPipeline:
        client = httpx.AsyncClient(transport=rec.transport)
        return ExecutionPipeline(config or EngineConfig(), client, sleep=sleep, clock=clock)

    return _make


def record_for(protocol_type: str, **fields: Any) -> CredentialRecord:
    return CredentialRecord(id=f"{protocol_type}-test", protocol_type=protocol_type, fields=fields)


# ---------------------------------------------------------------------------
# Config isolation fixture
# ---------------------------------------------------------------------------


@pytest.fixture
def isolated_config(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Point XDG_CONFIG_HOME at a temporary directory and chdir there."""
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "config"))
    monkeypatch.chdir(tmp_path)
    return tmp_path


# ---------------------------------------------------------------------------
# Output fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def quiet_output() -> OutputManager:
    """Install a PLAIN-format, quiet OutputManager for the test."""
    output = OutputManager(format=OutputFormat.PLAIN, quiet=True)
    set_output(output)
    yield output
    reset_output()


@pytest.fixture
def cli_runner():
    """Typer CLI test runner."""
    from typer.testing import CliRunner

    return CliRunner()


# ---------------------------------------------------------------------------
# A minimal protocol module for exercising the auth machinery
# ---------------------------------------------------------------------------


class StubModule(ProtocolModule):
    """Configurable module: fixed steps, counted refreshes, ``X-Key`` injection."""

    def __init__(
        self,
        pipeline: ExecutionPipeline,
        steps: dict[int, AuthFlowStep] | None = None,
        refresh: TokenRefreshResult | None = None,
        supports_refresh: bool = True,
        deprecated: bool = False,
    ) -> None:
        super().__init__(pipeline)
        self.steps = steps or {1: AuthFlowStep(kind=StepKind.COMPLETE, title="Done")}
        self.refresh_result = refresh
        self.refresh_calls = 0
        self._supports_refresh = supports_refresh
        self._deprecated = deprecated

    def metadata(self) -> ProtocolMetadata:
        return ProtocolMetadata(
            type="stub",
            display_name="Stub",
            description="Test module",
            deprecated=self._deprecated,
            capabilities=ProtocolCapabilities(supports_token_refresh=self._supports_refresh),
        )

    def required_fields(self) -> list[FieldDefinition]:
        return [
            FieldDefinition(id="apiKey", label="API Key", kind=FieldKind.SECRET, required=True),
            FieldDefinition(
                id="extra",
                label="Extra",
                required=True,
                visible_when=VisibilityRule(field="mode", value="b"),
            ),
        ]

    def optional_fields(self) -> list[FieldDefinition]:
        return [
            FieldDefinition(
                id="mode",
                label="Mode",
                kind=FieldKind.SELECT,
                default="a",
                options=[FieldOption(value="a", label="A"), FieldOption(value="b", label="B")],
            ),
            FieldDefinition(id="count", label="Count", kind=FieldKind.NUMBER, min=1, max=10),
        ]

    async def authenticate(self, record: CredentialRecord, step: int = 1) -> AuthFlowStep:
        return self.steps[step]

    def inject_authentication(self, context) -> AuthInjection:
        return AuthInjection(headers={"X-Key": context.credentials.get("apiKey", "")})

    async def refresh_tokens(self, record: CredentialRecord) -> TokenRefreshResult:
        self.refresh_calls += 1
        await asyncio.sleep(0)
        if self.refresh_result is not None:
            return self.refresh_result
        return TokenRefreshResult(
            success=True,
            access_token=f"fresh-{self.refresh_calls}",
            expires_at=self.now() + timedelta(hours=1),
        )


@pytest.fixture
def stub_module(make_pipeline, recorder):
    """A :class:`StubModule` whose pipeline answers every request with ``{}``."""
    return StubModule(make_pipeline(recorder(lambda r: json_response({}))))
