"""Handshake commands -- drive the engine against a credential record file.

Every command takes the path of a JSON credential record::

    {
      "id": "gh-main",
      "protocol_type": "github",
      "fields": {"authMethod": "pat", "token": "env:GITHUB_TOKEN"}
    }

Field values written as ``env:NAME`` or ``file:PATH`` are resolved before
the engine sees them and are written back unchanged. When a command
changes the record (status, tokens, flow state) the file is rewritten
atomically.

Typical workflow::

    handshake auth github.json
    handshake exec github.json --url /user
    handshake health github.json
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any, Optional, TypeVar

import typer

from handshake_engine.config import load_engine_config, load_record, resolve_fields, save_record
from handshake_engine.engine import HandshakeEngine
from handshake_engine.curl import parse_curl, to_curl
from handshake_engine.exceptions import HandshakeError, ParseError, exit_code_for
from handshake_engine.exit_codes import EXIT_GENERIC_FAILURE, EXIT_INVALID_USAGE
from handshake_engine.masking import mask_template
from handshake_engine.models import (
    CredentialRecord,
    ErrorCode,
    ExecutionContext,
    StepKind,
)
from handshake_engine.output import (
    debug,
    error,
    format_response,
    get_output,
    info,
    success,
    suggest,
    warning,
)

T = TypeVar("T")

RECORD_ARG = typer.Argument(help="Path to the credential record JSON file.")


def make_engine() -> HandshakeEngine:
    """Build the engine used by every command. Tests replace this to inject a transport."""
    return HandshakeEngine(load_engine_config())


# ------------------------------------------------------------------ #
# Helpers
# ------------------------------------------------------------------ #


def _parse_pairs(values: Optional[list[str]], sep: str = "=") -> dict[str, str]:
    """Parse ``key=value`` (or ``Key: Value``) options into a dict."""
    pairs: dict[str, str] = {}
    for item in values or []:
        if sep not in item:
            raise typer.BadParameter(f"Expected 'name{sep}value', got {item!r}")
        key, _, value = item.partition(sep)
        pairs[key.strip()] = value.strip()
    return pairs


def _parse_body(body: Optional[str]) -> Any:
    """Parse *body* as JSON if possible, returning the raw string on failure."""
    if body is None:
        return None
    try:
        return json.loads(body)
    except (json.JSONDecodeError, TypeError):
        return body


def _open(path: Path) -> tuple[CredentialRecord, dict[str, Any]]:
    """Load the record at *path* with credential references resolved.

    Returns:
        The working record and its fields as stored on disk.
    """
    try:
        record = load_record(path)
        stored = dict(record.fields)
        record.fields = resolve_fields(record.fields)
    except HandshakeError as exc:
        error(str(exc))
        raise typer.Exit(code=exc.exit_code) from None
    return record, stored


def _persist(record: CredentialRecord, stored: dict[str, Any], path: Path) -> None:
    """Write *record* back, keeping ``env:``/``file:`` references in place of their values."""
    fields = dict(record.fields)
    for key, value in stored.items():
        if isinstance(value, str) and value.startswith(("env:", "file:")) and key in fields:
            fields[key] = value
    save_record(record.model_copy(update={"fields": fields}), path)
    debug(f"Saved {path}")


def _run(
    path: Path,
    action: Callable[[HandshakeEngine, CredentialRecord], Awaitable[T]],
    updates: Optional[dict[str, Any]] = None,
) -> tuple[T, CredentialRecord]:
    """Run *action* against the record at *path*, saving the record if it changed."""
    record, stored = _open(path)
    if updates:
        stored.update(updates)
    before = record.model_dump(mode="json")

    async def _go() -> T:
        async with make_engine() as engine:
            return await action(engine, record)

    result = asyncio.run(_go())
    if updates or record.model_dump(mode="json") != before:
        _persist(record, stored, path)
    return result, record


def _exit_for(error_code: Optional[ErrorCode], message: Optional[str]) -> None:
    error(message or "Operation failed")
    raise typer.Exit(code=exit_code_for(error_code))


# ------------------------------------------------------------------ #
# Commands
# ------------------------------------------------------------------ #


def auth_command(
    record_path: Path = RECORD_ARG,
    step: int = typer.Option(1, "--step", min=1, help="Flow step to run."),
    set_values: Optional[list[str]] = typer.Option(
        None, "--set", help="Field value for this step, as name=value. Repeatable."
    ),
) -> None:
    """Run one authentication flow step.

    A redirect step prints the authorization URL; finish the flow with
    ``handshake callback``.
    """
    updates = _parse_pairs(set_values)

    async def _action(engine: HandshakeEngine, record: CredentialRecord):  # noqa: ANN202
        return await engine.authenticate(record, step, resolve_fields(updates) if updates else None)

    result, record = _run(record_path, _action, updates)
    format_response(result.model_dump(mode="json", exclude_none=True))

    if result.kind == StepKind.ERROR:
        for field_id, message in result.field_errors.items():
            debug(f"{field_id}: {message}")
        _exit_for(result.error_code, result.error)
    if result.kind == StepKind.REDIRECT:
        info(f"Open this URL to continue: {result.redirect_url}")
        suggest(f"Then run: handshake callback {record_path} --param code=... --param state=...")
    elif result.kind == StepKind.PROMPT:
        suggest(f"Then run: handshake auth {record_path} --step {result.step + 1} --set name=value")
    else:
        success(f"{result.title} ({record.status.value})")


def callback_command(
    record_path: Path = RECORD_ARG,
    params: Optional[list[str]] = typer.Option(
        None, "--param", "-p", help="Callback parameter as name=value. Repeatable."
    ),
) -> None:
    """Feed provider redirect data (code, state, error, access_token) into the flow."""
    values = _parse_pairs(params)
    if not values:
        error("At least one --param is required")
        raise typer.Exit(code=EXIT_INVALID_USAGE)

    async def _action(engine: HandshakeEngine, record: CredentialRecord):  # noqa: ANN202
        return await engine.handle_callback(record, values)

    result, record = _run(record_path, _action)
    format_response(result.model_dump(mode="json", exclude_none=True))
    if result.kind == StepKind.ERROR:
        _exit_for(result.error_code, result.error)
    success(f"{result.title} ({record.status.value})")


def exec_command(
    record_path: Path = RECORD_ARG,
    url: str = typer.Option(..., "--url", help="Absolute URL or path relative to the base URL."),
    method: str = typer.Option("GET", "-X", "--method", help="HTTP method."),
    headers: Optional[list[str]] = typer.Option(
        None, "-H", "--header", help="Request header as 'Name: value'. Repeatable."
    ),
    data: Optional[str] = typer.Option(None, "-d", "--data", help="Request body (JSON or text)."),
    query: Optional[list[str]] = typer.Option(
        None, "-q", "--query", help="Query parameter as name=value. Repeatable."
    ),
    variables: Optional[list[str]] = typer.Option(
        None, "--var", help="Placeholder value as name=value. Repeatable."
    ),
    timeout: Optional[int] = typer.Option(None, "--timeout", help="Timeout in milliseconds."),
    full: bool = typer.Option(False, "--full", help="Print the whole result, not just the body."),
) -> None:
    """Execute one authenticated request."""
    header_map = _parse_pairs(headers, sep=":")
    query_map = _parse_pairs(query)
    var_map = _parse_pairs(variables)
    body = _parse_body(data)

    async def _action(engine: HandshakeEngine, record: CredentialRecord):  # noqa: ANN202
        context = ExecutionContext(
            url=url,
            method=method.upper(),
            headers=header_map,
            body=body,
            query_params=query_map,
            credentials=record,
            timeout_ms=timeout,
            variables=var_map,
        )
        return await engine.execute(context)

    result, _ = _run(record_path, _action)

    debug(f"{method.upper()} {url} -> {result.status_code} in {result.duration_ms:.0f}ms")
    if result.unresolved_placeholders:
        warning(f"Unresolved placeholders: {', '.join(result.unresolved_placeholders)}")
    if result.credentials_refreshed:
        info("Token refreshed and saved")

    if full:
        format_response(result.model_dump(mode="json", exclude={"raw_body"}))
    elif result.body is not None:
        format_response(result.body)

    if not result.success:
        code = result.error_code or ErrorCode.PROVIDER_ERROR
        _exit_for(code, result.error or f"HTTP {result.status_code}")


def health_command(record_path: Path = RECORD_ARG) -> None:
    """Run a cheap health probe for the record."""

    async def _action(engine: HandshakeEngine, record: CredentialRecord):  # noqa: ANN202
        return await engine.health_check(record)

    result, _ = _run(record_path, _action)
    format_response(result.model_dump(mode="json"))
    if not result.healthy:
        error(result.message)
        raise typer.Exit(code=EXIT_GENERIC_FAILURE)
    success(result.message)


def refresh_command(record_path: Path = RECORD_ARG) -> None:
    """Refresh the record's token now."""

    async def _action(engine: HandshakeEngine, record: CredentialRecord):  # noqa: ANN202
        return await engine.refresh(record)

    result, _ = _run(record_path, _action)
    if not result.success:
        if result.requires_reauth:
            suggest(f"Re-authenticate with: handshake auth {record_path}")
        _exit_for(ErrorCode.TOKEN_REFRESH_FAILED, result.error)
    if result.access_token is None:
        info("Nothing to refresh for this protocol")
        return
    expires = result.expires_at.isoformat() if result.expires_at else "never"
    success(f"Token refreshed (expires {expires})")


def revoke_command(record_path: Path = RECORD_ARG) -> None:
    """Revoke the record's tokens and clear them from the file."""

    async def _action(engine: HandshakeEngine, record: CredentialRecord):  # noqa: ANN202
        return await engine.revoke(record)

    result, _ = _run(record_path, _action)
    if not result.success:
        warning(f"Remote revocation failed: {result.error}")
    where = "remotely and locally" if result.revoked_remotely else "locally"
    success(f"Tokens revoked {where}")


def show_command(record_path: Path = RECORD_ARG) -> None:
    """Print the record with every secret masked, plus its validation state."""
    record, _ = _open(record_path)

    async def _go() -> dict[str, Any]:
        async with make_engine() as engine:
            validation = engine.validate(record)
            return {
                "id": record.id,
                "protocol_type": record.protocol_type,
                "status": record.status.value,
                "fields": engine.masked(record),
                "has_access_token": record.access_token is not None,
                "expires_at": record.expires_at.isoformat() if record.expires_at else None,
                "valid": validation.valid,
                "field_errors": validation.field_errors,
            }

    format_response(asyncio.run(_go()))


def mask_command(
    text: str = typer.Argument(help="Command template or header text."),
    normalize: bool = typer.Option(
        False, "--normalize", help="Parse TEXT as a cURL command and re-render it first."
    ),
) -> None:
    """Print TEXT with credentials masked."""
    if normalize:
        try:
            text = to_curl(parse_curl(text))
        except ParseError as exc:
            error(str(exc))
            raise typer.Exit(code=exc.exit_code) from None
    get_output().print_data(mask_template(text))
