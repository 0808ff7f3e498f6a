"""Protocol commands -- list the registered protocols and their fields.

Provides the ``handshake protocols`` sub-command group. Both commands are
read-only and never touch the network::

    handshake protocols list
    handshake protocols fields github
"""

from __future__ import annotations

import asyncio

import typer

from handshake_engine.engine import HandshakeEngine
from handshake_engine.exceptions import UnknownProtocolError
from handshake_engine.models import FieldDefinition, ProtocolMetadata
from handshake_engine.output import error, print_table, suggest

protocols_app = typer.Typer(no_args_is_help=True)


async def _metadata() -> list[ProtocolMetadata]:
    async with HandshakeEngine() as engine:
        return engine.protocols()


async def _fields(protocol_type: str) -> list[FieldDefinition]:
    async with HandshakeEngine() as engine:
        return engine.fields(protocol_type)


def _flag(value: bool) -> str:
    return "yes" if value else "-"


@protocols_app.command("list")
def protocols_list() -> None:
    """List every registered protocol with its capability flags."""
    rows = []
    for meta in asyncio.run(_metadata()):
        caps = meta.capabilities
        name = f"{meta.display_name} (deprecated)" if meta.deprecated else meta.display_name
        rows.append(
            [
                meta.type,
                name,
                _flag(caps.supports_redirect_flow),
                _flag(caps.supports_token_refresh),
                _flag(caps.supports_token_revocation),
                _flag(caps.supports_pkce),
            ]
        )
    print_table(
        ["Type", "Name", "Redirect", "Refresh", "Revoke", "PKCE"],
        rows,
        title="Protocols",
    )


@protocols_app.command("fields")
def protocols_fields(
    protocol_type: str = typer.Argument(help="Protocol type, e.g. 'api-key'."),
) -> None:
    """Show the field definitions of one protocol.

    Raises:
        typer.Exit: With code 2 for an unknown protocol type.
    """
    try:
        definitions = asyncio.run(_fields(protocol_type))
    except UnknownProtocolError as exc:
        error(str(exc))
        suggest("Run: handshake protocols list")
        raise typer.Exit(code=exc.exit_code) from None

    rows = []
    for d in definitions:
        condition = ""
        if d.visible_when is not None:
            rule = d.visible_when
            condition = f"{rule.field} {rule.operator.value} {rule.value!r}"
        rows.append(
            [
                d.id,
                d.kind.value,
                "yes" if d.required else "-",
                "" if d.default is None else str(d.default),
                condition,
                d.label,
            ]
        )
    print_table(
        ["Field", "Kind", "Required", "Default", "Visible when", "Label"],
        rows,
        title=f"Fields for {protocol_type}",
    )
