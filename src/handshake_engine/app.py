"""Typer application and CLI entry point for handshake_engine.

This module wires together the top-level Typer application and registers
the built-in commands (``protocols``, ``auth``, ``callback``, ``exec``,
``health``, ``refresh``, ``revoke``, ``show``, ``mask``).

The :func:`main` function is the console-script entry point declared in
``pyproject.toml``. It installs a SIGINT handler, invokes the Typer app,
and turns any :class:`~handshake_engine.exceptions.HandshakeError` that
escapes a command into a clean exit with the error's ``exit_code``.

See Also:
    :mod:`handshake_engine.output`: Output formatting initialised in
    :func:`main_callback`.
"""

from __future__ import annotations

import logging
import signal
import sys
from typing import Any

import typer

from handshake_engine import __version__
from handshake_engine.exit_codes import EXIT_GENERIC_FAILURE

app = typer.Typer(
    name="handshake",
    help="Authenticate against third-party APIs and run authenticated calls.",
    no_args_is_help=True,
    add_completion=False,
    rich_markup_mode="rich",
)

# ------------------------------------------------------------------ #
# Commands
# ------------------------------------------------------------------ #

from handshake_engine.commands.handshake import (  # noqa: E402
    auth_command,
    callback_command,
    exec_command,
    health_command,
    mask_command,
    refresh_command,
    revoke_command,
    show_command,
)
from handshake_engine.commands.protocols import protocols_app  # noqa: E402

app.add_typer(protocols_app, name="protocols", help="Inspect registered protocols.")
app.command("auth")(auth_command)
app.command("callback")(callback_command)
app.command("exec")(exec_command)
app.command("health")(health_command)
app.command("refresh")(refresh_command)
app.command("revoke")(revoke_command)
app.command("show")(show_command)
app.command("mask")(mask_command)


def _version_callback(value: bool) -> None:
    """Print version and exit when --version is passed."""
    if value:
        typer.echo(f"handshake {__version__}")
        raise typer.Exit()


@app.callback()
def main_callback(
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        callback=_version_callback,
        is_eager=True,
        help="Show version and exit.",
    ),
    json_output: bool = typer.Option(False, "--json", help="JSON output format."),
    plain_output: bool = typer.Option(False, "--plain", help="Plain text output."),
    no_color: bool = typer.Option(False, "--no-color", help="Disable color output."),
    quiet: bool = typer.Option(False, "--quiet", "-q", help="Suppress non-essential output."),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug output."),
) -> None:
    """Root callback executed before every sub-command.

    Installs the global :class:`~handshake_engine.output.OutputManager`
    from the CLI flags. ``--verbose`` also turns on ``DEBUG`` logging for
    the ``handshake_engine`` loggers.
    """
    from handshake_engine.output import OutputFormat, OutputManager, set_output

    fmt = OutputFormat.AUTO
    if json_output:
        fmt = OutputFormat.JSON
    elif plain_output:
        fmt = OutputFormat.PLAIN

    set_output(OutputManager(format=fmt, no_color=no_color, quiet=quiet, verbose=verbose))

    if verbose:
        logging.basicConfig(
            level=logging.WARNING,
            stream=sys.stderr,
            format="%(levelname)s %(name)s: %(message)s",
        )
        logging.getLogger("handshake_engine").setLevel(logging.DEBUG)

    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose


def _setup_signal_handlers() -> None:
    """Install a SIGINT handler so Ctrl-C exits cleanly."""

    def _handler(signum: int, frame: Any) -> None:  # noqa: ANN401
        sys.stderr.write("\nCancelled.\n")
        sys.exit(130)

    signal.signal(signal.SIGINT, _handler)


def main() -> None:
    """CLI entry point invoked by the ``handshake`` console script.

    Raises:
        SystemExit: Always raised (either by Typer or explicitly).
    """
    _setup_signal_handlers()
    try:
        app()
    except SystemExit:
        raise
    except KeyboardInterrupt:
        sys.stderr.write("\nCancelled.\n")
        sys.exit(130)
    except Exception as exc:
        from handshake_engine.exceptions import HandshakeError
        from handshake_engine.output import error

        if isinstance(exc, HandshakeError):
            error(str(exc))
            sys.exit(exc.exit_code)
        error(f"Unexpected error: {exc}")
        sys.exit(EXIT_GENERIC_FAILURE)
