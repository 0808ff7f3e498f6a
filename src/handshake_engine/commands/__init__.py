"""Built-in CLI sub-commands for handshake_engine.

This package groups the Typer command modules that form the CLI's
command tree:

* :mod:`~handshake_engine.commands.protocols` -- list protocols and their
  field definitions.
* :mod:`~handshake_engine.commands.handshake` -- authenticate, execute,
  refresh, revoke and health-check a credential record file.

``protocols`` exports a :class:`typer.Typer` sub-application; the
``handshake`` module exports plain callback functions registered directly
on the root app.
"""
