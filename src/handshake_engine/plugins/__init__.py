"""Built-in protocol modules.

Each subpackage holds one :class:`~handshake_engine.auth.base.ProtocolModule`
implementation in its ``plugin.py``. They are registered together by
:func:`~handshake_engine.auth.registry.create_default_registry`.
"""
