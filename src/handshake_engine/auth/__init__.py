"""Protocol module contract and the machinery that drives it.

This package defines what every authentication protocol must implement
and the components that drive those implementations: the registry, the
authentication state machine, the token lifecycle manager and the health
evaluator.

The main entry points are:

- :class:`ProtocolModule` -- abstract base class for protocol modules.
- :class:`ProtocolRegistry` -- maps protocol type strings to module
  instances; :func:`create_default_registry` pre-loads the built-ins.
- :class:`AuthFlow` -- validates a record and advances it through the
  flow steps, enforcing legal status transitions.
- :class:`TokenLifecycleManager` -- refresh-before-use, serialised per
  handshake.
- :class:`HealthEvaluator` -- cheap, bounded credential probes.

Typical usage::

    registry = create_default_registry(pipeline)
    flow = AuthFlow(registry.get(record.protocol_type), record)
    step = await flow.step(1)
"""

from handshake_engine.auth.base import ProtocolModule
from handshake_engine.auth.flow import AuthFlow, can_transition, transition
from handshake_engine.auth.health import HealthEvaluator
from handshake_engine.auth.lifecycle import RefreshOutcome, TokenLifecycleManager
from handshake_engine.auth.registry import ProtocolRegistry, create_default_registry

__all__ = [
    "AuthFlow",
    "HealthEvaluator",
    "ProtocolModule",
    "ProtocolRegistry",
    "RefreshOutcome",
    "TokenLifecycleManager",
    "can_transition",
    "create_default_registry",
    "transition",
]
