"""Health evaluation -- a cheap, read-mostly probe of one handshake.

:class:`HealthEvaluator` applies a due refresh (the only token mutation it
ever makes), then runs the module's
:meth:`~handshake_engine.auth.base.ProtocolModule.health_check` under the
normal per-call deadline. A module that raises, or a probe that overruns
the deadline, becomes an unhealthy
:class:`~handshake_engine.models.HealthCheckResult` rather than an
exception.
"""

from __future__ import annotations

import asyncio
import logging
import time

import httpx

from handshake_engine.auth.base import ProtocolModule
from handshake_engine.auth.lifecycle import TokenLifecycleManager
from handshake_engine.exceptions import HandshakeError
from handshake_engine.models import CredentialRecord, HealthCheckResult, TokenStatus

logger = logging.getLogger(__name__)


class HealthEvaluator:
    """Runs health checks with refresh-before-probe and a bounded deadline."""

    def __init__(self, lifecycle: TokenLifecycleManager) -> None:
        self._lifecycle = lifecycle

    async def evaluate(
        self, module: ProtocolModule, record: CredentialRecord
    ) -> HealthCheckResult:
        started = time.perf_counter()
        outcome = await self._lifecycle.ensure_fresh(module, record)
        if not outcome.ok:
            return HealthCheckResult(
                healthy=False,
                message=f"Token refresh failed: {outcome.error}",
                latency_ms=self._elapsed(started),
                token_status=TokenStatus.EXPIRED,
                can_refresh=not outcome.requires_reauth,
            )

        deadline = module.pipeline.timeout_seconds()
        try:
            result = await asyncio.wait_for(module.health_check(record), timeout=deadline)
        except asyncio.TimeoutError:
            result = HealthCheckResult(
                healthy=False,
                message=f"Health check timed out after {deadline:.0f}s",
                token_status=module.local_token_status(record),
            )
        except (HandshakeError, httpx.HTTPError, ValueError) as exc:
            logger.debug("Health check for %s raised: %s", record.id, exc)
            result = HealthCheckResult(
                healthy=False,
                message=f"Health check failed: {exc}",
                token_status=TokenStatus.INVALID,
            )

        update: dict[str, object] = {}
        if not result.latency_ms:
            update["latency_ms"] = self._elapsed(started)
        if outcome.refreshed:
            update["details"] = {**result.details, "token_refreshed": True}
        return result.model_copy(update=update) if update else result

    @staticmethod
    def _elapsed(started: float) -> float:
        return (time.perf_counter() - started) * 1000.0
