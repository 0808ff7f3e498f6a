"""The :class:`HandshakeEngine` facade.

The engine owns the one :class:`httpx.AsyncClient` every module shares, and
wires together the execution pipeline, the protocol registry, the token
lifecycle manager and the health evaluator. Callers hand it
:class:`~handshake_engine.models.CredentialRecord` values and get result
values back; nothing is persisted and no background work is started.

Example::

    async with HandshakeEngine(EngineConfig(timeout_ms=10000)) as engine:
        step = await engine.authenticate(record)
        if step.kind == StepKind.REDIRECT:
            ...  # send the user to step.redirect_url
        result = await engine.execute(
            ExecutionContext(url="/user", credentials=record)
        )
        if result.updated_credentials:
            store(record)

Every public method returns a value rather than raising for protocol,
network or provider failures. An unknown ``protocol_type`` is reported as
a ``VALIDATION_ERROR`` result.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from typing import Any, Optional

import httpx

from handshake_engine.auth.base import ProtocolModule
from handshake_engine.auth.flow import AuthFlow
from handshake_engine.auth.health import HealthEvaluator
from handshake_engine.auth.lifecycle import TokenLifecycleManager
from handshake_engine.auth.registry import ProtocolRegistry, create_default_registry
from handshake_engine.client.pipeline import Clock, ExecutionPipeline, Sleeper
from handshake_engine.exceptions import HandshakeError, UnknownProtocolError
from handshake_engine.masking import mask_mapping, mask_url
from handshake_engine.models import (
    AuthFlowStep,
    AuthInjection,
    CredentialRecord,
    EngineConfig,
    ErrorCode,
    ExecutionContext,
    ExecutionResult,
    FieldDefinition,
    HealthCheckResult,
    ProtocolMetadata,
    RevocationResult,
    TokenRefreshResult,
    TokenStatus,
    ValidationResult,
    utc_now,
)

logger = logging.getLogger(__name__)


class HandshakeEngine:
    """Run authentication flows and authenticated calls for any registered protocol.

    Args:
        config: Engine-wide defaults. ``EngineConfig()`` when omitted.
        transport: Optional httpx transport, e.g. :class:`httpx.MockTransport`
            in tests.
        client: A caller-owned :class:`httpx.AsyncClient`. When given, the
            engine does not close it.
        clock: Current-time source shared by the pipeline and the
            lifecycle manager.
        sleep: Awaitable sleep used between retries.
        registry_factory: Builds the registry from the pipeline; defaults to
            :func:`~handshake_engine.auth.registry.create_default_registry`.
    """

    def __init__(
        self,
        config: Optional[EngineConfig] = None,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        client: Optional[httpx.AsyncClient] = None,
        clock: Clock = utc_now,
        sleep: Sleeper = asyncio.sleep,
        registry_factory: Callable[[ExecutionPipeline], ProtocolRegistry] = create_default_registry,
    ) -> None:
        self._config = config or EngineConfig()
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            transport=transport,
            verify=self._config.verify_ssl,
            follow_redirects=False,
        )
        self._pipeline = ExecutionPipeline(self._config, self._client, sleep=sleep, clock=clock)
        self._registry: ProtocolRegistry = registry_factory(self._pipeline)
        self._lifecycle = TokenLifecycleManager(clock)
        self._health = HealthEvaluator(self._lifecycle)

    async def __aenter__(self) -> HandshakeEngine:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    @property
    def config(self) -> EngineConfig:
        return self._config

    @property
    def registry(self) -> ProtocolRegistry:
        return self._registry

    @property
    def pipeline(self) -> ExecutionPipeline:
        return self._pipeline

    @property
    def lifecycle(self) -> TokenLifecycleManager:
        return self._lifecycle

    # ------------------------------------------------------------------ #
    # Discovery
    # ------------------------------------------------------------------ #

    def protocols(self) -> list[ProtocolMetadata]:
        """Metadata for every registered protocol, sorted by type."""
        return self._registry.list_metadata()

    def module(self, protocol_type: str) -> ProtocolModule:
        """Return the module for *protocol_type*.

        Raises:
            UnknownProtocolError: If no module is registered for it.
        """
        return self._registry.get(protocol_type)

    def fields(self, protocol_type: str) -> list[FieldDefinition]:
        """Required then optional field definitions of *protocol_type*."""
        return self.module(protocol_type).all_fields()

    def validate(self, record: CredentialRecord) -> ValidationResult:
        """Check *record* without running a flow step."""
        try:
            module = self.module(record.protocol_type)
        except UnknownProtocolError as exc:
            return ValidationResult(field_errors={"protocol_type": str(exc)})
        return module.validate_credentials(record.fields)

    def masked(self, record: CredentialRecord) -> dict[str, Any]:
        """The record's fields with every secret value masked, safe to log or display."""
        try:
            module = self.module(record.protocol_type)
        except UnknownProtocolError:
            return mask_mapping(record.fields)
        return module.masked_credentials(record)

    # ------------------------------------------------------------------ #
    # Authentication
    # ------------------------------------------------------------------ #

    async def authenticate(
        self,
        record: CredentialRecord,
        step: int = 1,
        updates: Optional[dict[str, Any]] = None,
    ) -> AuthFlowStep:
        """Run flow step *step* for *record*, merging *updates* into its fields first.

        The record's status and token fields are updated in place.
        """
        try:
            module = self.module(record.protocol_type)
        except UnknownProtocolError as exc:
            return AuthFlowStep.failed("Unknown Protocol", str(exc), ErrorCode.VALIDATION_ERROR)
        logger.debug(
            "Authenticating %s (%s) step %d", record.id, record.protocol_type, step
        )
        return await AuthFlow(module, record).step(step, updates)

    async def handle_callback(
        self, record: CredentialRecord, params: dict[str, str]
    ) -> AuthFlowStep:
        """Resume a redirect flow with the provider's callback parameters."""
        try:
            module = self.module(record.protocol_type)
        except UnknownProtocolError as exc:
            return AuthFlowStep.failed("Unknown Protocol", str(exc), ErrorCode.VALIDATION_ERROR)
        return await AuthFlow(module, record).callback(params)

    def inject(self, context: ExecutionContext) -> AuthInjection:
        """Auth material for *context* without sending anything.

        Raises:
            UnknownProtocolError: If the record's protocol is not registered.
            HandshakeError: If the module cannot build its injection.
        """
        return self.module(context.credentials.protocol_type).inject_authentication(context)

    # ------------------------------------------------------------------ #
    # Execution
    # ------------------------------------------------------------------ #

    async def execute(self, context: ExecutionContext) -> ExecutionResult:
        """Refresh the token if it is due, then send *context*.

        A refresh that fails ends the call with ``TOKEN_REFRESH_FAILED``
        before anything is sent. When a refresh succeeded the result has
        ``credentials_refreshed`` set and carries the new token fields in
        ``updated_credentials``.
        """
        record = context.credentials
        try:
            module = self.module(record.protocol_type)
        except UnknownProtocolError as exc:
            return ExecutionResult.failure(str(exc), ErrorCode.VALIDATION_ERROR)

        outcome = await self._lifecycle.ensure_fresh(module, record)
        if not outcome.ok:
            return ExecutionResult.failure(
                f"Token refresh failed: {outcome.error}", ErrorCode.TOKEN_REFRESH_FAILED
            )

        logger.debug(
            "Executing %s %s for %s", context.method, mask_url(context.url), record.id
        )
        try:
            result = await module.execute_request(context)
        except HandshakeError as exc:
            result = ExecutionResult.failure(str(exc), exc.error_code or ErrorCode.PROVIDER_ERROR)
        except httpx.HTTPError as exc:
            result = ExecutionResult.failure(f"Network error: {exc}", ErrorCode.NETWORK_ERROR)

        if outcome.refreshed:
            result = result.model_copy(
                update={
                    "credentials_refreshed": True,
                    "updated_credentials": record.token_snapshot(),
                }
            )
        return result

    # ------------------------------------------------------------------ #
    # Token lifecycle and health
    # ------------------------------------------------------------------ #

    async def refresh(self, record: CredentialRecord) -> TokenRefreshResult:
        """Refresh *record*'s token now, whether or not it has expired."""
        try:
            module = self.module(record.protocol_type)
        except UnknownProtocolError as exc:
            return TokenRefreshResult(success=False, error=str(exc))
        return await self._lifecycle.refresh(module, record)

    async def revoke(self, record: CredentialRecord) -> RevocationResult:
        """Revoke *record*'s tokens (best effort) and clear them locally."""
        try:
            module = self.module(record.protocol_type)
        except UnknownProtocolError as exc:
            return RevocationResult(success=False, error=str(exc))
        try:
            result = await module.revoke_tokens(record)
        except (HandshakeError, httpx.HTTPError) as exc:
            logger.warning("Revocation for %s failed: %s", record.id, exc)
            record.clear_tokens()
            result = RevocationResult(success=False, error=str(exc))
        self._lifecycle.forget(record.id)
        return result

    def is_token_expired(self, record: CredentialRecord) -> bool:
        return self.module(record.protocol_type).is_token_expired(record)

    async def health_check(self, record: CredentialRecord) -> HealthCheckResult:
        """Probe *record* cheaply; see :class:`~handshake_engine.auth.health.HealthEvaluator`."""
        try:
            module = self.module(record.protocol_type)
        except UnknownProtocolError as exc:
            return HealthCheckResult(
                healthy=False, message=str(exc), token_status=TokenStatus.INVALID
            )
        return await self._health.evaluate(module, record)
