"""Authentication state machine.

A handshake moves through :class:`~handshake_engine.models.CredentialStatus`
values::

    unconfigured --> configuring --> authenticated --> expired
          |               |                               |
          +-----> error <-+-------------------------------+
                    |
                    +--> configuring   (retry from step 1)

``authenticated`` and ``expired`` may also go back to ``configuring`` when
the caller re-authenticates, and ``expired`` returns to ``authenticated``
after a successful refresh. Any other change is a programmer error and
raises :class:`~handshake_engine.exceptions.InvalidTransitionError`.

:class:`AuthFlow` drives one module through its steps:

- Before step 1 every required field is validated. A record with missing
  or invalid fields gets a terminal ``error`` step listing all of them,
  and the module is never called.
- ``complete`` moves the record to ``authenticated``; ``error`` moves it
  to ``error``; ``prompt`` and ``redirect`` keep it in ``configuring``.
- Step ``n`` of ``n`` must be terminal.
"""

from __future__ import annotations

import logging
from typing import Any, Optional

import httpx

from handshake_engine.auth.base import ProtocolModule
from handshake_engine.exceptions import HandshakeError, InvalidTransitionError
from handshake_engine.models import (
    AuthFlowStep,
    CredentialRecord,
    CredentialStatus,
    ErrorCode,
    StepKind,
)

logger = logging.getLogger(__name__)

_S = CredentialStatus

TRANSITIONS: dict[CredentialStatus, frozenset[CredentialStatus]] = {
    _S.UNCONFIGURED: frozenset({_S.CONFIGURING, _S.ERROR}),
    _S.CONFIGURING: frozenset({_S.CONFIGURING, _S.AUTHENTICATED, _S.ERROR}),
    _S.AUTHENTICATED: frozenset({_S.AUTHENTICATED, _S.EXPIRED, _S.CONFIGURING}),
    _S.EXPIRED: frozenset({_S.AUTHENTICATED, _S.CONFIGURING, _S.ERROR}),
    _S.ERROR: frozenset({_S.CONFIGURING, _S.ERROR}),
}


def can_transition(current: CredentialStatus, target: CredentialStatus) -> bool:
    return target in TRANSITIONS[current]


def transition(record: CredentialRecord, target: CredentialStatus) -> None:
    """Move *record* to *target*.

    Raises:
        InvalidTransitionError: If the change is not allowed from the
            record's current status.
    """
    current = record.status
    if not can_transition(current, target):
        raise InvalidTransitionError(
            f"Illegal status change for handshake '{record.id}': "
            f"{current.value} -> {target.value}"
        )
    if current != target:
        logger.debug("Handshake %s: %s -> %s", record.id, current.value, target.value)
    record.status = target


class AuthFlow:
    """Drives one :class:`~handshake_engine.auth.base.ProtocolModule` through its steps.

    Args:
        module: The module for ``record.protocol_type``.
        record: The caller-owned record. Its fields, status and token
            state are updated in place.
    """

    def __init__(self, module: ProtocolModule, record: CredentialRecord) -> None:
        self.module = module
        self.record = record

    async def step(
        self, step: int = 1, updates: Optional[dict[str, Any]] = None
    ) -> AuthFlowStep:
        """Merge *updates* into the record's fields and run flow step *step*.

        Args:
            step: 1-based step index. Step 1 (re)starts the flow.
            updates: Field values supplied with this step, such as the data
                payload of the previous step or provider redirect data.
        """
        if updates:
            self.record.fields.update(updates)

        if step <= 1:
            validation = self.module.validate_credentials(self.record.fields)
            if not validation.valid:
                failed = AuthFlowStep(
                    step=1,
                    total_steps=1,
                    kind=StepKind.ERROR,
                    title="Invalid Configuration",
                    description="Fix the listed fields and start again.",
                    error=self._validation_message(validation.missing_fields, validation.field_errors),
                    missing_fields=validation.missing_fields,
                    field_errors=validation.field_errors,
                    error_code=ErrorCode.VALIDATION_ERROR,
                )
                if not can_transition(self.record.status, CredentialStatus.ERROR):
                    transition(self.record, CredentialStatus.CONFIGURING)
                transition(self.record, CredentialStatus.ERROR)
                return failed
            for warning in validation.warnings:
                logger.warning(warning)

        transition(self.record, CredentialStatus.CONFIGURING)
        try:
            result = await self.module.authenticate(self.record, step)
        except HandshakeError as exc:
            result = AuthFlowStep.failed(
                "Authentication Failed",
                str(exc),
                exc.error_code or ErrorCode.AUTH_ERROR,
                step=step,
                total_steps=max(step, 1),
            )
        except httpx.HTTPError as exc:
            result = AuthFlowStep.failed(
                "Authentication Failed",
                f"Network error: {exc}",
                ErrorCode.NETWORK_ERROR,
                step=step,
                total_steps=max(step, 1),
            )
        return self._apply(result)

    async def callback(self, params: dict[str, str]) -> AuthFlowStep:
        """Resume a redirect flow with provider-returned *params*."""
        if self.record.status != CredentialStatus.CONFIGURING:
            return AuthFlowStep.failed(
                "No Flow In Progress",
                "Start the authentication flow before submitting callback data",
                ErrorCode.VALIDATION_ERROR,
            )
        try:
            result = await self.module.handle_callback(self.record, params)
        except HandshakeError as exc:
            result = AuthFlowStep.failed(
                "Callback Failed", str(exc), exc.error_code or ErrorCode.AUTH_ERROR
            )
        except httpx.HTTPError as exc:
            result = AuthFlowStep.failed(
                "Callback Failed", f"Network error: {exc}", ErrorCode.NETWORK_ERROR
            )
        return self._apply(result)

    def _apply(self, result: AuthFlowStep) -> AuthFlowStep:
        if result.step > result.total_steps:
            raise InvalidTransitionError(
                f"Module '{self.module.protocol_type}' returned step "
                f"{result.step} of {result.total_steps}"
            )
        if result.step == result.total_steps and not result.is_terminal:
            raise InvalidTransitionError(
                f"Module '{self.module.protocol_type}' returned a non-terminal "
                f"final step ({result.kind.value})"
            )

        if result.kind == StepKind.COMPLETE:
            transition(self.record, CredentialStatus.AUTHENTICATED)
        elif result.kind == StepKind.ERROR:
            transition(self.record, CredentialStatus.ERROR)
            logger.info(
                "Authentication for %s failed at step %d: %s",
                self.record.id,
                result.step,
                result.error,
            )
        return result

    @staticmethod
    def _validation_message(missing: list[str], errors: dict[str, str]) -> str:
        parts = []
        if missing:
            parts.append(f"Missing required fields: {', '.join(missing)}")
        invalid = [msg for fid, msg in errors.items() if fid not in missing]
        if invalid:
            parts.append("; ".join(invalid))
        return ". ".join(parts)
