"""Abstract base class for protocol modules.

Every authentication family (API key, OAuth variants, GitHub, SOAP, ...)
is a subclass of :class:`ProtocolModule` and exposes the same operation
set, so the engine can drive any of them without knowing which one it
holds.

To implement a new protocol, subclass :class:`ProtocolModule` and provide:

1. :meth:`~ProtocolModule.metadata` -- descriptive info and capability
   flags. ``metadata().type`` is the registry key.
2. :meth:`~ProtocolModule.required_fields` (and optionally
   :meth:`~ProtocolModule.optional_fields`).
3. :meth:`~ProtocolModule.authenticate` -- one step of the login flow.
4. :meth:`~ProtocolModule.inject_authentication` -- the headers, query
   parameters and body fragment that authenticate one outgoing call.

Everything else has a working default: validation driven by the field
definitions, request execution through the shared
:class:`~handshake_engine.client.pipeline.ExecutionPipeline`, no-op refresh,
local-only revocation, expiry queries derived from the record, and a
configuration-only health check.

Modules keep no per-handshake state on the instance. Anything a flow needs
to carry between steps (PKCE verifier, OAuth ``state``, installation
token) is written to the :class:`~handshake_engine.models.CredentialRecord`
the caller hands in.

See Also:
    :mod:`handshake_engine.auth.registry` for registration and lookup.
"""

from __future__ import annotations

import json
import re
import time
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Optional
from urllib.parse import urlsplit

from handshake_engine.client.pipeline import ExecutionPipeline, RetryPolicy
from handshake_engine.exceptions import HandshakeError, ValidationError_
from handshake_engine.masking import mask_mapping
from handshake_engine.models import (
    AuthFlowStep,
    AuthInjection,
    CredentialRecord,
    ErrorCode,
    ExecutionContext,
    ExecutionResult,
    FieldDefinition,
    FieldKind,
    HealthCheckResult,
    ProtocolMetadata,
    RevocationResult,
    TokenRefreshResult,
    TokenStatus,
    ValidationResult,
)

_URL_SCHEMES = ("http", "https", "ws", "wss")


def _is_empty(value: Any) -> bool:
    return value is None or value == "" or value == [] or value == {}


def field_int(record: CredentialRecord, field_id: str, default: int) -> int:
    """Read an integer field that may have been supplied as a string."""
    value = record.get(field_id)
    if value is None:
        return default
    try:
        return int(float(value))
    except (TypeError, ValueError) as exc:
        raise ValidationError_(f"Field '{field_id}' must be a number, got {value!r}") from exc


def field_bool(record: CredentialRecord, field_id: str, default: bool) -> bool:
    """Read a checkbox field that may have been supplied as a string."""
    value = record.get(field_id)
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ("1", "true", "yes", "on")


def field_json(record: CredentialRecord, field_id: str) -> dict[str, Any]:
    """Read a JSON-object field, accepting either a dict or its JSON text."""
    value = record.get(field_id)
    if value is None:
        return {}
    if isinstance(value, dict):
        return value
    try:
        parsed = json.loads(str(value))
    except ValueError as exc:
        raise ValidationError_(f"Field '{field_id}' is not valid JSON: {exc}") from exc
    if not isinstance(parsed, dict):
        raise ValidationError_(f"Field '{field_id}' must be a JSON object")
    return parsed


def field_list(record: CredentialRecord, field_id: str) -> list[str]:
    """Read a scopes-style field given as a list or a space/comma separated string."""
    value = record.get(field_id)
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return [str(v) for v in value if str(v)]
    return [part for part in re.split(r"[\s,]+", str(value)) if part]


class ProtocolModule(ABC):
    """Abstract base class for protocol modules.

    Args:
        pipeline: The shared execution pipeline. Modules use it for
            :meth:`execute_request` and reach its
            :attr:`~handshake_engine.client.pipeline.ExecutionPipeline.client`
            for token-endpoint calls.
    """

    #: Record field keys holding per-flow secrets (PKCE verifier, state).
    #: Masked alongside secret field definitions.
    flow_state_keys: tuple[str, ...] = ()

    def __init__(self, pipeline: ExecutionPipeline) -> None:
        self._pipeline = pipeline

    @property
    def pipeline(self) -> ExecutionPipeline:
        return self._pipeline

    @property
    def protocol_type(self) -> str:
        """The registry key, taken from :meth:`metadata`."""
        return self.metadata().type

    @property
    def supports_refresh(self) -> bool:
        return self.metadata().capabilities.supports_token_refresh

    def now(self) -> datetime:
        """Current time from the pipeline's injected clock."""
        return self._pipeline.clock()

    # ------------------------------------------------------------------ #
    # Static description
    # ------------------------------------------------------------------ #

    @abstractmethod
    def metadata(self) -> ProtocolMetadata:
        """Return static descriptive info and capability flags."""
        ...

    @abstractmethod
    def required_fields(self) -> list[FieldDefinition]:
        """Return the fields that must be filled in before authenticating."""
        ...

    def optional_fields(self) -> list[FieldDefinition]:
        return []

    def all_fields(self) -> list[FieldDefinition]:
        """Required then optional fields, each group sorted by ``order``."""
        required = sorted(self.required_fields(), key=lambda f: f.order)
        optional = sorted(self.optional_fields(), key=lambda f: f.order)
        return required + optional

    def secret_field_ids(self) -> list[str]:
        return [f.id for f in self.all_fields() if f.is_secret]

    def effective_fields(self, fields: dict[str, Any]) -> dict[str, Any]:
        """*fields* with declared defaults filled in for unset entries."""
        merged = {d.id: d.default for d in self.all_fields() if d.default is not None}
        merged.update({k: v for k, v in fields.items() if not _is_empty(v)})
        return merged

    def setting(self, record: CredentialRecord, field_id: str) -> Any:
        """A record field, falling back to the declared default."""
        value = record.get(field_id)
        if value is not None:
            return value
        for definition in self.all_fields():
            if definition.id == field_id:
                return definition.default
        return None

    def validate_credentials(self, fields: dict[str, Any]) -> ValidationResult:
        """Check *fields* against the declared field definitions.

        Every problem is collected; validation never stops at the first.
        Fields hidden by their ``visible_when`` rule are neither required
        nor checked, and declared defaults count as values. Unknown keys in
        *fields* are ignored.

        Returns:
            A :class:`~handshake_engine.models.ValidationResult`.
        """
        result = ValidationResult()
        if self.metadata().deprecated:
            result.warnings.append(
                f"Protocol '{self.protocol_type}' is deprecated; prefer a modern alternative"
            )

        effective = self.effective_fields(fields)
        for definition in self.all_fields():
            if not definition.is_visible(effective):
                continue
            value = effective.get(definition.id)
            if _is_empty(value):
                if definition.required:
                    result.missing_fields.append(definition.id)
                    result.field_errors[definition.id] = f"{definition.label} is required"
                continue
            error = self._check_value(definition, value)
            if error:
                result.field_errors[definition.id] = error
        return result

    @staticmethod
    def _check_value(definition: FieldDefinition, value: Any) -> Optional[str]:
        label = definition.label

        if definition.kind == FieldKind.NUMBER:
            try:
                number = float(value)
            except (TypeError, ValueError):
                return f"{label} must be a number"
            if definition.min is not None and number < definition.min:
                return f"{label} must be at least {definition.min:g}"
            if definition.max is not None and number > definition.max:
                return f"{label} must be at most {definition.max:g}"
            return None

        if definition.kind == FieldKind.CHECKBOX:
            return None

        if definition.kind == FieldKind.JSON and not isinstance(value, (dict, list)):
            try:
                json.loads(str(value))
            except ValueError:
                return f"{label} must be valid JSON"

        if definition.kind == FieldKind.SELECT and definition.options:
            allowed = [o.value for o in definition.options]
            if str(value) not in allowed:
                return f"{label} must be one of: {', '.join(allowed)}"

        if isinstance(value, (dict, list)):
            text = json.dumps(value)
        else:
            text = str(value)

        if definition.kind == FieldKind.URL and "{{" not in text:
            parts = urlsplit(text)
            if parts.scheme not in _URL_SCHEMES or not parts.netloc:
                return f"{label} must be a valid URL"

        if definition.pattern and not re.match(definition.pattern, text):
            return definition.pattern_error or f"{label} has an invalid format"
        if definition.min is not None and len(text) < definition.min:
            return f"{label} must be at least {definition.min:g} characters"
        if definition.max is not None and len(text) > definition.max:
            return f"{label} must be at most {definition.max:g} characters"
        return None

    # ------------------------------------------------------------------ #
    # Authentication
    # ------------------------------------------------------------------ #

    @abstractmethod
    async def authenticate(self, record: CredentialRecord, step: int = 1) -> AuthFlowStep:
        """Run one step of the authentication flow.

        Args:
            record: The handshake being configured. Modules may write token
                material and flow state to it.
            step: 1-based step index.

        Returns:
            The resulting :class:`~handshake_engine.models.AuthFlowStep`.
        """
        ...

    async def handle_callback(
        self, record: CredentialRecord, params: dict[str, str]
    ) -> AuthFlowStep:
        """Turn provider-returned redirect data into the next flow step.

        Modules without a redirect flow reject callbacks.
        """
        return AuthFlowStep.failed(
            "Callback Not Supported",
            f"Protocol '{self.protocol_type}' does not use a redirect flow",
            ErrorCode.VALIDATION_ERROR,
        )

    @abstractmethod
    def inject_authentication(self, context: ExecutionContext) -> AuthInjection:
        """Return the auth material for one call. Must not modify *context*."""
        ...

    # ------------------------------------------------------------------ #
    # Execution
    # ------------------------------------------------------------------ #

    def default_headers(self, record: CredentialRecord) -> dict[str, str]:
        """Headers every call for this protocol carries unless the caller overrides them."""
        return {}

    def base_url(self, record: CredentialRecord) -> Optional[str]:
        """Base for relative request URLs."""
        return record.get("baseUrl")

    def retry_policy(self, record: CredentialRecord) -> Optional[RetryPolicy]:
        """Per-record retry policy; ``None`` uses the engine default."""
        return None

    async def execute_request(self, context: ExecutionContext) -> ExecutionResult:
        """Inject authentication and dispatch *context* through the pipeline."""
        record = context.credentials
        try:
            injection = self.inject_authentication(context)
            defaults = self.default_headers(record)
            base_url = self.base_url(record)
            policy = self.retry_policy(record)
        except HandshakeError as exc:
            return ExecutionResult.failure(str(exc), exc.error_code or ErrorCode.AUTH_ERROR)
        return await self._pipeline.execute(
            context,
            injection,
            default_headers=defaults,
            base_url=base_url,
            retry_policy=policy,
        )

    # ------------------------------------------------------------------ #
    # Token lifecycle
    # ------------------------------------------------------------------ #

    async def refresh_tokens(self, record: CredentialRecord) -> TokenRefreshResult:
        """Obtain new token material. The default is a no-op success."""
        return TokenRefreshResult.noop()

    async def revoke_tokens(self, record: CredentialRecord) -> RevocationResult:
        """Best-effort revocation. The default clears local token state only."""
        record.clear_tokens()
        return RevocationResult(success=True)

    def is_token_expired(self, record: CredentialRecord) -> bool:
        """``True`` once the stored expiry has passed. Always ``False`` without refresh support."""
        if not self.supports_refresh:
            return False
        expires_at = self.token_expiration_time(record)
        return expires_at is not None and self.now() >= expires_at

    def token_expiration_time(self, record: CredentialRecord) -> Optional[datetime]:
        return record.expires_at

    def seconds_until_expiry(self, record: CredentialRecord) -> int:
        """Seconds until the stored expiry, ``-1`` when the token does not expire."""
        expires_at = self.token_expiration_time(record)
        if expires_at is None:
            return -1
        return max(0, int((expires_at - self.now()).total_seconds()))

    def local_token_status(self, record: CredentialRecord) -> TokenStatus:
        """Token status judged from the record alone, without a network call."""
        if record.access_token is None:
            return TokenStatus.MISSING
        expires_at = self.token_expiration_time(record)
        if expires_at is not None and self.now() >= expires_at:
            return TokenStatus.EXPIRED
        return TokenStatus.VALID

    # ------------------------------------------------------------------ #
    # Health and display
    # ------------------------------------------------------------------ #

    async def health_check(self, record: CredentialRecord) -> HealthCheckResult:
        """Configuration-only health check used by modules with no cheap probe."""
        validation = self.validate_credentials(record.fields)
        if not validation.valid:
            return HealthCheckResult(
                healthy=False,
                message=f"Missing or invalid fields: {', '.join(validation.field_errors)}",
                token_status=TokenStatus.MISSING,
                details={"field_errors": validation.field_errors},
            )
        return HealthCheckResult(
            healthy=True,
            message="Credentials configured (not validated against the provider)",
            token_status=TokenStatus.VALID,
            token_expires_in=self.seconds_until_expiry(record),
            can_refresh=self.supports_refresh and record.refresh_token is not None,
            details={"validated": False},
        )

    async def probe(
        self,
        record: CredentialRecord,
        url: str,
        method: str = "GET",
        headers: Optional[dict[str, str]] = None,
        body: Any = None,
    ) -> tuple[ExecutionResult, float]:
        """Send one authenticated probe request without retries.

        Returns:
            The result and its latency in milliseconds.
        """
        context = ExecutionContext(
            url=url,
            method=method,
            headers=headers or {},
            body=body,
            credentials=record,
        )
        started = time.perf_counter()
        try:
            injection = self.inject_authentication(context)
        except HandshakeError as exc:
            return (
                ExecutionResult.failure(str(exc), exc.error_code or ErrorCode.AUTH_ERROR),
                0.0,
            )
        result = await self._pipeline.execute(
            context,
            injection,
            default_headers=self.default_headers(record),
            base_url=self.base_url(record),
            retry_policy=RetryPolicy.disabled(),
        )
        return result, (time.perf_counter() - started) * 1000.0

    def masked_credentials(self, record: CredentialRecord) -> dict[str, Any]:
        """Return the record's fields with every secret value masked."""
        extra = [*self.secret_field_ids(), *self.flow_state_keys]
        return mask_mapping(record.fields, extra)
