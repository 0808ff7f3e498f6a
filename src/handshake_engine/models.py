"""Canonical Pydantic models shared across all handshake_engine modules.

This is the single source of truth for data shapes in the project. Every other
module imports from here rather than defining its own models. The models fall
into four groups:

**Enumerations** -- :class:`ErrorCode`, :class:`CredentialStatus`,
    :class:`StepKind`, :class:`FieldKind`, :class:`TokenStatus`,
    :class:`VisibilityOperator`.

**Module-authored metadata** -- :class:`FieldDefinition`,
    :class:`VisibilityRule`, :class:`ProtocolCapabilities`,
    :class:`ProtocolMetadata`.

**Per-handshake and per-call values** -- :class:`CredentialRecord`,
    :class:`ExecutionContext`, :class:`AuthInjection`,
    :class:`ExecutionResult`, :class:`AuthFlowStep`,
    :class:`TokenRefreshResult`, :class:`RevocationResult`,
    :class:`HealthCheckResult`, :class:`ValidationResult`,
    :class:`SubstitutionResult`, :class:`ParsedCurlCommand`.

**Configuration** -- :class:`EngineConfig`, threaded into
    :class:`~handshake_engine.engine.HandshakeEngine` at construction.

The engine never persists any of these. :class:`CredentialRecord` is
caller-owned, mutable state that the engine may update in place (refreshed
tokens) and hands back for the caller to store.
"""

from __future__ import annotations

import enum
import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


# --- Enumerations ---


class ErrorCode(str, enum.Enum):
    """Error taxonomy reported in result values."""

    VALIDATION_ERROR = "VALIDATION_ERROR"
    AUTH_ERROR = "AUTH_ERROR"
    TOKEN_REFRESH_FAILED = "TOKEN_REFRESH_FAILED"
    NETWORK_ERROR = "NETWORK_ERROR"
    PARSE_ERROR = "PARSE_ERROR"
    PROVIDER_ERROR = "PROVIDER_ERROR"


class CredentialStatus(str, enum.Enum):
    """Authentication state of one handshake.

    See :mod:`handshake_engine.auth.flow` for the legal transitions.
    """

    UNCONFIGURED = "unconfigured"
    CONFIGURING = "configuring"
    AUTHENTICATED = "authenticated"
    ERROR = "error"
    EXPIRED = "expired"


class StepKind(str, enum.Enum):
    """Kind of one authentication flow step."""

    PROMPT = "prompt"
    REDIRECT = "redirect"
    COMPLETE = "complete"
    ERROR = "error"


class FieldKind(str, enum.Enum):
    """Input kind of a configuration field."""

    TEXT = "text"
    PASSWORD = "password"
    SECRET = "secret"
    URL = "url"
    EMAIL = "email"
    NUMBER = "number"
    SELECT = "select"
    MULTISELECT = "multiselect"
    CHECKBOX = "checkbox"
    TEXTAREA = "textarea"
    JSON = "json"
    SCOPES = "scopes"
    HEADERS = "headers"
    HIDDEN = "hidden"


class TokenStatus(str, enum.Enum):
    """Credential status reported by a health check, independent of reachability."""

    VALID = "valid"
    EXPIRED = "expired"
    INVALID = "invalid"
    MISSING = "missing"


class VisibilityOperator(str, enum.Enum):
    """Comparison applied by a :class:`VisibilityRule`."""

    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    CONTAINS = "contains"
    EXISTS = "exists"
    IN = "in"


# --- Module-authored metadata ---


class VisibilityRule(BaseModel):
    """Show a field only when another field holds a given value.

    Example::

        VisibilityRule(field="placement", value="query")
    """

    model_config = ConfigDict(frozen=True)

    field: str
    value: Any = None
    operator: VisibilityOperator = VisibilityOperator.EQUALS

    def is_satisfied(self, fields: dict[str, Any]) -> bool:
        """Return ``True`` when *fields* make the dependent field visible."""
        actual = fields.get(self.field)
        if self.operator == VisibilityOperator.EXISTS:
            return actual not in (None, "")
        if self.operator == VisibilityOperator.CONTAINS:
            if actual is None:
                return False
            return str(self.value) in (actual if isinstance(actual, (list, tuple)) else str(actual))
        if self.operator == VisibilityOperator.IN:
            return actual in (self.value or ())
        if self.operator == VisibilityOperator.NOT_EQUALS:
            return actual != self.value
        return actual == self.value


class FieldOption(BaseModel):
    """One choice of a ``select`` field."""

    model_config = ConfigDict(frozen=True)

    value: str
    label: str


class FieldDefinition(BaseModel):
    """Static description of one configuration input declared by a protocol module."""

    model_config = ConfigDict(frozen=True)

    id: str
    label: str
    kind: FieldKind = FieldKind.TEXT
    required: bool = False
    default: Any = None
    description: Optional[str] = None
    placeholder: Optional[str] = None
    options: list[FieldOption] = Field(default_factory=list)
    pattern: Optional[str] = Field(
        default=None, description="Regular expression the value must match"
    )
    pattern_error: Optional[str] = None
    min: Optional[float] = Field(
        default=None, description="Minimum length (strings) or value (numbers)"
    )
    max: Optional[float] = Field(
        default=None, description="Maximum length (strings) or value (numbers)"
    )
    sensitive: bool = False
    group: Optional[str] = None
    order: int = 0
    visible_when: Optional[VisibilityRule] = None

    @property
    def is_secret(self) -> bool:
        """Whether values of this field must be masked in logs and displays."""
        return self.sensitive or self.kind in (FieldKind.PASSWORD, FieldKind.SECRET)

    def is_visible(self, fields: dict[str, Any]) -> bool:
        """Evaluate :attr:`visible_when` against the configured *fields*."""
        return self.visible_when is None or self.visible_when.is_satisfied(fields)


class ProtocolCapabilities(BaseModel):
    """Capability flags advertised by a protocol module."""

    model_config = ConfigDict(frozen=True)

    supports_redirect_flow: bool = False
    supports_token_refresh: bool = False
    supports_token_revocation: bool = False
    supports_scopes: bool = False
    supports_pkce: bool = False
    requires_server_side: bool = False
    supports_auto_injection: bool = True


class ProtocolMetadata(BaseModel):
    """Static descriptive information about a protocol module."""

    model_config = ConfigDict(frozen=True)

    type: str
    display_name: str
    description: str
    version: str = "1.0.0"
    deprecated: bool = False
    documentation_url: Optional[str] = None
    capabilities: ProtocolCapabilities = Field(default_factory=ProtocolCapabilities)
    use_cases: list[str] = Field(default_factory=list)
    example_platforms: list[str] = Field(default_factory=list)


# --- Per-handshake state ---


def utc_now() -> datetime:
    """Return the current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to a naive datetime; aware values pass through unchanged."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class CredentialRecord(BaseModel):
    """Configuration and secret values for one handshake.

    ``fields`` holds the protocol-specific inputs keyed by
    :attr:`FieldDefinition.id`. Unknown keys are ignored by every module.
    Token fields are only populated by protocols that issue tokens.

    Token state must be changed through :meth:`apply_tokens` and
    :meth:`clear_tokens` so that the token and its expiry always move
    together.
    """

    model_config = ConfigDict(extra="allow")

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    name: Optional[str] = None
    protocol_type: str
    fields: dict[str, Any] = Field(default_factory=dict)
    status: CredentialStatus = CredentialStatus.UNCONFIGURED
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    expires_at: Optional[datetime] = None
    token_type: Optional[str] = None
    scopes: list[str] = Field(default_factory=list)

    @field_validator("expires_at")
    @classmethod
    def _expiry_is_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return as_utc(value)

    def get(self, field_id: str, default: Any = None) -> Any:
        """Return a configured field value, treating empty strings as unset."""
        value = self.fields.get(field_id)
        if value is None or value == "":
            return default
        return value

    def apply_tokens(
        self,
        access_token: Optional[str],
        refresh_token: Optional[str] = None,
        expires_at: Optional[datetime] = None,
        token_type: Optional[str] = None,
        scopes: Optional[list[str]] = None,
    ) -> None:
        """Replace the token material in one step.

        A ``None`` *refresh_token* keeps the existing refresh token, since
        many providers only rotate it occasionally. *expires_at* always
        replaces the stored expiry. A naive *expires_at* is taken as UTC.
        """
        new_refresh = refresh_token if refresh_token is not None else self.refresh_token
        new_type = token_type if token_type is not None else self.token_type
        new_scopes = list(scopes) if scopes is not None else self.scopes
        self.access_token = access_token
        self.refresh_token = new_refresh
        self.expires_at = as_utc(expires_at)
        self.token_type = new_type
        self.scopes = new_scopes

    def clear_tokens(self) -> None:
        """Drop all local token state."""
        self.access_token = None
        self.refresh_token = None
        self.expires_at = None
        self.token_type = None
        self.scopes = []

    def token_snapshot(self) -> dict[str, Any]:
        """Return the token fields as a JSON-friendly dict for the caller to persist."""
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "token_type": self.token_type,
            "scopes": list(self.scopes),
        }


# --- Per-call values ---


class ExecutionContext(BaseModel):
    """Per-call input to the execution pipeline. Immutable for the duration of a call."""

    model_config = ConfigDict(frozen=True)

    url: str
    method: str = "GET"
    headers: dict[str, str] = Field(default_factory=dict)
    body: Any = None
    query_params: dict[str, str] = Field(default_factory=dict)
    credentials: CredentialRecord
    timeout_ms: Optional[int] = Field(
        default=None, description="Per-call timeout override in milliseconds"
    )
    follow_redirects: Optional[bool] = None
    max_redirects: Optional[int] = None
    variables: dict[str, str] = Field(
        default_factory=dict, description="Values for {{name}} placeholders"
    )


class AuthInjection(BaseModel):
    """Headers, query parameters and body fragment a module adds to a request."""

    headers: dict[str, str] = Field(default_factory=dict)
    query_params: dict[str, str] = Field(default_factory=dict)
    body: Any = None


class ExecutionResult(BaseModel):
    """Per-call output of the execution pipeline. Never mutated after return."""

    model_config = ConfigDict(frozen=True)

    success: bool
    status_code: int = 0
    headers: dict[str, str] = Field(default_factory=dict)
    body: Any = None
    raw_body: str = ""
    duration_ms: float = 0.0
    error: Optional[str] = None
    error_code: Optional[ErrorCode] = None
    credentials_refreshed: bool = False
    attempts: int = 1
    unresolved_placeholders: list[str] = Field(default_factory=list)
    updated_credentials: Optional[dict[str, Any]] = None

    @classmethod
    def failure(
        cls,
        error: str,
        error_code: ErrorCode,
        duration_ms: float = 0.0,
        attempts: int = 0,
        status_code: int = 0,
    ) -> ExecutionResult:
        """Build a non-success result that never reached (or never completed) the network."""
        return cls(
            success=False,
            status_code=status_code,
            error=error,
            error_code=error_code,
            duration_ms=duration_ms,
            attempts=attempts,
        )


class AuthFlowStep(BaseModel):
    """One step of a (possibly multi-round) authentication flow."""

    step: int = 1
    total_steps: int = 1
    kind: StepKind
    title: str
    description: str = ""
    data: dict[str, Any] = Field(default_factory=dict)
    error: Optional[str] = None
    redirect_url: Optional[str] = None
    missing_fields: list[str] = Field(default_factory=list)
    field_errors: dict[str, str] = Field(default_factory=dict)
    error_code: Optional[ErrorCode] = None

    @property
    def is_terminal(self) -> bool:
        """``True`` for ``complete`` and ``error`` steps."""
        return self.kind in (StepKind.COMPLETE, StepKind.ERROR)

    @classmethod
    def failed(
        cls,
        title: str,
        error: str,
        error_code: ErrorCode = ErrorCode.AUTH_ERROR,
        description: str = "",
        step: int = 1,
        total_steps: int = 1,
    ) -> AuthFlowStep:
        """Build an ``error`` step."""
        return cls(
            step=step,
            total_steps=total_steps,
            kind=StepKind.ERROR,
            title=title,
            description=description,
            error=error,
            error_code=error_code,
        )


class TokenRefreshResult(BaseModel):
    """New token material produced by :meth:`ProtocolModule.refresh_tokens`."""

    success: bool
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    expires_at: Optional[datetime] = None
    token_type: Optional[str] = None
    scopes: Optional[list[str]] = None
    error: Optional[str] = None
    requires_reauth: bool = False

    @property
    def has_token(self) -> bool:
        return self.success and self.access_token is not None

    @classmethod
    def noop(cls) -> TokenRefreshResult:
        """A successful refresh that changes nothing."""
        return cls(success=True)


class RevocationResult(BaseModel):
    """Outcome of a best-effort token revocation."""

    success: bool
    error: Optional[str] = None
    revoked_remotely: bool = False


class HealthCheckResult(BaseModel):
    """Outcome of a lightweight credential probe."""

    healthy: bool
    message: str
    latency_ms: float = 0.0
    token_status: TokenStatus
    token_expires_in: int = Field(
        default=-1, description="Seconds until expiry; -1 when tokens do not expire"
    )
    can_refresh: bool = False
    details: dict[str, Any] = Field(default_factory=dict)


class ValidationResult(BaseModel):
    """Every problem found when checking credential fields against a module's definitions."""

    missing_fields: list[str] = Field(default_factory=list)
    field_errors: dict[str, str] = Field(default_factory=dict)
    warnings: list[str] = Field(default_factory=list)

    @property
    def valid(self) -> bool:
        return not self.missing_fields and not self.field_errors

    def summary(self) -> str:
        """Join every error message into one line."""
        return ", ".join(self.field_errors.values())


class SubstitutionResult(BaseModel):
    """Output of :func:`handshake_engine.placeholders.substitute`."""

    output: str
    replaced: list[str] = Field(default_factory=list)
    unresolved: list[str] = Field(default_factory=list)

    @property
    def complete(self) -> bool:
        return not self.unresolved


class ParsedCurlCommand(BaseModel):
    """Structured form of a cURL command string."""

    method: str = "GET"
    url: str = ""
    headers: dict[str, str] = Field(default_factory=dict)
    body: Optional[str] = None
    basic_auth: Optional[tuple[str, str]] = None
    follow_redirects: bool = False
    insecure: bool = False
    max_time_s: Optional[float] = None


# --- Configuration ---


class EngineConfig(BaseModel):
    """Engine-wide defaults, passed explicitly to :class:`~handshake_engine.engine.HandshakeEngine`.

    Loaded from ``config.json`` by
    :func:`~handshake_engine.config.load_engine_config` when running under
    the CLI; library callers construct it directly.
    """

    timeout_ms: int = Field(
        default=30000, ge=1000, le=300000, description="Request timeout in milliseconds"
    )
    max_retries: int = Field(default=3, ge=0, description="Retries after the first attempt")
    retry_delay_ms: int = Field(
        default=1000, ge=0, description="Base delay; attempt N waits retry_delay_ms * N"
    )
    follow_redirects: bool = True
    max_redirects: int = Field(default=5, ge=0)
    verify_ssl: bool = Field(default=True, description="Verify SSL certificates")
    user_agent: str = "handshake-engine/0.1"

    @staticmethod
    def clamp_timeout(timeout_ms: int) -> int:
        """Clamp a caller-supplied timeout into the allowed 1000-300000 ms range."""
        return max(1000, min(300000, int(timeout_ms)))
