"""Token lifecycle -- refresh-before-use, serialised per handshake.

Before each authenticated call the engine asks
:meth:`TokenLifecycleManager.ensure_fresh` whether the record's token is
usable. A refresh is attempted only when all of these hold:

- the record has an ``expires_at``;
- ``now >= expires_at`` (no skew allowance);
- the module advertises refresh support.

Refreshes for one record id run inside an :class:`asyncio.Lock`. A call
that waited on the lock re-checks expiry first. When the record it holds
is a different copy from the one the winner updated, it adopts the
winner's token instead of refreshing again. The lock and the winner's
token are dropped once the last caller for that record id leaves.

New token material is written with
:meth:`~handshake_engine.models.CredentialRecord.apply_tokens` in a single
synchronous step after the refresh request completes, so a cancelled
refresh never leaves a token without its matching expiry.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

import httpx

from handshake_engine.auth.base import ProtocolModule
from handshake_engine.auth.flow import transition
from handshake_engine.exceptions import HandshakeError
from handshake_engine.models import (
    CredentialRecord,
    CredentialStatus,
    TokenRefreshResult,
    utc_now,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class IssuedToken:
    """Token material produced by the most recent refresh of one record."""

    access_token: str
    refresh_token: Optional[str]
    expires_at: Optional[datetime]
    token_type: Optional[str]
    scopes: Optional[list[str]]
    replaced: Optional[str]


@dataclass(frozen=True)
class RefreshOutcome:
    """What :meth:`TokenLifecycleManager.ensure_fresh` did."""

    refreshed: bool = False
    error: Optional[str] = None
    requires_reauth: bool = False

    @property
    def ok(self) -> bool:
        return self.error is None


class TokenLifecycleManager:
    """Tracks token expiry and serialises refreshes per record id.

    Args:
        clock: Returns the current timezone-aware time. Inject a fixed
            clock in tests.
    """

    def __init__(self, clock: Callable[[], datetime] = utc_now) -> None:
        self._clock = clock
        self._locks: dict[str, asyncio.Lock] = {}
        self._latest: dict[str, IssuedToken] = {}
        self._users: dict[str, int] = {}

    def needs_refresh(self, module: ProtocolModule, record: CredentialRecord) -> bool:
        if not module.supports_refresh or record.expires_at is None:
            return False
        return self._clock() >= record.expires_at

    @contextlib.asynccontextmanager
    async def _serialised(self, record_id: str) -> AsyncIterator[None]:
        lock = self._locks.get(record_id)
        if lock is None:
            lock = self._locks[record_id] = asyncio.Lock()
        self._users[record_id] = self._users.get(record_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[record_id] -= 1
            if not self._users[record_id]:
                del self._users[record_id]
                self._locks.pop(record_id, None)
                self._latest.pop(record_id, None)

    async def ensure_fresh(
        self, module: ProtocolModule, record: CredentialRecord
    ) -> RefreshOutcome:
        """Refresh *record* if its token is due; otherwise do nothing."""
        if not self.needs_refresh(module, record):
            return RefreshOutcome()

        async with self._serialised(record.id):
            if self._adopt_latest(record):
                return RefreshOutcome(refreshed=True)
            if not self.needs_refresh(module, record):
                return RefreshOutcome()
            return await self._refresh_locked(module, record)

    async def refresh(
        self, module: ProtocolModule, record: CredentialRecord
    ) -> TokenRefreshResult:
        """Refresh *record* unconditionally, under the same per-record lock."""
        if not module.supports_refresh:
            return TokenRefreshResult.noop()
        async with self._serialised(record.id):
            outcome = await self._refresh_locked(module, record)
        if not outcome.ok:
            return TokenRefreshResult(
                success=False, error=outcome.error, requires_reauth=outcome.requires_reauth
            )
        return TokenRefreshResult(
            success=True,
            access_token=record.access_token,
            refresh_token=record.refresh_token,
            expires_at=record.expires_at,
            token_type=record.token_type,
            scopes=list(record.scopes),
        )

    def forget(self, record_id: str) -> None:
        """Drop the token cached for *record_id* by an in-flight refresh (after revocation)."""
        self._latest.pop(record_id, None)

    def _adopt_latest(self, record: CredentialRecord) -> bool:
        latest = self._latest.get(record.id)
        if latest is None or latest.access_token == record.access_token:
            return False
        if latest.replaced != record.access_token:
            return False
        if latest.expires_at is not None and self._clock() >= latest.expires_at:
            return False
        record.apply_tokens(
            latest.access_token,
            refresh_token=latest.refresh_token,
            expires_at=latest.expires_at,
            token_type=latest.token_type,
            scopes=latest.scopes,
        )
        self._mark_authenticated(record)
        logger.debug("Handshake %s reused a token refreshed by a concurrent call", record.id)
        return True

    async def _refresh_locked(
        self, module: ProtocolModule, record: CredentialRecord
    ) -> RefreshOutcome:
        previous = record.access_token
        logger.debug("Refreshing token for handshake %s (%s)", record.id, module.protocol_type)
        try:
            result = await module.refresh_tokens(record)
        except HandshakeError as exc:
            result = TokenRefreshResult(success=False, error=str(exc))
        except httpx.HTTPError as exc:
            result = TokenRefreshResult(success=False, error=f"Network error: {exc}")

        if not result.success:
            self._mark_expired(record, result.requires_reauth)
            logger.warning("Token refresh for %s failed: %s", record.id, result.error)
            return RefreshOutcome(
                error=result.error or "Token refresh failed",
                requires_reauth=result.requires_reauth,
            )
        access_token = result.access_token
        if access_token is None:
            self._mark_expired(record, True)
            return RefreshOutcome(
                error="Token refresh returned no new access token", requires_reauth=True
            )

        record.apply_tokens(
            access_token,
            refresh_token=result.refresh_token,
            expires_at=result.expires_at,
            token_type=result.token_type,
            scopes=result.scopes,
        )
        self._latest[record.id] = IssuedToken(
            access_token=access_token,
            refresh_token=record.refresh_token,
            expires_at=record.expires_at,
            token_type=record.token_type,
            scopes=list(record.scopes),
            replaced=previous,
        )
        self._mark_authenticated(record)
        return RefreshOutcome(refreshed=True)

    @staticmethod
    def _mark_authenticated(record: CredentialRecord) -> None:
        if record.status == CredentialStatus.EXPIRED:
            transition(record, CredentialStatus.AUTHENTICATED)

    @staticmethod
    def _mark_expired(record: CredentialRecord, requires_reauth: bool) -> None:
        if requires_reauth and record.status == CredentialStatus.AUTHENTICATED:
            transition(record, CredentialStatus.EXPIRED)
