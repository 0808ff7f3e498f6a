"""Execution pipeline -- request assembly, dispatch with retry, and result normalisation.

This module provides :class:`ExecutionPipeline`, the shared request path that
protocol modules delegate to from
:meth:`~handshake_engine.auth.base.ProtocolModule.execute_request`, and
:class:`RetryPolicy`, the value object describing how transient failures
are retried.

Per call the pipeline:

1. merges module defaults, the module's
   :class:`~handshake_engine.models.AuthInjection` and the caller's
   overrides (caller wins, header names compared case-insensitively);
2. substitutes ``{{name}}`` placeholders in the URL, headers, query and
   body, reporting anything left unresolved;
3. dispatches with a per-call deadline, retrying transient failures
   (timeouts, connection resets, aborted transfers) sequentially with a
   linearly growing delay;
4. normalises the response via
   :func:`~handshake_engine.client.response.normalize_response`.

Completed HTTP responses are never retried, whatever their status.

See Also:
    :class:`~handshake_engine.engine.HandshakeEngine` -- owns the
    :class:`httpx.AsyncClient` and builds the pipeline.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional
from urllib.parse import urljoin

import httpx

from handshake_engine.client.response import normalize_response
from handshake_engine.masking import mask_headers, mask_url
from handshake_engine.models import (
    AuthInjection,
    EngineConfig,
    ErrorCode,
    ExecutionContext,
    ExecutionResult,
    utc_now,
)
from handshake_engine.placeholders import substitute, substitute_mapping

logger = logging.getLogger(__name__)

Sleeper = Callable[[float], Awaitable[None]]
Clock = Callable[[], datetime]

TRANSIENT_ERRORS: tuple[type[BaseException], ...] = (
    httpx.TimeoutException,
    httpx.NetworkError,
    httpx.RemoteProtocolError,
    asyncio.TimeoutError,
)


def linear_backoff(base_delay_s: float, attempt: int) -> float:
    """Delay before retry number *attempt* (1-based): ``base * attempt``."""
    return base_delay_s * attempt


@dataclass(frozen=True)
class RetryPolicy:
    """How transient failures are retried.

    Attributes:
        max_retries: Retries after the first attempt, so a call makes at
            most ``max_retries + 1`` attempts.
        retry_delay_ms: Base delay handed to :attr:`backoff`.
        backoff: ``(base_delay_seconds, attempt) -> delay_seconds``.

    Example::

        policy = RetryPolicy(max_retries=3, retry_delay_ms=1000)
        [policy.delay_for(n) for n in (1, 2, 3)]   # [1.0, 2.0, 3.0]
    """

    max_retries: int = 3
    retry_delay_ms: int = 1000
    backoff: Callable[[float, int], float] = linear_backoff

    @classmethod
    def from_config(cls, config: EngineConfig) -> RetryPolicy:
        return cls(max_retries=config.max_retries, retry_delay_ms=config.retry_delay_ms)

    @classmethod
    def disabled(cls) -> RetryPolicy:
        """A policy that never retries."""
        return cls(max_retries=0)

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1

    def delay_for(self, attempt: int) -> float:
        """Seconds to wait after failed attempt number *attempt* (1-based)."""
        return self.backoff(self.retry_delay_ms / 1000.0, attempt)

    @staticmethod
    def is_transient(exc: BaseException) -> bool:
        return isinstance(exc, TRANSIENT_ERRORS)


@dataclass
class PreparedRequest:
    """A fully resolved outgoing request."""

    method: str
    url: str
    headers: dict[str, str] = field(default_factory=dict)
    params: dict[str, str] = field(default_factory=dict)
    content: Optional[str] = None
    json_body: Any = None
    unresolved: list[str] = field(default_factory=list)


def merge_headers(*layers: Mapping[str, str]) -> dict[str, str]:
    """Merge header dicts left to right; later layers win, names compared case-insensitively."""
    merged: dict[str, str] = {}
    index: dict[str, str] = {}
    for layer in layers:
        for name, value in layer.items():
            existing = index.get(name.lower())
            if existing is not None:
                del merged[existing]
            merged[name] = value
            index[name.lower()] = name
    return merged


def _describe(exc: BaseException) -> str:
    message = str(exc)
    name = type(exc).__name__
    return f"{name}: {message}" if message else name


class ExecutionPipeline:
    """Shared request path for protocol modules.

    Args:
        config: Engine-wide defaults (timeout, retries, redirects).
        client: The :class:`httpx.AsyncClient` used for every dispatch.
            Owned by the caller (normally
            :class:`~handshake_engine.engine.HandshakeEngine`).
        retry_policy: Default retry policy; built from *config* when
            omitted.
        sleep: Awaitable sleep used between retries. Inject a recorder in
            tests to avoid real delays.
        clock: Wall-clock source for placeholder built-ins.
    """

    def __init__(
        self,
        config: EngineConfig,
        client: httpx.AsyncClient,
        retry_policy: Optional[RetryPolicy] = None,
        sleep: Sleeper = asyncio.sleep,
        clock: Clock = utc_now,
    ) -> None:
        self._config = config
        self._client = client
        self._retry_policy = retry_policy or RetryPolicy.from_config(config)
        self._sleep = sleep
        self._clock = clock

    @property
    def config(self) -> EngineConfig:
        return self._config

    @property
    def client(self) -> httpx.AsyncClient:
        """The shared HTTP client, for module calls outside the request path (token endpoints)."""
        return self._client

    @property
    def retry_policy(self) -> RetryPolicy:
        return self._retry_policy

    @property
    def clock(self) -> Clock:
        return self._clock

    def timeout_seconds(self, timeout_ms: Optional[int] = None) -> float:
        """Effective timeout in seconds, clamped into the allowed range."""
        return EngineConfig.clamp_timeout(timeout_ms or self._config.timeout_ms) / 1000.0

    # ------------------------------------------------------------------ #
    # Request assembly
    # ------------------------------------------------------------------ #

    def prepare(
        self,
        context: ExecutionContext,
        injection: Optional[AuthInjection] = None,
        default_headers: Optional[Mapping[str, str]] = None,
        base_url: Optional[str] = None,
    ) -> PreparedRequest:
        """Resolve the outgoing request without touching the network.

        Neither *context* nor *injection* is modified.
        """
        injection = injection or AuthInjection()
        values = context.variables
        unresolved: list[str] = []

        def _note(names: list[str]) -> None:
            unresolved.extend(n for n in names if n not in unresolved)

        url_sub = substitute(context.url, values, self._clock)
        _note(url_sub.unresolved)
        url = url_sub.output
        if base_url and not url.lower().startswith(("http://", "https://")):
            url = urljoin(base_url.rstrip("/") + "/", url.lstrip("/"))

        headers = merge_headers(
            {"User-Agent": self._config.user_agent},
            default_headers or {},
            injection.headers,
            context.headers,
        )
        headers, names = substitute_mapping(headers, values, self._clock)
        _note(names)

        params, names = substitute_mapping(
            {**injection.query_params, **context.query_params}, values, self._clock
        )
        _note(names)

        body = self._merge_body(context.body, injection.body)
        body, names = self._substitute_body(body, values)
        _note(names)

        request = PreparedRequest(
            method=context.method.upper(),
            url=url,
            headers=headers,
            params=params,
            unresolved=unresolved,
        )
        if isinstance(body, (dict, list)):
            request.json_body = body
        elif body is not None:
            request.content = str(body)
        return request

    @staticmethod
    def _merge_body(context_body: Any, injected: Any) -> Any:
        if injected is None:
            return context_body
        if context_body is None:
            return injected
        if isinstance(context_body, dict) and isinstance(injected, dict):
            return {**context_body, **injected}
        if isinstance(context_body, str) and isinstance(injected, dict):
            try:
                parsed = json.loads(context_body)
            except ValueError:
                return context_body
            if isinstance(parsed, dict):
                return {**parsed, **injected}
            return context_body
        return injected

    def _substitute_body(self, body: Any, values: Mapping[str, Any]) -> tuple[Any, list[str]]:
        unresolved: list[str] = []

        def _walk(node: Any) -> Any:
            if isinstance(node, str):
                sub = substitute(node, values, self._clock)
                unresolved.extend(n for n in sub.unresolved if n not in unresolved)
                return sub.output
            if isinstance(node, dict):
                return {k: _walk(v) for k, v in node.items()}
            if isinstance(node, list):
                return [_walk(v) for v in node]
            return node

        return _walk(body), unresolved

    # ------------------------------------------------------------------ #
    # Dispatch
    # ------------------------------------------------------------------ #

    async def execute(
        self,
        context: ExecutionContext,
        injection: Optional[AuthInjection] = None,
        default_headers: Optional[Mapping[str, str]] = None,
        base_url: Optional[str] = None,
        retry_policy: Optional[RetryPolicy] = None,
    ) -> ExecutionResult:
        """Prepare and send *context*, returning a normalised result."""
        request = self.prepare(context, injection, default_headers, base_url)
        follow = (
            context.follow_redirects
            if context.follow_redirects is not None
            else self._config.follow_redirects
        )
        max_redirects = (
            context.max_redirects
            if context.max_redirects is not None
            else self._config.max_redirects
        )
        return await self.send(
            request,
            timeout_ms=context.timeout_ms,
            follow_redirects=follow,
            max_redirects=max_redirects,
            retry_policy=retry_policy,
        )

    async def send(
        self,
        request: PreparedRequest,
        timeout_ms: Optional[int] = None,
        follow_redirects: bool = True,
        max_redirects: int = 5,
        retry_policy: Optional[RetryPolicy] = None,
    ) -> ExecutionResult:
        """Dispatch *request*, retrying transient failures per *retry_policy*.

        Attempts run strictly one after another. A completed response of
        any status ends the loop. When every attempt fails transiently the
        result carries the last failure as its ``error``.
        """
        policy = retry_policy or self._retry_policy
        timeout_s = self.timeout_seconds(timeout_ms)
        started = time.perf_counter()
        last_error: Optional[BaseException] = None
        attempt = 0

        logger.debug(
            "%s %s headers=%s",
            request.method,
            mask_url(request.url),
            mask_headers(request.headers),
        )

        for attempt in range(1, policy.max_attempts + 1):
            try:
                response = await asyncio.wait_for(
                    self._dispatch(request, timeout_s, follow_redirects, max_redirects),
                    timeout=timeout_s,
                )
            except httpx.TooManyRedirects as exc:
                return ExecutionResult.failure(
                    str(exc), ErrorCode.NETWORK_ERROR, self._elapsed(started), attempt
                )
            except TRANSIENT_ERRORS as exc:
                last_error = exc
                if attempt < policy.max_attempts:
                    delay = policy.delay_for(attempt)
                    logger.debug(
                        "Transient failure: %s, retrying in %.1fs (attempt %d/%d)",
                        _describe(exc),
                        delay,
                        attempt,
                        policy.max_retries,
                    )
                    await self._sleep(delay)
                    continue
                break
            except httpx.InvalidURL as exc:
                return ExecutionResult.failure(
                    f"Invalid URL: {exc}", ErrorCode.VALIDATION_ERROR, self._elapsed(started), attempt
                )
            except httpx.HTTPError as exc:
                return ExecutionResult.failure(
                    _describe(exc), ErrorCode.NETWORK_ERROR, self._elapsed(started), attempt
                )

            result = normalize_response(
                response,
                duration_ms=self._elapsed(started),
                attempts=attempt,
                unresolved_placeholders=request.unresolved,
            )
            logger.debug(
                "%s %s -> %d in %.0fms",
                request.method,
                mask_url(request.url),
                result.status_code,
                result.duration_ms,
            )
            return result

        message = f"Request failed after {attempt} attempts: {_describe(last_error)}" if last_error else "Request failed"
        logger.warning("%s %s: %s", request.method, mask_url(request.url), message)
        return ExecutionResult(
            success=False,
            error=message,
            error_code=ErrorCode.NETWORK_ERROR,
            duration_ms=self._elapsed(started),
            attempts=attempt,
            unresolved_placeholders=list(request.unresolved),
        )

    async def _dispatch(
        self,
        request: PreparedRequest,
        timeout_s: float,
        follow_redirects: bool,
        max_redirects: int,
    ) -> httpx.Response:
        kwargs: dict[str, Any] = {
            "method": request.method,
            "url": request.url,
            "headers": request.headers,
            "params": request.params or None,
            "timeout": timeout_s,
        }
        if request.json_body is not None:
            kwargs["json"] = request.json_body
        elif request.content is not None and request.method not in ("GET", "HEAD"):
            kwargs["content"] = request.content

        outgoing = self._client.build_request(**kwargs)
        response = await self._client.send(outgoing, follow_redirects=False)

        redirects = 0
        while follow_redirects and response.is_redirect and response.next_request is not None:
            if redirects >= max_redirects:
                await response.aclose()
                raise httpx.TooManyRedirects(
                    f"Exceeded maximum of {max_redirects} redirects", request=outgoing
                )
            redirects += 1
            next_request = response.next_request
            await response.aclose()
            response = await self._client.send(next_request, follow_redirects=False)
        return response

    @staticmethod
    def _elapsed(started: float) -> float:
        return (time.perf_counter() - started) * 1000.0
