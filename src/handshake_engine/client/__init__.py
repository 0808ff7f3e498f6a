"""HTTP layer for handshake_engine.

Provides the shared execution pipeline that protocol modules delegate
their network calls to, and the response normaliser it uses.

Classes:
    :class:`ExecutionPipeline` -- request assembly, dispatch with timeout
        and redirect bounds, sequential retry of transient failures.
    :class:`RetryPolicy` -- value object describing the retry ceiling,
        base delay and backoff function.

Example::

    async with httpx.AsyncClient() as http:
        pipeline = ExecutionPipeline(EngineConfig(), http)
        result = await pipeline.execute(context, injection)
"""

from handshake_engine.client.pipeline import (
    ExecutionPipeline,
    PreparedRequest,
    RetryPolicy,
    linear_backoff,
)
from handshake_engine.client.response import normalize_response

__all__ = [
    "ExecutionPipeline",
    "PreparedRequest",
    "RetryPolicy",
    "linear_backoff",
    "normalize_response",
]
