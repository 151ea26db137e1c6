"""Retry with exponential backoff for transient collaborator failures."""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from axiomflow.graph.node import NodeContext

logger = logging.getLogger(__name__)


class RetryPolicy:
    """
    Retries transient failures with exponential backoff.

    ``retries`` holds the number of retry attempts made so far, so the caller
    can report it whether the call finally succeeded or not.

    Example:
        policy = RetryPolicy(max_retries=2, backoff=config.backoff, is_transient=_transient)
        response = await policy.run(lambda: model.invoke(...))
        result.retries = policy.retries
    """

    def __init__(
        self,
        max_retries: int,
        backoff: Callable[[int], float],
        is_transient: Callable[[BaseException], bool],
        on_retry: Callable[[int, BaseException], Awaitable[None]] | None = None,
    ):
        self.max_retries = max_retries
        self.backoff = backoff
        self.is_transient = is_transient
        self.on_retry = on_retry
        self.retries = 0

    async def run(self, call: Callable[[], Awaitable[Any]]) -> Any:
        while True:
            try:
                return await call()
            except Exception as e:
                if not self.is_transient(e) or self.retries >= self.max_retries:
                    raise
                self.retries += 1
                delay = self.backoff(self.retries)
                logger.info(
                    f"   ↻ Transient failure, retry {self.retries}/{self.max_retries} "
                    f"in {delay:.2f}s: {e}",
                    extra={"attempt": self.retries},
                )
                if self.on_retry is not None:
                    await self.on_retry(self.retries, e)
                if delay > 0:
                    await asyncio.sleep(delay)


def retry_notifier(ctx: NodeContext, max_retries: int):
    """Build an ``on_retry`` callback that publishes NODE_RETRY events."""
    bus = ctx.deps.event_bus
    if bus is None:
        return None

    async def _notify(attempt: int, error: BaseException) -> None:
        await bus.emit_node_retry(
            ctx.workflow_id, ctx.execution_id, ctx.node.id, attempt, max_retries, str(error)
        )

    return _notify
