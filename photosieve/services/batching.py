"""Cooperative cancellation and small-batch concurrent dispatch.

Every layer fans out its per-photo work (hashing, feature extraction,
caption requests) through :func:`run_in_batches`: a fixed number of
coroutines run together, results are joined with
``asyncio.gather(return_exceptions=True)`` so one failure never cancels
its siblings, and a short pause separates batches.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Sequence
from typing import TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")

CANCELLED_MESSAGE = "Analysis cancelled by user"


class AnalysisCancelledError(Exception):
    """Raised at a checkpoint once the run's token has been cancelled."""

    def __init__(self, message: str = CANCELLED_MESSAGE) -> None:
        super().__init__(message)


class CancellationToken:
    """Single shared flag checked between layers and before loop bodies.

    In-flight network or inference calls are never interrupted; only the
    next checkpoint observes the cancellation.
    """

    def __init__(self) -> None:
        self._cancelled = False

    def cancel(self) -> None:
        self._cancelled = True

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise AnalysisCancelledError()


async def run_in_batches(
    items: Sequence[T],
    worker: Callable[[T], Awaitable[R | None]],
    *,
    batch_size: int = 3,
    delay: float = 0.1,
    token: CancellationToken | None = None,
    label: str = "batch",
    describe: Callable[[T], str] = repr,
    on_batch_done: Callable[[int, int], None] | None = None,
) -> list[tuple[T, R]]:
    """Run *worker* over *items* in concurrent batches.

    Returns ``(item, result)`` pairs for every item whose worker returned
    a non-``None`` value, in input order.  Exceptions are logged and dropped;
    ``None`` results are dropped silently.  *on_batch_done* receives
    ``(items_done, total)`` after each batch.
    """
    results: list[tuple[T, R]] = []
    total = len(items)
    batch_size = max(1, batch_size)

    for start in range(0, total, batch_size):
        if token is not None:
            token.raise_if_cancelled()

        batch = items[start : start + batch_size]
        logger.debug(
            "%s: processing batch %d/%d (%d items)",
            label,
            start // batch_size + 1,
            (total + batch_size - 1) // batch_size,
            len(batch),
        )
        outcomes = await asyncio.gather(
            *(worker(item) for item in batch), return_exceptions=True
        )

        for item, outcome in zip(batch, outcomes):
            if isinstance(outcome, BaseException):
                if isinstance(outcome, asyncio.CancelledError):
                    raise outcome
                logger.warning(
                    "%s: item %s failed: %s", label, describe(item), outcome,
                    exc_info=outcome,
                )
            elif outcome is not None:
                results.append((item, outcome))

        done = min(start + batch_size, total)
        if on_batch_done is not None:
            on_batch_done(done, total)

        if done < total and delay > 0:
            await asyncio.sleep(delay)

    return results
