"""
Parallel fan-out.

One logical call sometimes expands into many independent sub-calls (resolving
N related resources, for instance). The helpers here run them on a worker pool
and re-aggregate the results in input order. Either every result is returned
or the first failure is raised; in that case sub-calls that have not started
yet are cancelled and results already produced are closed when they hold
a connection.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Sequence
from concurrent.futures import Executor, Future, as_completed
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import TypeVar

from .exceptions import RequestTimeoutError

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")


def cancel_pending(futures: Iterable[Future[object]]) -> int:
    """Cancel every future that has not started; return how many were cancelled."""
    return sum(1 for future in futures if future.cancel())


def release_results(futures: Iterable[Future[object]]) -> None:
    """
    Close the results of `futures` that have a `close()` method (open response
    streams, for instance), now for finished futures and on completion for
    running ones.
    """
    for future in futures:
        future.add_done_callback(_close_result)


def _close_result(future: Future[object]) -> None:
    if future.cancelled() or future.exception() is not None:
        return
    close = getattr(future.result(), "close", None)
    if callable(close):
        close()


def gather_ordered(futures: Sequence[Future[R]], *, timeout: float | None = None) -> list[R]:
    """
    Wait for `futures` and return their results in the given order.

    The first failure (in completion order) cancels the remaining futures and
    is raised. Running out of `timeout` raises `RequestTimeoutError`.
    """
    futures = list(futures)
    if not futures:
        return []
    positions: dict[Future[R], int] = {future: index for index, future in enumerate(futures)}
    results: list[R] = [None] * len(futures)  # type: ignore[list-item]

    completed = as_completed(futures, timeout=timeout)
    while True:
        try:
            future = next(completed)
        except StopIteration:
            return results
        except FutureTimeoutError as e:
            cancel_pending(futures)
            release_results(futures)
            raise RequestTimeoutError(
                f"fan-out of {len(futures)} sub-call(s) timed out after {timeout:g}s"
            ) from e
        try:
            results[positions[future]] = future.result()
        except BaseException:
            cancelled = cancel_pending(futures)
            release_results(futures)
            logger.debug(
                "fan-out sub-call %d failed; cancelled %d pending sub-call(s)",
                positions[future],
                cancelled,
            )
            raise


def transform_parallel(
    items: Iterable[T],
    fn: Callable[[T], R],
    executor: Executor,
    *,
    timeout: float | None = None,
) -> list[R]:
    """Apply `fn` to every item on `executor`; results keep the input order."""
    futures = [executor.submit(fn, item) for item in items]
    return gather_ordered(futures, timeout=timeout)
