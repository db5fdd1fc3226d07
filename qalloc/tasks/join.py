"""Fan-out/join of concurrently issued child operations.

``JoinCounter`` is the callback-level primitive: it counts child successes
down to zero and fires the parent continuation exactly once. The first
failure fires the failure path instead, and every report after that is
ignored. ``join_all`` builds an awaitable combinator on top of it.
"""

from __future__ import annotations

import asyncio
import functools
from collections.abc import Awaitable, Callable, Iterable
from typing import Generic, TypeVar

from qalloc.errors import RemoteCallError
from qalloc.metrics import record_subtask

T = TypeVar("T")

# Children that outlive a failed join keep running; hold them until done.
_stragglers: set[asyncio.Future] = set()


class JoinCounter(Generic[T]):
    """Exactly-once join over ``expected`` child completions.

    Reports arrive as done-callbacks on the event loop thread, one at a time.

    Args:
        expected: Number of children that will report. Must be positive.
        on_success: Called once with the results, in child index order.
        on_failure: Called once with the first failure.
    """

    def __init__(
        self,
        expected: int,
        on_success: Callable[[list[T]], object],
        on_failure: Callable[[BaseException], object],
    ) -> None:
        if expected < 1:
            raise ValueError(f"expected must be at least 1, got {expected}")
        self.expected = expected
        self._on_success = on_success
        self._on_failure = on_failure
        self._remaining = expected
        self._results: list[T | None] = [None] * expected
        self._reported: set[int] = set()
        self._finished = False

    @property
    def finished(self) -> bool:
        return self._finished

    @property
    def remaining(self) -> int:
        return self._remaining

    def success(self, index: int, result: T) -> bool:
        """Report child ``index`` as succeeded. Returns False if ignored."""
        if self._finished or index in self._reported:
            return False
        self._reported.add(index)
        self._results[index] = result
        self._remaining -= 1
        record_subtask("success")
        if self._remaining == 0:
            self._finished = True
            self._on_success(list(self._results))  # type: ignore[arg-type]
        return True

    def failure(self, error: BaseException) -> bool:
        """Report a child failure. Only the first one reaches the parent."""
        if self._finished:
            return False
        self._finished = True
        record_subtask("failure")
        self._on_failure(error)
        return True


def _report(counter: JoinCounter, index: int, child: asyncio.Future) -> None:
    _stragglers.discard(child)
    if child.cancelled():
        counter.failure(RemoteCallError(f"sub-task {index} was cancelled"))
        return
    error = child.exception()
    if error is not None:
        counter.failure(error)
    else:
        counter.success(index, child.result())


def _resolve(outcome: asyncio.Future, results: list) -> None:
    if not outcome.done():
        outcome.set_result(results)


def _reject(outcome: asyncio.Future, error: BaseException) -> None:
    if not outcome.done():
        outcome.set_exception(error)


async def join_all(children: Iterable[Awaitable[T]]) -> list[T]:
    """Run ``children`` concurrently and return their results in order.

    Raises the first child failure as soon as it happens. Children still in
    flight at that point are left to finish on their own; their outcomes are
    discarded.
    """
    futures = [asyncio.ensure_future(child) for child in children]
    if not futures:
        return []

    outcome: asyncio.Future[list[T]] = asyncio.get_running_loop().create_future()
    counter: JoinCounter[T] = JoinCounter(
        len(futures),
        on_success=functools.partial(_resolve, outcome),
        on_failure=functools.partial(_reject, outcome),
    )
    for index, future in enumerate(futures):
        _stragglers.add(future)
        future.add_done_callback(functools.partial(_report, counter, index))
    return await outcome
