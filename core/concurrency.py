import asyncio
import logging
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from typing import Any, Generic, TypeVar

from core.types_registry import NodeCancelledError, NodeTimeoutError

logger = logging.getLogger(__name__)

T = TypeVar("T")

OperationFactory = Callable[[], Awaitable[Any]]


@dataclass
class Settled(Generic[T]):
    """Outcome of one dispatched operation, tagged with its original position."""

    index: int
    ok: bool
    value: T | None = None
    error: BaseException | None = None


def _discard(awaitable: Awaitable[Any]) -> None:
    # Avoid "coroutine was never awaited" warnings for work we decided not to start
    if asyncio.iscoroutine(awaitable):
        awaitable.close()


async def sleep_ms(delay_ms: float, signal: asyncio.Event | None = None) -> None:
    """Sleep for ``delay_ms``; raise NodeCancelledError early if ``signal`` fires."""
    if signal is not None and signal.is_set():
        raise NodeCancelledError("Operation cancelled")
    if delay_ms <= 0:
        return
    if signal is None:
        await asyncio.sleep(delay_ms / 1000)
        return
    try:
        await asyncio.wait_for(signal.wait(), timeout=delay_ms / 1000)
    except asyncio.TimeoutError:
        return
    raise NodeCancelledError("Operation cancelled")


async def with_timeout(
    awaitable: Awaitable[T], timeout_ms: float | None, message: str | None = None
) -> T:
    """Await ``awaitable`` with a millisecond budget. The loser is cancelled."""
    if not timeout_ms or timeout_ms <= 0:
        return await awaitable
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout_ms / 1000)
    except asyncio.TimeoutError as e:
        raise NodeTimeoutError(
            message or f"Operation timed out after {timeout_ms}ms", timeout_ms
        ) from e


async def run_cancellable(awaitable: Awaitable[T], signal: asyncio.Event | None) -> T:
    """Race ``awaitable`` against ``signal``; cancel the work if the signal wins."""
    if signal is None:
        return await awaitable
    if signal.is_set():
        _discard(awaitable)
        raise NodeCancelledError("Operation cancelled")

    work = asyncio.ensure_future(awaitable)
    waiter = asyncio.ensure_future(signal.wait())
    try:
        done, _ = await asyncio.wait({work, waiter}, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        work.cancel()
        raise
    finally:
        waiter.cancel()

    if work in done:
        return work.result()

    work.cancel()
    await asyncio.gather(work, return_exceptions=True)
    raise NodeCancelledError("Operation cancelled")


class BoundedDispatcher:
    """Runs operation factories with at most ``concurrency`` in flight.

    A fixed pool of ``min(concurrency, len(factories))`` workers pulls the next
    unstarted index. Each slot in ``slots`` is written by exactly one worker,
    so ordered results need no locking. ``completion_order`` records outcomes
    as they settle.

    ``stop_when`` is checked after every outcome; once it returns True no new
    operations start. With ``cancel_running`` the operations still in flight
    are cancelled too; otherwise they are allowed to finish.
    """

    def __init__(
        self,
        factories: Sequence[OperationFactory],
        concurrency: int,
        *,
        stop_when: Callable[[Settled[Any]], bool] | None = None,
        cancel_running: bool = False,
        on_settled: Callable[[Settled[Any]], None] | None = None,
    ):
        self.factories = list(factories)
        self.concurrency = max(1, int(concurrency))
        self.stop_when = stop_when
        self.cancel_running = cancel_running
        self.on_settled = on_settled
        self.slots: list[Settled[Any] | None] = [None] * len(self.factories)
        self.completion_order: list[Settled[Any]] = []
        self.stopped = False
        self.started = 0
        self._next_index = 0
        self._workers: list[asyncio.Task[None]] = []

    async def _worker(self) -> None:
        while not self.stopped and self._next_index < len(self.factories):
            index = self._next_index
            self._next_index += 1
            self.started += 1
            try:
                value = await self.factories[index]()
                outcome: Settled[Any] = Settled(index=index, ok=True, value=value)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                outcome = Settled(index=index, ok=False, error=e)
            self._record(outcome)

    def _record(self, outcome: Settled[Any]) -> None:
        self.slots[outcome.index] = outcome
        self.completion_order.append(outcome)
        if self.on_settled is not None:
            self.on_settled(outcome)
        if self.stopped or self.stop_when is None or not self.stop_when(outcome):
            return
        self.stopped = True
        if self.cancel_running:
            current = asyncio.current_task()
            for task in self._workers:
                if task is not current and not task.done():
                    task.cancel()

    async def run(self) -> "BoundedDispatcher":
        pool_size = min(self.concurrency, len(self.factories))
        self._workers = [asyncio.create_task(self._worker()) for _ in range(pool_size)]
        try:
            await asyncio.gather(*self._workers, return_exceptions=True)
        finally:
            for task in self._workers:
                if not task.done():
                    task.cancel()
            if self._workers:
                await asyncio.gather(*self._workers, return_exceptions=True)
        return self

    @property
    def settled(self) -> list[Settled[Any]]:
        return [s for s in self.slots if s is not None]


async def run_bounded(
    factories: Sequence[OperationFactory],
    concurrency: int,
    *,
    stop_when: Callable[[Settled[Any]], bool] | None = None,
    cancel_running: bool = False,
) -> BoundedDispatcher:
    dispatcher = BoundedDispatcher(
        factories, concurrency, stop_when=stop_when, cancel_running=cancel_running
    )
    return await dispatcher.run()
