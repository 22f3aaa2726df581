"""Bounded-concurrency FIFO dispatcher for backend calls."""

from __future__ import annotations

import asyncio
import contextvars
import inspect
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, TypeVar

from loguru import logger

T = TypeVar("T")


@dataclass
class _Task:
    fn: Callable[..., Awaitable[Any] | Any]
    args: tuple[Any, ...]
    future: asyncio.Future[Any]
    context: contextvars.Context


class WorkQueue:
    """Start submitted work in FIFO order with at most `parallelism` running at once.

    The queue guarantees start order, not finish order. A failing task settles
    only its own future; nothing is retried, cancelled or timed out here, so a
    task that never finishes keeps its slot forever. Put timeouts on the work.
    """

    def __init__(self, parallelism: int = 1) -> None:
        if parallelism < 1:
            raise ValueError("parallelism must be a positive integer")
        self._parallelism = parallelism
        self._pending: deque[_Task] = deque()
        self._running = 0
        self._workers: set[asyncio.Task[None]] = set()

    @property
    def parallelism(self) -> int:
        return self._parallelism

    @property
    def running(self) -> int:
        return self._running

    @property
    def pending(self) -> int:
        return len(self._pending)

    def submit(self, fn: Callable[..., Awaitable[T] | T], *args: Any) -> asyncio.Future[T]:
        """Enqueue `fn(*args)` and return a future settled with its outcome."""
        future: asyncio.Future[T] = asyncio.get_running_loop().create_future()
        self._pending.append(_Task(fn, args, future, contextvars.copy_context()))
        self._dispatch()
        return future

    def _dispatch(self) -> None:
        while self._running < self._parallelism and self._pending:
            task = self._pending.popleft()
            self._running += 1
            # Run in the submitter's context, not the one of the worker that freed the slot.
            worker = asyncio.create_task(self._run(task), context=task.context)
            self._workers.add(worker)
            worker.add_done_callback(self._workers.discard)

    async def _run(self, task: _Task) -> None:
        try:
            result = task.fn(*task.args)
            if inspect.isawaitable(result):
                result = await result
        except asyncio.CancelledError:
            if not task.future.done():
                task.future.cancel()
            raise
        except Exception as exc:
            logger.debug("queue.task.failed error={}", exc)
            if not task.future.done():
                task.future.set_exception(exc)
        else:
            if not task.future.done():
                task.future.set_result(result)
        finally:
            self._running -= 1
            self._dispatch()
