"""BackgroundTaskQueue: fire-and-forget side work off the request path.

Tasks are coroutine factories queued on an asyncio.Queue. A single worker
runs them one at a time; failures are recorded and logged, never raised to
the submitter. Without a running worker nothing executes until drain().
"""

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime

import structlog

logger = structlog.get_logger(__name__)

CoroFactory = Callable[[], Awaitable[object]]


@dataclass(frozen=True)
class TaskFailure:
    name: str
    error: str
    at: datetime = field(default_factory=lambda: datetime.now(UTC))


class BackgroundTaskQueue:
    def __init__(self, max_failures: int = 200):
        self._queue: asyncio.Queue[tuple[str, CoroFactory]] = asyncio.Queue()
        self._worker: asyncio.Task | None = None
        self.max_failures = max_failures
        self.failures: list[TaskFailure] = []
        self.completed = 0

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    @property
    def running(self) -> bool:
        return self._worker is not None and not self._worker.done()

    def submit(self, name: str, coro_factory: CoroFactory) -> None:
        """Queue a task. Never blocks and never raises for the caller."""
        self._queue.put_nowait((name, coro_factory))
        logger.debug("background.task.submitted", task=name, pending=self._queue.qsize())

    async def _run_one(self, name: str, coro_factory: CoroFactory) -> None:
        try:
            await coro_factory()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            failure = TaskFailure(name=name, error=f"{type(exc).__name__}: {exc}")
            self.failures.append(failure)
            del self.failures[: -self.max_failures]
            logger.warning("background.task.failed", task=name, error=failure.error[:240])
        else:
            self.completed += 1
            logger.debug("background.task.completed", task=name)

    async def drain(self) -> None:
        """Run every queued task in the current coroutine."""
        while not self._queue.empty():
            name, coro_factory = self._queue.get_nowait()
            try:
                await self._run_one(name, coro_factory)
            finally:
                self._queue.task_done()

    async def _work(self) -> None:
        while True:
            name, coro_factory = await self._queue.get()
            try:
                await self._run_one(name, coro_factory)
            finally:
                self._queue.task_done()

    def start(self) -> None:
        if self.running:
            return
        self._worker = asyncio.create_task(self._work(), name="factory-background-worker")
        logger.info("background.worker.started")

    async def stop(self) -> None:
        if self._worker is None:
            return
        self._worker.cancel()
        try:
            await self._worker
        except asyncio.CancelledError:
            pass
        self._worker = None
        logger.info("background.worker.stopped", pending=self._queue.qsize(), failures=len(self.failures))
