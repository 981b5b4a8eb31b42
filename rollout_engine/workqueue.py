"""
Requeue-after scheduling for synchronous reconcile functions.

A reconcile never sleeps: it returns how long to wait, and the scheduler sets a
timer on the operator's event loop. The same object is never reconciled twice
concurrently, and at most `max_workers` reconciles run at once.
"""
import asyncio
import contextvars
import logging
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Set, Tuple

log = logging.getLogger(__name__)

Key = Tuple[str, str]


@dataclass
class ReconcileResult:
    """What a reconcile asks for next; requeue_after=None means wait for the next event."""
    requeue_after: Optional[float] = None


class RequeueScheduler:
    def __init__(
        self,
        name: str,
        reconcile: Callable[[str, str], Optional[ReconcileResult]],
        max_workers: int = 1,
        backoff_base: float = 1.0,
        backoff_max: float = 300.0,
    ):
        self.name = name
        self._reconcile = reconcile
        self._semaphore = asyncio.Semaphore(max_workers)
        self._backoff_base = backoff_base
        self._backoff_max = backoff_max
        self._timers: Dict[Key, asyncio.TimerHandle] = {}
        self._deadlines: Dict[Key, float] = {}
        self._running: Set[Key] = set()
        self._dirty: Set[Key] = set()
        self._failures: Dict[Key, int] = {}
        self._tasks: Set[asyncio.Task] = set()

    def enqueue(self, key: Key, delay: float = 0.0) -> None:
        """Schedule a reconcile of key after delay seconds. An earlier schedule wins."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + max(delay, 0.0)
        current = self._deadlines.get(key)
        if current is not None and current <= deadline:
            return

        timer = self._timers.pop(key, None)
        if timer is not None:
            timer.cancel()
        self._deadlines[key] = deadline
        self._timers[key] = loop.call_at(deadline, self._fire, key)

    def forget(self, key: Key) -> None:
        """Drop any pending schedule and failure history for key."""
        timer = self._timers.pop(key, None)
        if timer is not None:
            timer.cancel()
        self._deadlines.pop(key, None)
        self._failures.pop(key, None)
        self._dirty.discard(key)

    def scheduled_in(self, key: Key) -> Optional[float]:
        """Seconds until key's pending reconcile, None if nothing is scheduled."""
        deadline = self._deadlines.get(key)
        if deadline is None:
            return None
        return max(deadline - asyncio.get_running_loop().time(), 0.0)

    def failures(self, key: Key) -> int:
        return self._failures.get(key, 0)

    def shutdown(self) -> None:
        for timer in self._timers.values():
            timer.cancel()
        self._timers.clear()
        self._deadlines.clear()
        for task in self._tasks:
            task.cancel()

    def _fire(self, key: Key) -> None:
        self._timers.pop(key, None)
        self._deadlines.pop(key, None)
        if key in self._running:
            self._dirty.add(key)
            return

        self._running.add(key)
        task = asyncio.get_running_loop().create_task(self._run(key))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run(self, key: Key) -> None:
        try:
            async with self._semaphore:
                await self._call(key)
        finally:
            self._running.discard(key)

        if key in self._dirty:
            self._dirty.discard(key)
            self.enqueue(key)

    async def _call(self, key: Key) -> None:
        namespace, name = key
        loop = asyncio.get_running_loop()
        try:
            # Context variables set by the operator (e.g. event posting) follow the call into the thread.
            context = contextvars.copy_context()
            result = await loop.run_in_executor(None, context.run, self._reconcile, namespace, name)
        except Exception as exc:
            failures = self._failures[key] = self._failures.get(key, 0) + 1
            delay = min(self._backoff_base * 2 ** (failures - 1), self._backoff_max)
            log.error(
                f"[{namespace}/{name}] {self.name} reconcile failed (attempt {failures}), "
                f"retrying in {delay}s: {exc}"
            )
            self.enqueue(key, delay)
            return

        self._failures.pop(key, None)
        if result is not None and result.requeue_after is not None:
            self.enqueue(key, result.requeue_after)
