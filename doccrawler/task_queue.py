"""
Concurrency-bounded asyncio task queue.

Two independent gates apply before a task starts:
  * at most ``concurrency`` tasks run at once;
  * at most ``interval_cap`` tasks start within any ``interval_ms`` window.

Ready tasks start in descending priority, FIFO within a priority. Settled tasks
move from the active map into a bounded history (oldest evicted first).
"""
from __future__ import annotations

import asyncio
import heapq
import itertools
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Deque, Dict, Iterable, List, Optional, Tuple, Union

from .events import EventBus

logger = logging.getLogger(__name__)

Operation = Callable[[], Awaitable[Any]]

_DEFAULT = object()


@dataclass
class Task:
    id: str
    operation: Operation = field(repr=False)
    priority: int = 0
    timeout_ms: Optional[float] = None
    status: str = "pending"              # pending | running | completed | failed
    added_at: float = field(default_factory=time.time)
    started_at: Optional[float] = None
    completed_at: Optional[float] = None
    failed_at: Optional[float] = None
    duration_ms: Optional[float] = None
    result: Any = field(default=None, repr=False)
    error: Optional[BaseException] = None
    future: Optional[asyncio.Future] = field(default=None, repr=False, compare=False)
    generation: int = field(default=0, repr=False, compare=False)


@dataclass
class TaskSpec:
    id: str
    operation: Operation
    priority: int = 0
    timeout_ms: Any = _DEFAULT


@dataclass
class TaskOutcome:
    id: str
    status: str                          # fulfilled | rejected
    value: Any = None
    error: Optional[BaseException] = None

    @property
    def ok(self) -> bool:
        return self.status == "fulfilled"


def _consume_exception(fut: asyncio.Future) -> None:
    # Callers may never await the future; keep asyncio from warning about it.
    if not fut.cancelled():
        fut.exception()


class TaskQueue(EventBus):
    def __init__(
        self,
        concurrency: int = 5,
        interval_ms: float = 1000,
        interval_cap: int = 5,
        timeout_ms: Optional[float] = 30000,
        throw_on_timeout: bool = False,
        max_task_history: int = 100,
    ):
        super().__init__()
        if concurrency < 1:
            raise ValueError("concurrency must be >= 1")
        self.concurrency = concurrency
        self.interval_ms = interval_ms
        self.interval_cap = max(1, interval_cap)
        self.timeout_ms = timeout_ms or None
        self.throw_on_timeout = throw_on_timeout
        self.max_task_history = max(0, int(max_task_history))

        self._heap: List[Tuple[int, int, Task]] = []
        self._seq = itertools.count()
        self._tasks: Dict[str, Task] = {}
        self._history: Dict[str, Task] = {}
        self._running = 0
        self._workers: set[asyncio.Task] = set()
        self._paused = False
        self._starts: Deque[float] = deque()
        self._timer: Optional[asyncio.TimerHandle] = None
        self._idle_waiters: List[asyncio.Future] = []
        # bumped by clear(); tasks from an older generation leave no history
        self._generation = 0

    # ---------- properties ----------
    @property
    def size(self) -> int:
        """Tasks waiting to start."""
        return len(self._heap)

    @property
    def running(self) -> int:
        return self._running

    @property
    def is_paused(self) -> bool:
        return self._paused

    def _counts(self) -> Dict[str, int]:
        return {"size": self.size, "pending": self._running}

    # ---------- enqueue ----------
    def add_task(
        self,
        task_id: str,
        operation: Operation,
        *,
        priority: int = 0,
        timeout_ms: Any = _DEFAULT,
    ) -> asyncio.Future:
        """
        Enqueue ``operation`` and return a future for its result. ``timeout_ms=None``
        disables the per-task timeout; omitted means the queue default.
        """
        loop = asyncio.get_running_loop()
        self._history.pop(task_id, None)

        task = Task(
            id=task_id,
            operation=operation,
            priority=priority,
            timeout_ms=self.timeout_ms if timeout_ms is _DEFAULT else (timeout_ms or None),
            generation=self._generation,
        )
        task.future = loop.create_future()
        task.future.add_done_callback(_consume_exception)

        self._tasks[task_id] = task
        heapq.heappush(self._heap, (-priority, next(self._seq), task))
        self.emit("task-added", self._counts())
        self._dispatch()
        return task.future

    async def add_batch(self, specs: Iterable[Union[TaskSpec, Tuple[str, Operation]]]) -> List[TaskOutcome]:
        """Enqueue all specs and wait until every one has settled."""
        futures: List[Tuple[str, asyncio.Future]] = []
        for spec in specs:
            if not isinstance(spec, TaskSpec):
                spec = TaskSpec(*spec)
            fut = self.add_task(spec.id, spec.operation, priority=spec.priority, timeout_ms=spec.timeout_ms)
            futures.append((spec.id, fut))

        results = await asyncio.gather(*(f for _, f in futures), return_exceptions=True)
        outcomes: List[TaskOutcome] = []
        for (task_id, _), res in zip(futures, results):
            if isinstance(res, BaseException):
                outcomes.append(TaskOutcome(task_id, "rejected", error=res))
            else:
                outcomes.append(TaskOutcome(task_id, "fulfilled", value=res))
        return outcomes

    # ---------- dispatch ----------
    def _rate_limit_wait(self, now: float) -> float:
        """Seconds until another start is allowed; 0 if one is allowed now."""
        window = self.interval_ms / 1000.0
        while self._starts and now - self._starts[0] >= window:
            self._starts.popleft()
        if len(self._starts) < self.interval_cap:
            return 0.0
        return max(0.0, self._starts[0] + window - now)

    def _dispatch(self) -> None:
        loop = asyncio.get_running_loop()
        while not self._paused and self._heap and self._running < self.concurrency:
            wait_s = self._rate_limit_wait(loop.time())
            if wait_s > 0:
                if self._timer is None:
                    self._timer = loop.call_later(wait_s, self._on_timer)
                return
            _, _, task = heapq.heappop(self._heap)
            if task.future is None or task.future.done():
                continue
            self._start(task, loop)
        self._check_idle()

    def _on_timer(self) -> None:
        self._timer = None
        self._dispatch()

    def _start(self, task: Task, loop: asyncio.AbstractEventLoop) -> None:
        self._running += 1
        self._starts.append(loop.time())
        task.status = "running"
        task.started_at = time.time()
        self.emit("active", self._counts())
        worker = loop.create_task(self._execute(task), name=f"task-queue:{task.id}")
        self._workers.add(worker)
        worker.add_done_callback(self._workers.discard)

    async def _call(self, task: Task) -> Tuple[bool, Any]:
        """Run the operation; returns (timed_out, result)."""
        if task.timeout_ms is None:
            return False, await task.operation()
        inner = asyncio.ensure_future(task.operation())
        try:
            done, _ = await asyncio.wait({inner}, timeout=task.timeout_ms / 1000.0)
        except asyncio.CancelledError:
            inner.cancel()
            raise
        if inner in done:
            return False, inner.result()
        inner.cancel()
        return True, None

    async def _execute(self, task: Task) -> None:
        fut = task.future
        try:
            timed_out, result = await self._call(task)
            if timed_out:
                if self.throw_on_timeout:
                    raise asyncio.TimeoutError(f"Task {task.id} timed out after {task.timeout_ms}ms")
                logger.warning("task %s timed out after %sms; settling with None", task.id, task.timeout_ms)
            task.status = "completed"
            task.completed_at = time.time()
            task.duration_ms = (task.completed_at - (task.started_at or task.completed_at)) * 1000.0
            task.result = result
            self.emit("task-succeeded", {"id": task.id, "result": result, "task": task})
            if fut is not None and not fut.done():
                fut.set_result(result)
        except Exception as e:
            task.status = "failed"
            task.error = e
            task.failed_at = time.time()
            self.emit("task-failed", {"id": task.id, "error": e, "task": task})
            if fut is not None and not fut.done():
                fut.set_exception(e)
        except asyncio.CancelledError:
            task.status = "failed"
            task.failed_at = time.time()
            if fut is not None and not fut.done():
                fut.cancel()
            raise
        finally:
            if self._tasks.get(task.id) is task:
                del self._tasks[task.id]
            self._record_history(task)
            self._running -= 1
            self.emit("task-completed", self._counts())
            self._dispatch()

    def _record_history(self, task: Task) -> None:
        if self.max_task_history <= 0 or task.generation != self._generation:
            return
        self._history.pop(task.id, None)
        self._history[task.id] = task
        while len(self._history) > self.max_task_history:
            oldest = next(iter(self._history))
            del self._history[oldest]

    def _check_idle(self) -> None:
        if self._running or self._heap:
            return
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        self.emit("idle")
        waiters, self._idle_waiters = self._idle_waiters, []
        for w in waiters:
            if not w.done():
                w.set_result(None)

    # ---------- control ----------
    async def wait_for_idle(self) -> None:
        if not self._running and not self._heap:
            return
        waiter = asyncio.get_running_loop().create_future()
        self._idle_waiters.append(waiter)
        await waiter

    def pause(self) -> None:
        self._paused = True
        self.emit("paused")

    def resume(self) -> None:
        self._paused = False
        self.emit("resumed")
        if self._heap:
            self._dispatch()

    def clear(self) -> None:
        """Drop pending tasks and forget all active and historical bookkeeping."""
        dropped = [t for _, _, t in self._heap]
        self._heap.clear()
        for t in dropped:
            if t.future is not None and not t.future.done():
                t.future.cancel()
        self._tasks.clear()
        self._history.clear()
        self._generation += 1
        self.emit("cleared")
        if dropped:
            logger.debug("task queue cleared; %d pending task(s) dropped", len(dropped))
        if not self._running:
            self._check_idle()

    def set_concurrency(self, concurrency: int) -> None:
        if concurrency < 1:
            raise ValueError("concurrency must be >= 1")
        self.concurrency = concurrency
        self.emit("concurrency-changed", {"concurrency": concurrency})
        if self._heap:
            self._dispatch()

    # ---------- introspection ----------
    def get_status(self) -> Dict[str, Any]:
        active = list(self._tasks.values())
        history = list(self._history.values())
        return {
            "size": self.size,
            "running": self._running,
            "is_paused": self._paused,
            "concurrency": self.concurrency,
            "tasks": {
                "total": len(active) + len(history),
                "pending": sum(1 for t in active if t.status == "pending"),
                "running": sum(1 for t in active if t.status == "running"),
                "completed": sum(1 for t in history if t.status == "completed"),
                "failed": sum(1 for t in history if t.status == "failed"),
            },
        }

    def get_task_details(self, task_id: str) -> Optional[Task]:
        return self._tasks.get(task_id) or self._history.get(task_id)
