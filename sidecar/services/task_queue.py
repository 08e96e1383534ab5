from __future__ import annotations

import asyncio
import heapq
import itertools
import time
from typing import Awaitable, Callable
from uuid import uuid4

from loguru import logger

from sidecar.config import Settings, settings as default_settings
from sidecar.models.events import EventType, TaskEvent
from sidecar.models.research import (
    ResearchDepth,
    ResearchResult,
    ResearchTask,
    TaskStatus,
    TriggerSource,
    can_transition,
)
from sidecar.services.background import BackgroundRunner
from sidecar.services.database import ResearchDatabase
from sidecar.services.dedup import jaccard, normalize_query
from sidecar.services.logger import log_task_event

TaskExecutor = Callable[[ResearchTask], Awaitable[ResearchResult]]
TaskListener = Callable[[TaskEvent, ResearchTask], Awaitable[None]]

REUSE_SIMILARITY = 0.8
RECENT_TASK_LIMIT = 200
_FINISHED = (TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.INJECTED)


class QueueFullError(RuntimeError):
    """The queue already holds its maximum number of waiting tasks."""


class TaskQueue:
    """Priority queue of research tasks executed under a global concurrency cap."""

    def __init__(
        self,
        database: ResearchDatabase,
        executor: TaskExecutor,
        *,
        runner: BackgroundRunner | None = None,
        settings: Settings | None = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.database = database
        self.executor = executor
        self.runner = runner or BackgroundRunner()
        self.settings = settings or default_settings
        self.clock = clock
        self._sleep = sleep
        self._heap: list[tuple[int, int, str]] = []
        self._seq = itertools.count()
        self._tasks: dict[str, ResearchTask] = {}
        self._running: dict[str, asyncio.Task[None]] = {}
        self._waiters: dict[str, list[asyncio.Future[ResearchTask]]] = {}
        self._listeners: list[TaskListener] = []
        self._completed = 0
        self._failed = 0
        self._started = False

    def add_listener(self, listener: TaskListener) -> None:
        self._listeners.append(listener)

    # --- Lifecycle ---

    async def start(self) -> int:
        """Fail orphaned running rows, reload queued rows, and begin dispatching."""
        recovered = await self.database.recover_stale_running(self.clock())
        if recovered:
            logger.warning(f"Marked {recovered} interrupted research tasks as failed")
        for task in await self.database.tasks_with_status(TaskStatus.QUEUED):
            if task.id not in self._tasks:
                self._push(task)
        self._started = True
        self._pump()
        return recovered

    async def stop(self) -> None:
        self._started = False
        running = list(self._running.values())
        for job in running:
            job.cancel()
        if running:
            await asyncio.gather(*running, return_exceptions=True)

    async def drain(self) -> None:
        while self._running or (self._started and self._heap):
            await asyncio.gather(*list(self._running.values()), return_exceptions=True)
            await asyncio.sleep(0)

    # --- Submission ---

    async def enqueue(
        self,
        query: str,
        *,
        depth: ResearchDepth = "medium",
        trigger: TriggerSource = TriggerSource.MANUAL,
        session_id: str | None = None,
        priority: int = 5,
        context: str | None = None,
    ) -> ResearchTask:
        reusable = self._find_reusable(query, session_id)
        if reusable is not None:
            logger.info(f"Reusing task {reusable.id} for '{query}' (status={reusable.status.value})")
            return reusable
        if len(self._heap) >= self.settings.max_queue_size:
            raise QueueFullError(f"research queue full ({self.settings.max_queue_size} waiting)")

        task = ResearchTask(
            id=uuid4().hex,
            query=query,
            depth=depth,
            status=TaskStatus.QUEUED,
            trigger=trigger,
            priority=max(1, min(10, int(priority))),
            created_at=self.clock(),
            session_id=session_id,
            context=context,
        )
        await self.database.insert_task(task)
        self._push(task)
        self._emit(EventType.TASK_QUEUED, task)
        self._pump()
        return task

    def _find_reusable(self, query: str, session_id: str | None) -> ResearchTask | None:
        cutoff = self.clock() - self.settings.queue_reuse_window_seconds
        normalized = normalize_query(query)
        for task in reversed(list(self._tasks.values())):
            if task.status == TaskStatus.FAILED or task.session_id != session_id or task.created_at < cutoff:
                continue
            if normalize_query(task.query) == normalized or jaccard(task.query, query) > REUSE_SIMILARITY:
                return task
        return None

    def _push(self, task: ResearchTask) -> None:
        heapq.heappush(self._heap, (-task.priority, next(self._seq), task.id))
        self._tasks[task.id] = task
        if len(self._tasks) > RECENT_TASK_LIMIT:
            for task_id in list(self._tasks)[: len(self._tasks) - RECENT_TASK_LIMIT]:
                if self._tasks[task_id].status in _FINISHED:
                    del self._tasks[task_id]

    def _pump(self) -> None:
        if not self._started:
            return
        while self._heap and len(self._running) < self.settings.max_concurrent_tasks:
            _, _, task_id = heapq.heappop(self._heap)
            task = self._tasks.get(task_id)
            if task is None or task.status != TaskStatus.QUEUED:
                continue
            self._running[task_id] = asyncio.create_task(self._run(task), name=f"research-{task_id}")

    # --- Execution ---

    async def _run(self, task: ResearchTask) -> None:
        try:
            task.status = TaskStatus.RUNNING
            task.started_at = self.clock()
            await self._persist(task)
            self._emit(EventType.TASK_STARTED, task)
            await self._attempt(task)
        except Exception as exc:
            logger.opt(exception=exc).error(f"Research task {task.id} crashed outside its attempts")
            if task.status not in _FINISHED:
                task.status = TaskStatus.FAILED
                task.error = str(exc) or type(exc).__name__
                task.completed_at = self.clock()
                self._failed += 1
                await self._persist(task)
                self._emit(EventType.TASK_FAILED, task)
        finally:
            self._running.pop(task.id, None)
            for waiter in self._waiters.pop(task.id, []):
                if not waiter.done():
                    waiter.set_result(task)
            self._pump()

    async def _attempt(self, task: ResearchTask) -> None:
        timeout = self.settings.depth_timeout(task.depth)
        retries = max(self.settings.retry_attempts, 0)
        last_error = "unknown error"
        for attempt in range(1, retries + 2):
            task.attempts = attempt
            try:
                result = await asyncio.wait_for(self.executor(task), timeout=timeout)
            except asyncio.TimeoutError:
                last_error = f"timed out after {timeout:g}s"
            except Exception as exc:
                last_error = str(exc) or type(exc).__name__
            else:
                task.status = TaskStatus.COMPLETED
                task.result = result
                task.error = None
                task.completed_at = self.clock()
                await self._persist(task)
                self._completed += 1
                self._emit(EventType.TASK_COMPLETED, task)
                return
            logger.warning(f"Research task {task.id} attempt {attempt} failed: {last_error}")
            if attempt <= retries:
                await self._sleep(self.settings.retry_backoff_seconds * attempt)

        task.status = TaskStatus.FAILED
        task.error = last_error
        task.completed_at = self.clock()
        await self._persist(task)
        self._failed += 1
        self._emit(EventType.TASK_FAILED, task)

    async def _persist(self, task: ResearchTask) -> None:
        try:
            await self.database.update_task(task)
        except Exception as exc:
            logger.opt(exception=exc).error(f"Could not store research task {task.id} as {task.status.value}")

    def _emit(self, event_type: EventType, task: ResearchTask) -> None:
        event = TaskEvent(
            event=event_type,
            task_id=task.id,
            data={
                "query": task.query,
                "status": task.status.value,
                "session_id": task.session_id,
                "attempts": task.attempts,
                "error": task.error,
            },
        )
        log_task_event(task.id, event_type.value, task.status.value, {"query": task.query})
        for listener in self._listeners:
            self.runner.submit(listener(event, task), name=f"{event_type.value}-{task.id}")

    # --- Queries ---

    async def wait_for(self, task_id: str, timeout: float) -> ResearchTask:
        """Wait until a task finishes; raises TimeoutError past the timeout."""
        task = self._tasks.get(task_id)
        if task is None:
            stored = await self.database.get_task(task_id)
            if stored is None:
                raise KeyError(task_id)
            if stored.status in _FINISHED:
                return stored
            task = stored
        if task.status in _FINISHED:
            return task
        waiter: asyncio.Future[ResearchTask] = asyncio.get_running_loop().create_future()
        self._waiters.setdefault(task_id, []).append(waiter)
        return await asyncio.wait_for(asyncio.shield(waiter), timeout=timeout)

    async def mark_injected(self, task_id: str) -> bool:
        task = self._tasks.get(task_id) or await self.database.get_task(task_id)
        if task is None or not can_transition(task.status, TaskStatus.INJECTED):
            return False
        task.status = TaskStatus.INJECTED
        await self.database.set_task_status(task_id, TaskStatus.INJECTED)
        return True

    async def get_task(self, task_id: str) -> ResearchTask | None:
        return self._tasks.get(task_id) or await self.database.get_task(task_id)

    def stats(self) -> dict[str, int]:
        return {
            "queued": len(self._heap),
            "running": len(self._running),
            "completed": self._completed,
            "failed": self._failed,
            "total_processed": self._completed + self._failed,
        }
