"""
Offline Sync Engine - Background Task Queue

Persisted, priority-ordered list of pending remote writes.

- Ordering: priority descending, then ``created_at`` ascending. Every insert
  re-sorts the full list; queues hold tens to low hundreds of tasks.
- Draining is mutually exclusive: a second ``drain()`` while one is running
  returns zero counts immediately instead of waiting.
- A failed task stays queued with ``retry_count`` incremented until it has
  been attempted ``max_retries + 1`` times; then it is dropped and counted
  as failed. Progressive backoff defers a retried task until its delay from
  ``retry_delays`` has elapsed.

Idempotency of the remote side effects is the caller's concern; the queue
guarantees at most ``max_retries + 1`` attempts, not exactly-once delivery.
"""

import asyncio
import logging
import uuid
from datetime import timedelta
from typing import Any, Awaitable, Callable, Optional, Sequence, Union

from .errors import SyncError
from .models import Clock, DrainResult, Priority, SyncTask, TaskKind, TaskOutcome, utcnow
from .storage import SYNC_QUEUE_KEY, PersistentStorage, load_as, settle

logger = logging.getLogger(__name__)

# Called with a tag such as "sync-create" to ask the platform to trigger a drain later
BackgroundSyncRegistrar = Callable[[str], Awaitable[None]]


class TaskHandle:
    """Result channel for one enqueued task."""

    def __init__(self, task_id: str, future: "asyncio.Future[TaskOutcome]"):
        self.task_id = task_id
        self._future = future

    def done(self) -> bool:
        return self._future.done()

    async def result(self, timeout: Optional[float] = None) -> TaskOutcome:
        """Wait until the task succeeds or exhausts its retries."""
        return await asyncio.wait_for(asyncio.shield(self._future), timeout)


class TaskQueue:
    """Prioritized background sync queue with bounded retry."""

    def __init__(
        self,
        storage: PersistentStorage,
        remote: Any,
        clock: Clock = utcnow,
        retry_delays: Sequence[float] = (),
        default_max_retries: int = 3,
        default_priority: Priority = Priority.MEDIUM,
        registrar: Optional[BackgroundSyncRegistrar] = None,
        auto_drain: bool = True,
        debounce: float = 1.0,
    ):
        self.storage = storage
        self.remote = remote
        self.clock = clock
        self.retry_delays = list(retry_delays)
        self.default_max_retries = default_max_retries
        self.default_priority = default_priority
        self.registrar = registrar
        self.auto_drain = auto_drain
        self.debounce = debounce

        self._processing = False
        self._waiters: dict[str, asyncio.Future] = {}
        self._debounce_handle: Optional[asyncio.TimerHandle] = None
        self._drain_task: Optional[asyncio.Task] = None

    @property
    def is_processing(self) -> bool:
        return self._processing

    # === Persistence ===

    def _load(self) -> list[SyncTask]:
        raw = load_as(self.storage, SYNC_QUEUE_KEY, list, list, "get sync queue")
        tasks = []
        for item in raw:
            try:
                tasks.append(SyncTask.from_dict(item))
            except (KeyError, TypeError, ValueError) as e:
                logger.error(f"Dropping unreadable sync task {item!r}: {e}")
        return tasks

    def _save(self, tasks: list[SyncTask]) -> None:
        tasks.sort(key=lambda t: t.sort_key)
        settle(
            self.storage.save(SYNC_QUEUE_KEY, [t.to_dict() for t in tasks]),
            None,
            "save sync queue",
        )

    def _remove(self, task_id: str) -> None:
        tasks = self._load()
        remaining = [t for t in tasks if t.id != task_id]
        if len(remaining) != len(tasks):
            self._save(remaining)

    def _is_queued(self, task_id: str) -> bool:
        return any(t.id == task_id for t in self._load())

    def _replace(self, task: SyncTask) -> None:
        tasks = self._load()
        for i, current in enumerate(tasks):
            if current.id == task.id:
                tasks[i] = task
                self._save(tasks)
                return
        # Cleared while the drain was in flight; do not resurrect it
        logger.debug(f"Task {task.id} no longer queued, not re-persisting")

    # === Enqueue ===

    async def enqueue(
        self,
        kind: Union[TaskKind, str],
        payload: dict,
        priority: Union[Priority, str, None] = None,
        max_retries: Optional[int] = None,
    ) -> str:
        """
        Add a write operation to the queue.

        Args:
            kind: create, update, delete or custom-action
            payload: ``{"resource_type", "id", "data"}`` for resource writes,
                ``{"url", "method", "body", "headers"}`` for custom actions
            priority: high, medium or low (defaults from settings)
            max_retries: retries after the first attempt

        Returns:
            The task ID
        """
        task = self._add(kind, payload, priority, max_retries)
        await self._request_processing(task.kind)
        return task.id

    async def submit(
        self,
        kind: Union[TaskKind, str],
        payload: dict,
        priority: Union[Priority, str, None] = None,
        max_retries: Optional[int] = None,
    ) -> TaskHandle:
        """Enqueue and return a handle whose ``result()`` resolves on completion."""
        future = asyncio.get_running_loop().create_future()
        task = self._add(kind, payload, priority, max_retries)
        # Registered before triggering, a registrar may drain synchronously
        self._waiters[task.id] = future
        await self._request_processing(task.kind)
        return TaskHandle(task.id, future)

    def _add(
        self,
        kind: Union[TaskKind, str],
        payload: dict,
        priority: Union[Priority, str, None],
        max_retries: Optional[int],
    ) -> SyncTask:
        """Validate and persist a new task without triggering processing."""
        task = SyncTask(
            id=self._generate_task_id(),
            kind=TaskKind(kind),
            payload=payload,
            created_at=self.clock(),
            max_retries=self.default_max_retries if max_retries is None else max_retries,
            priority=Priority(priority) if priority is not None else self.default_priority,
        )
        self._validate(task)

        tasks = self._load()
        tasks.append(task)
        self._save(tasks)
        logger.info(f"Task added to sync queue: {task.id} ({task.kind.value}, {task.priority.value})")
        return task

    @staticmethod
    def _validate(task: SyncTask) -> None:
        payload = task.payload
        if not isinstance(payload, dict):
            raise ValueError("Task payload must be a dict")
        if task.max_retries < 0:
            raise ValueError("max_retries must be non-negative")
        if task.kind == TaskKind.CUSTOM:
            if not payload.get("url"):
                raise ValueError("custom-action tasks require a 'url'")
            return
        if not payload.get("resource_type"):
            raise ValueError(f"{task.kind.value} tasks require a 'resource_type'")
        if task.kind in (TaskKind.UPDATE, TaskKind.DELETE) and payload.get("id") is None:
            raise ValueError(f"{task.kind.value} tasks require an 'id'")

    async def _request_processing(self, kind: TaskKind) -> None:
        """Hand off to the platform trigger, or drain shortly after enqueue."""
        if self.registrar is not None:
            try:
                await self.registrar(f"sync-{kind.value}")
                return
            except Exception as e:
                logger.warning(f"Background sync registration failed, processing immediately: {e}")

        if self.auto_drain:
            self._schedule_immediate_drain()

    def _schedule_immediate_drain(self) -> None:
        # Restart the timer so a burst of enqueues coalesces into one drain
        if self._debounce_handle is not None:
            self._debounce_handle.cancel()
        loop = asyncio.get_running_loop()
        self._debounce_handle = loop.call_later(self.debounce, self._start_drain_task)

    def _start_drain_task(self) -> None:
        self._debounce_handle = None
        self._drain_task = asyncio.ensure_future(self.drain())

    # === Drain ===

    async def drain(self) -> DrainResult:
        """Attempt every due task once. Returns zero counts if already draining."""
        if self._processing:
            logger.info("Sync already in progress")
            return DrainResult()

        self._processing = True
        result = DrainResult()

        try:
            for task in self._load():
                if not self._is_due(task):
                    result.deferred += 1
                    continue
                if not self._is_queued(task.id):
                    logger.debug(f"Task {task.id} cleared during drain, skipping")
                    continue

                outcome = await self._execute(task)

                if outcome.success:
                    result.processed += 1
                    self._remove(task.id)
                    self._notify_complete(outcome)
                    logger.debug(f"Task processed successfully: {task.id}")
                elif not task.retries_exhausted:
                    task.retry_count += 1
                    task.last_attempt_at = self.clock()
                    task.last_error = outcome.error
                    self._replace(task)
                    logger.warning(
                        f"Task processing failed: {task.id} "
                        f"(retry {task.retry_count}/{task.max_retries}): {outcome.error}"
                    )
                else:
                    result.failed += 1
                    self._remove(task.id)
                    self._notify_complete(outcome)
                    logger.error(f"Max retries reached for task: {task.id}: {outcome.error}")

            logger.info(
                f"Sync completed: {result.processed} processed, {result.failed} failed, "
                f"{result.deferred} deferred"
            )
        finally:
            self._processing = False

        return result

    def _is_due(self, task: SyncTask) -> bool:
        if task.retry_count == 0 or not self.retry_delays or task.last_attempt_at is None:
            return True
        delay = self.retry_delays[min(task.retry_count, len(self.retry_delays)) - 1]
        return self.clock() >= task.last_attempt_at + timedelta(seconds=delay)

    async def _execute(self, task: SyncTask) -> TaskOutcome:
        """Dispatch one task by kind to the matching remote write."""
        payload = task.payload
        try:
            if task.kind == TaskKind.CREATE:
                data = await self.remote.create(payload["resource_type"], payload.get("data", {}))
            elif task.kind == TaskKind.UPDATE:
                data = await self.remote.update(
                    payload["resource_type"], payload["id"], payload.get("data", {})
                )
            elif task.kind == TaskKind.DELETE:
                data = await self.remote.delete(payload["resource_type"], payload["id"])
            else:
                data = await self.remote.request(
                    payload.get("method", "POST"),
                    payload["url"],
                    body=payload.get("body"),
                    headers=payload.get("headers"),
                )
        except SyncError as e:
            return TaskOutcome(task_id=task.id, success=False, error=str(e))
        except (KeyError, TypeError, ValueError) as e:
            return TaskOutcome(task_id=task.id, success=False, error=f"Malformed task payload: {e!r}")

        return TaskOutcome(task_id=task.id, success=True, data=data)

    def _notify_complete(self, outcome: TaskOutcome) -> None:
        future = self._waiters.pop(outcome.task_id, None)
        if future is not None and not future.done():
            future.set_result(outcome)

    # === Status and maintenance ===

    def pending_count(self) -> int:
        return len(self._load())

    def get_queue_status(self) -> dict:
        """Get sync queue status."""
        tasks = self._load()
        return {
            "pending": len(tasks),
            "processing": self._processing,
            "tasks": [
                {
                    "id": t.id,
                    "kind": t.kind.value,
                    "retry_count": t.retry_count,
                    "priority": t.priority.value,
                }
                for t in tasks
            ],
        }

    def clear(self) -> None:
        """Drop every pending task."""
        self._save([])
        for future in self._waiters.values():
            future.cancel()
        self._waiters.clear()
        logger.info("Sync queue cleared")

    async def retry_failed_tasks(self) -> DrainResult:
        """Drain only if some task has already failed at least once."""
        failed = [t for t in self._load() if t.retry_count > 0]
        if not failed:
            return DrainResult()
        logger.info(f"Retrying {len(failed)} failed tasks")
        return await self.drain()

    async def process_pending_on_startup(self) -> DrainResult:
        """Drain once if tasks survived a restart."""
        pending = self.pending_count()
        if not pending:
            return DrainResult()
        logger.info(f"Found {pending} pending sync tasks")
        return await self.drain()

    async def close(self) -> None:
        """Cancel a scheduled drain and wait for a running one."""
        if self._debounce_handle is not None:
            self._debounce_handle.cancel()
            self._debounce_handle = None
        if self._drain_task is not None and not self._drain_task.done():
            await self._drain_task

    @staticmethod
    def _generate_task_id() -> str:
        return f"task-{uuid.uuid4().hex}"
