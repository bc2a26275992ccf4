"""
Task Queue: admission, dispatch order and lifecycle control of agent tasks.

Each task type has its own priority queue (priority, then FIFO). Task
records live in the result store; the queue keeps only in-process
bookkeeping around them:

- waiting:   ids enqueued and not yet claimed
- active:    ids claimed by a worker
- delayed:   ids waiting out a retry backoff
- held:      ids waiting for the task they depend on to complete

Every status change goes through ``transition`` under a per-task lock,
so a cancel and a completion can never interleave on the same record.
"""

import asyncio
import itertools
import weakref
from collections import Counter, defaultdict
from typing import Any, Awaitable, Callable, Optional

import structlog

from app.config import Settings, get_settings
from core import events as ev
from core.constants import TASK_TRANSITIONS, TERMINAL_TASK_STATUSES, ErrorCode, TaskPriority, TaskStatus
from core.events import EventBus
from core.exceptions import InvalidStateTransitionError, NotFoundError, QuotaExceededError, ValidationError
from core.rate_limit import FixedWindowRateLimiter, QuotaManager
from core.result_store import ResultStore, task_key, tenant_tasks_key
from core.utils import generate_id, utc_now
from tasks.models import AgentTask, QueueStats, TaskContext, TaskError, TaskSpec, WorkflowSubmission
from tasks.registry import StepRegistry
from workflow.templates import build_step_input, build_steps

logger = structlog.get_logger(__name__)

# Consulted before a held task is released; False keeps it held
DispatchGate = Callable[[AgentTask], Awaitable[bool]]


def apply_transition(task: AgentTask, target: TaskStatus) -> None:
    """Move a task to ``target`` or raise if the state machine forbids it."""
    if target not in TASK_TRANSITIONS[task.status]:
        raise InvalidStateTransitionError(task.status.value, target.value)
    task.status = target


class TaskQueue:
    """Per-type priority queues plus task lifecycle operations."""

    def __init__(
        self,
        store: ResultStore,
        registry: StepRegistry,
        events: Optional[EventBus] = None,
        settings: Optional[Settings] = None,
        rate_limiter: Optional[FixedWindowRateLimiter] = None,
        quota: Optional[QuotaManager] = None,
    ):
        self.settings = settings or get_settings()
        self._store = store
        self._registry = registry
        self.events = events or EventBus()
        self.rate_limiter = rate_limiter or FixedWindowRateLimiter(
            store,
            max_requests=self.settings.RATE_LIMIT_MAX,
            window_seconds=self.settings.RATE_LIMIT_WINDOW,
        )
        self.quota = quota or QuotaManager(
            store,
            default_tier=self.settings.DEFAULT_TIER,
            default_limit=self.settings.QUOTA_DEFAULT_LIMIT,
            usage_ttl=self.settings.QUOTA_USAGE_TTL,
        )
        self.dispatch_gate: Optional[DispatchGate] = None

        self._queues: dict[str, asyncio.PriorityQueue] = {}
        self._seq = itertools.count()
        self._waiting: dict[str, set[str]] = defaultdict(set)
        self._active: dict[str, set[str]] = defaultdict(set)
        self._delayed: dict[str, asyncio.Task] = {}
        self._delayed_types: dict[str, str] = {}
        self._held: dict[str, str] = {}  # task id -> task type
        self._dependants: dict[str, list[str]] = defaultdict(list)
        self._completed: Counter = Counter()
        self._failed: Counter = Counter()
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()
        self._cancel_events: dict[str, asyncio.Event] = {}
        self._waiters: dict[str, list[asyncio.Future]] = defaultdict(list)

    # ─── Records ──────────────────────────────────────────────

    def task_lock(self, task_id: str) -> asyncio.Lock:
        lock = self._locks.get(task_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[task_id] = lock
        return lock

    async def get_task(self, task_id: str) -> Optional[AgentTask]:
        raw = await self._store.get(task_key(task_id))
        if raw is None:
            return None
        return AgentTask.model_validate_json(raw)

    async def save_task(self, task: AgentTask) -> None:
        await self._store.put(task_key(task.id), task.model_dump_json(), ttl=task.ttl)

    async def transition(
        self,
        task_id: str,
        target: TaskStatus,
        update: Optional[Callable[[AgentTask], None]] = None,
    ) -> Optional[AgentTask]:
        """Atomically move a task to ``target``.

        Args:
            task_id: Task to move
            target: New status
            update: Optional mutation applied to the record before saving

        Returns:
            The saved task, or None if the task is gone or the
            transition is not allowed from its current status.
        """
        async with self.task_lock(task_id):
            task = await self.get_task(task_id)
            if task is None:
                return None
            try:
                apply_transition(task, target)
            except InvalidStateTransitionError as e:
                logger.debug("Transition refused", task_id=task_id, reason=e.message)
                return None
            if update:
                update(task)
            await self.save_task(task)
            return task

    def build_task(self, spec: TaskSpec) -> AgentTask:
        """Create a pending task record from a TaskSpec without persisting it."""
        return AgentTask(
            id=generate_id(spec.type.lower()),
            type=spec.type,
            tenant_id=spec.tenant_id,
            owner_id=spec.owner_id,
            priority=self.settings.DEFAULT_PRIORITY if spec.priority is None else spec.priority,
            input=dict(spec.input),
            context=spec.context.model_copy(deep=True) if spec.context else TaskContext(),
            max_retries=self.settings.DEFAULT_MAX_RETRIES if spec.max_retries is None else spec.max_retries,
            ttl=spec.ttl or self.settings.DEFAULT_TASK_TTL,
        )

    async def persist_new(self, task: AgentTask) -> None:
        """Save a new task and add it to its tenant's index."""
        await self.save_task(task)
        await self._store.push(
            tenant_tasks_key(task.tenant_id),
            task.id,
            max_length=self.settings.TASK_INDEX_MAX,
        )

    # ─── Submission ───────────────────────────────────────────

    def _validate_spec(self, task_type: str, priority: Optional[int]) -> None:
        if not self._registry.has(task_type):
            raise ValidationError(f"Unknown task type: {task_type}")
        if priority is not None and priority not in {p.value for p in TaskPriority}:
            raise ValidationError(f"Priority must be between 0 and 3, got {priority}")

    async def add_task(self, spec: TaskSpec) -> str:
        """
        Admit and enqueue a task.

        Args:
            spec: Task submission

        Returns:
            The new task id

        Raises:
            ValidationError: unknown type or bad priority
            RateLimitedError: tenant submitted too much in the current window
            QuotaExceededError: tenant used up its monthly quota for the type
        """
        self._validate_spec(spec.type, spec.priority)
        parent: Optional[AgentTask] = None
        if spec.context and spec.context.depends_on:
            parent = await self.get_task(spec.context.depends_on)
            if parent is not None and parent.status in (TaskStatus.FAILED, TaskStatus.CANCELLED):
                raise ValidationError(f"Dependency {parent.id} is {parent.status.value}")

        await self.rate_limiter.check(spec.tenant_id)
        try:
            await self.quota.reserve(spec.tenant_id, spec.type)
        except QuotaExceededError:
            await self.rate_limiter.refund(spec.tenant_id)
            raise

        task = self.build_task(spec)
        await self.persist_new(task)

        if parent is not None and parent.status != TaskStatus.COMPLETE:
            self._hold(task)
            # The parent may have finished while admission was awaiting
            parent = await self.get_task(parent.id)
            if parent is not None and parent.status == TaskStatus.COMPLETE:
                await self.release_task(task.id)
        else:
            self._enqueue(task)

        logger.info(
            "Task added",
            task_id=task.id,
            task_type=task.type,
            tenant_id=task.tenant_id,
            priority=task.priority,
        )
        return task.id

    async def add_workflow(self, submission: WorkflowSubmission) -> dict[str, Any]:
        """
        Admit a chain of dependent tasks built from a workflow template.

        The first task is enqueued; each later task is held until its
        predecessor completes. Quota is reserved for every step up
        front and released again if any step is refused.

        Returns:
            ``{"workflow_id": ..., "task_ids": [...]}``
        """
        options = submission.input.get("options") or {}
        step_types = [s.task_type for s in build_steps(submission.workflow_type, options) if not s.skipped]
        for task_type in step_types:
            self._validate_spec(task_type, submission.priority)

        await self.rate_limiter.check(submission.tenant_id)

        reserved: list[str] = []
        try:
            for task_type in step_types:
                if await self.quota.reserve(submission.tenant_id, task_type):
                    reserved.append(task_type)
        except Exception:
            for task_type in reserved:
                await self.quota.release(submission.tenant_id, task_type)
            await self.rate_limiter.refund(submission.tenant_id)
            raise

        workflow_id = submission.workflow_id or generate_id("wf")
        tasks: list[AgentTask] = []
        for task_type in step_types:
            previous_ids = [t.id for t in tasks]
            task = self.build_task(TaskSpec(
                type=task_type,
                tenant_id=submission.tenant_id,
                owner_id=submission.owner_id,
                input=build_step_input(task_type, submission.input),
                priority=submission.priority,
                context=TaskContext(
                    previous_task_ids=previous_ids,
                    workflow_id=workflow_id,
                    depends_on=previous_ids[-1] if previous_ids else None,
                    user_feedback=list(submission.input.get("feedback") or []),
                ),
            ))
            await self.persist_new(task)
            tasks.append(task)

        for i, task in enumerate(tasks):
            if i == 0:
                self._enqueue(task)
            else:
                self._hold(task)

        logger.info(
            "Workflow tasks added",
            workflow_id=workflow_id,
            workflow_type=submission.workflow_type.value,
            task_count=len(tasks),
        )
        return {"workflow_id": workflow_id, "task_ids": [t.id for t in tasks]}

    # ─── Dispatch ─────────────────────────────────────────────

    def _queue(self, task_type: str) -> asyncio.PriorityQueue:
        queue = self._queues.get(task_type)
        if queue is None:
            queue = asyncio.PriorityQueue()
            self._queues[task_type] = queue
        return queue

    def _enqueue(self, task: AgentTask) -> None:
        self._waiting[task.type].add(task.id)
        self._queue(task.type).put_nowait((task.priority, next(self._seq), task.id))

    def _hold(self, task: AgentTask) -> None:
        self._held[task.id] = task.type
        self._dependants[task.context.depends_on].append(task.id)

    async def claim(self, task_type: str) -> str:
        """Wait for the next dispatchable task id of a type.

        Ids that were cancelled while queued are skipped.
        """
        queue = self._queue(task_type)
        while True:
            _, _, task_id = await queue.get()
            waiting = self._waiting[task_type]
            if task_id in waiting:
                waiting.discard(task_id)
                self._active[task_type].add(task_id)
                return task_id

    def cancel_event(self, task_id: str) -> asyncio.Event:
        """Cooperative cancellation flag for a running task."""
        event = self._cancel_events.get(task_id)
        if event is None:
            event = asyncio.Event()
            self._cancel_events[task_id] = event
        return event

    async def release_task(self, task_id: str) -> bool:
        """Dispatch a held task, unless the dispatch gate keeps it held."""
        if task_id not in self._held:
            return False
        task = await self.get_task(task_id)
        if task is None or task.status != TaskStatus.PENDING:
            self._drop_hold(task_id)
            return False
        if self.dispatch_gate is not None and not await self.dispatch_gate(task):
            logger.info("Held task kept by dispatch gate", task_id=task_id)
            return False
        self._drop_hold(task_id)
        self._enqueue(task)
        logger.info("Held task released", task_id=task_id, task_type=task.type)
        return True

    def _drop_hold(self, task_id: str) -> None:
        self._held.pop(task_id, None)

    def schedule_retry(self, task: AgentTask, delay: float) -> None:
        """Re-enqueue a retrying task after ``delay`` seconds."""
        self._delayed_types[task.id] = task.type
        self._delayed[task.id] = asyncio.create_task(self._requeue_after(task.id, delay))

    async def _requeue_after(self, task_id: str, delay: float) -> None:
        try:
            await asyncio.sleep(delay)
        finally:
            self._delayed.pop(task_id, None)
            self._delayed_types.pop(task_id, None)
        task = await self.get_task(task_id)
        if task is not None and task.status == TaskStatus.RETRYING:
            self._enqueue(task)

    # ─── Completion bookkeeping ───────────────────────────────

    async def finish(self, task: AgentTask) -> None:
        """Account for a task that left a worker or reached a terminal status."""
        self._active[task.type].discard(task.id)
        self._cancel_events.pop(task.id, None)

        if task.status == TaskStatus.COMPLETE:
            self._completed[task.type] += 1
            for child_id in list(self._dependants.get(task.id, [])):
                await self.release_task(child_id)
            self._dependants.pop(task.id, None)
        elif task.status == TaskStatus.FAILED:
            self._failed[task.type] += 1
            await self._cancel_dependants(task.id)

        if task.status in TERMINAL_TASK_STATUSES:
            for waiter in self._waiters.pop(task.id, []):
                if not waiter.done():
                    waiter.set_result(task)

    async def _cancel_dependants(self, task_id: str) -> None:
        error = TaskError(
            message=f"Dependency {task_id} did not complete",
            code=ErrorCode.DEPENDENCY_FAILED.value,
        )
        for child_id in self._dependants.pop(task_id, []):
            await self.cancel_task(child_id, error=error)

    async def wait_for_task(self, task_id: str, timeout: Optional[float] = None) -> AgentTask:
        """Wait until a task reaches a terminal status.

        Raises:
            NotFoundError: no such task
            asyncio.TimeoutError: ``timeout`` elapsed first
        """
        task = await self.get_task(task_id)
        if task is None:
            raise NotFoundError(f"Task {task_id} not found")
        if task.status in TERMINAL_TASK_STATUSES:
            return task
        waiter = asyncio.get_running_loop().create_future()
        self._waiters[task_id].append(waiter)
        return await asyncio.wait_for(waiter, timeout)

    # ─── Control ──────────────────────────────────────────────

    async def cancel_task(self, task_id: str, error: Optional[TaskError] = None) -> bool:
        """
        Cancel a task that has not finished.

        Queued, held and delayed tasks are dropped from dispatch; a
        running task gets its cancellation flag raised. Held dependants
        are cancelled as well.

        Args:
            task_id: Task to cancel
            error: Reason recorded on the task, e.g. a failed dependency

        Returns:
            False if the task is missing or already terminal
        """
        async with self.task_lock(task_id):
            task = await self.get_task(task_id)
            if task is None or task.status in TERMINAL_TASK_STATUSES:
                return False

            previous = task.status
            apply_transition(task, TaskStatus.CANCELLED)
            task.error = error
            task.metrics.completed_at = utc_now()
            await self.save_task(task)

        self._waiting[task.type].discard(task_id)
        self._drop_hold(task_id)
        timer = self._delayed.pop(task_id, None)
        if timer is not None:
            timer.cancel()
            self._delayed_types.pop(task_id, None)
        if previous == TaskStatus.PROCESSING:
            self.cancel_event(task_id).set()
        else:
            await self.finish(task)

        await self._cancel_dependants(task_id)
        await self.events.publish(ev.TASK_CANCELLED, task_id=task_id, task_type=task.type)
        logger.info("Task cancelled", task_id=task_id, previous_status=previous.value)
        return True

    async def retry_task(self, task_id: str) -> bool:
        """Put a failed task back in the queue. Retry count and quota are untouched."""

        def reset(task: AgentTask) -> None:
            task.error = None
            task.metrics.started_at = None
            task.metrics.completed_at = None
            task.metrics.duration_ms = None

        task = await self.transition(task_id, TaskStatus.PENDING, update=reset)
        if task is None:
            return False
        self._failed[task.type] = max(0, self._failed[task.type] - 1)
        self._enqueue(task)
        logger.info("Task retried manually", task_id=task_id)
        return True

    # ─── Queries ──────────────────────────────────────────────

    def known_types(self) -> list[str]:
        return sorted(set(self._registry.available_types) | set(self._queues))

    async def get_queue_stats(self, task_type: Optional[str] = None) -> list[QueueStats]:
        types = [task_type] if task_type else self.known_types()
        delayed = Counter(self._delayed_types.values())
        held = Counter(self._held.values())
        return [
            QueueStats(
                type=t,
                waiting=len(self._waiting[t]),
                active=len(self._active[t]),
                completed=self._completed[t],
                failed=self._failed[t],
                delayed=delayed[t],
                held=held[t],
            )
            for t in types
        ]

    async def get_organization_tasks(
        self,
        tenant_id: str,
        status: Optional[TaskStatus] = None,
        task_type: Optional[str] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[AgentTask]:
        """Newest-first tasks of a tenant, filtered and paginated."""
        ids = await self._store.list_range(tenant_tasks_key(tenant_id), 0, -1)
        matched: list[AgentTask] = []
        for task_id in ids:
            task = await self.get_task(task_id)
            if task is None:
                continue
            if status is not None and task.status != status:
                continue
            if task_type is not None and task.type != task_type:
                continue
            matched.append(task)
            if len(matched) >= offset + limit:
                break
        return matched[offset:offset + limit]

    async def close(self) -> None:
        """Cancel pending retry timers."""
        timers = list(self._delayed.values())
        for timer in timers:
            timer.cancel()
        await asyncio.gather(*timers, return_exceptions=True)
        self._delayed.clear()
        self._delayed_types.clear()
