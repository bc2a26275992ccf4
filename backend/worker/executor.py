"""
Task Executor: runs one claimed task through the state machine.

    pending|retrying -> processing -> complete
                                   -> retrying (transient failure, retries left)
                                   -> failed   (fatal failure or retries exhausted)

Every invocation ends in a transition, whatever the step function does.
A result produced after the task was cancelled is discarded.
"""

import asyncio
from typing import Any, Optional

import structlog

from app.config import Settings, get_settings
from core import events as ev
from core import metrics
from core.constants import TaskStatus
from core.events import EventBus
from core.exceptions import FatalStepError
from core.result_store import ResultStore, result_key
from core.utils import elapsed_ms, utc_now
from tasks.base_task import EventSink, StepRun, resolve_step_input
from tasks.models import AgentTask, TaskError
from tasks.payloads import result_kind_for
from tasks.registry import StepRegistry
from worker.task_queue import TaskQueue, apply_transition
from workflow.retry_strategies import RetryStrategy, error_info, is_retryable

logger = structlog.get_logger(__name__)


class TaskExecutor:
    """Drives task records through execution, retries and completion."""

    def __init__(
        self,
        queue: TaskQueue,
        store: ResultStore,
        registry: StepRegistry,
        events: Optional[EventBus] = None,
        settings: Optional[Settings] = None,
        retry_strategy: Optional[RetryStrategy] = None,
    ):
        self.settings = settings or get_settings()
        self.queue = queue
        self._store = store
        self._registry = registry
        self.events = events or queue.events
        self.retry_strategy = retry_strategy or RetryStrategy.from_settings(self.settings)

    async def execute(self, task_id: str) -> Optional[AgentTask]:
        """Run a claimed task to its next resting status."""
        task = await self.begin(task_id)
        if task is None:
            current = await self.queue.get_task(task_id)
            if current is not None:
                await self.queue.finish(current)
            return current

        try:
            result, run = await self.run_step(
                task,
                sink=self._publish_progress,
                cancel_event=self.queue.cancel_event(task.id),
            )
        except asyncio.CancelledError:
            logger.warning("Task interrupted by worker shutdown", task_id=task.id)
            await self.abort(task)
            raise
        except Exception as e:
            return await self.fail(task, e)

        return await self.complete(task, result, run)

    async def begin(self, task_id: str) -> Optional[AgentTask]:
        """Move a task to processing. None if it can no longer run."""

        def mark_started(task: AgentTask) -> None:
            task.metrics.started_at = utc_now()

        task = await self.queue.transition(task_id, TaskStatus.PROCESSING, update=mark_started)
        if task is None:
            logger.info("Skipping task that can no longer run", task_id=task_id)
            return None

        metrics.record_task_started(task.type)
        logger.info(
            "Task started",
            task_id=task.id,
            task_type=task.type,
            attempt=task.retry_count + 1,
        )
        return task

    async def run_step(
        self,
        task: AgentTask,
        sink: Optional[EventSink] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> tuple[Any, StepRun]:
        """
        Resolve a task's upstream input and invoke its step function.

        Returns:
            The step result and the StepRun it ran with

        Raises:
            MissingUpstreamResultError: upstream data is missing
            Exception: whatever the step function raised
        """
        registration = self._registry.get(task.type)
        if registration is None:
            raise FatalStepError(f"No step registered for task type {task.type}")

        resolved = await resolve_step_input(task, self._store)
        run = StepRun(task, resolved, sink=sink, cancel_event=cancel_event)
        result = await registration.fn(run)
        return result, run

    async def complete(self, task: AgentTask, result: Any, run: StepRun) -> AgentTask:
        """Store a step result and mark the task complete, unless it was cancelled."""
        kind = result_kind_for(task.type)

        async with self.queue.task_lock(task.id):
            current = await self.queue.get_task(task.id)
            if current is None or current.status != TaskStatus.PROCESSING:
                discarded = True
            else:
                discarded = False
                # Stored before the status flips so dependants always find it
                await self._store.put_json(
                    result_key(task.id, kind),
                    result,
                    ttl=self.settings.INTERMEDIATE_RESULT_TTL,
                )
                apply_transition(current, TaskStatus.COMPLETE)
                now = utc_now()
                current.result = result
                current.metrics.completed_at = now
                current.metrics.duration_ms = elapsed_ms(current.metrics.started_at or now, now)
                current.metrics.tokens_used += run.tokens_used
                current.metrics.cost += run.cost
                await self.queue.save_task(current)

        if discarded:
            logger.info("Discarding result of cancelled task", task_id=task.id)
            metrics.record_task_finished(task.type, TaskStatus.CANCELLED.value)
            if current is not None:
                await self.queue.finish(current)
            return current or task

        metrics.record_task_finished(task.type, TaskStatus.COMPLETE.value, current.metrics.duration_ms)
        logger.info(
            "Task completed",
            task_id=task.id,
            task_type=task.type,
            duration_ms=current.metrics.duration_ms,
        )
        await self.events.publish(
            ev.TASK_COMPLETED,
            task_id=task.id,
            task_type=task.type,
            workflow_id=task.context.workflow_id,
            result_kind=kind,
        )
        await self.queue.finish(current)
        return current

    async def fail(self, task: AgentTask, error: BaseException, allow_retry: bool = True) -> AgentTask:
        """
        Record a step failure.

        Transient failures with retries left move to ``retrying`` and are
        re-enqueued after a backoff; everything else moves to ``failed``.
        """
        info = error_info(error)

        if allow_retry and is_retryable(error) and task.retry_count < task.max_retries:

            def to_retrying(t: AgentTask) -> None:
                t.retry_count += 1
                t.error = TaskError(**info)

            updated = await self.queue.transition(task.id, TaskStatus.RETRYING, update=to_retrying)
            if updated is not None:
                delay = self.retry_strategy.compute_delay(updated.retry_count)
                self.queue.schedule_retry(updated, delay)
                metrics.record_task_finished(task.type, TaskStatus.RETRYING.value)
                logger.warning(
                    "Task failed, retrying",
                    task_id=task.id,
                    task_type=task.type,
                    retry_count=updated.retry_count,
                    delay=delay,
                    error=info["message"],
                )
                await self.events.publish(
                    ev.TASK_RETRYING,
                    task_id=task.id,
                    task_type=task.type,
                    retry_count=updated.retry_count,
                    delay=delay,
                    error=info,
                )
                await self.queue.finish(updated)
                return updated

        def to_failed(t: AgentTask) -> None:
            now = utc_now()
            t.error = TaskError(**info)
            t.metrics.completed_at = now
            t.metrics.duration_ms = elapsed_ms(t.metrics.started_at or now, now)

        updated = await self.queue.transition(task.id, TaskStatus.FAILED, update=to_failed)
        if updated is None:
            current = await self.queue.get_task(task.id) or task
            metrics.record_task_finished(task.type, current.status.value)
            await self.queue.finish(current)
            return current

        metrics.record_task_finished(task.type, TaskStatus.FAILED.value, updated.metrics.duration_ms)
        logger.error(
            "Task failed",
            task_id=task.id,
            task_type=task.type,
            code=info["code"],
            error=info["message"],
        )
        await self.events.publish(
            ev.TASK_FAILED,
            task_id=task.id,
            task_type=task.type,
            workflow_id=task.context.workflow_id,
            error=info,
        )
        await self.queue.finish(updated)
        return updated

    async def abort(self, task: AgentTask) -> None:
        """Cancel a running task whose step was interrupted from outside."""
        await self.queue.cancel_task(task.id)
        current = await self.queue.get_task(task.id)
        if current is not None:
            metrics.record_task_finished(task.type, current.status.value)
            await self.queue.finish(current)

    async def _publish_progress(self, event_type: str, data: dict[str, Any]) -> None:
        await self.events.publish(ev.TASK_PROGRESS, event_type=event_type, **data)
