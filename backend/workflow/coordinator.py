"""
Workflow Coordinator: runs multi-step agent workflows.

A workflow is an ordered list of steps built from a template. It can
be driven three ways:

- sync:   steps run in-process one after another; each step's output
          is threaded into the next step's input
- stream: like sync, but every step start/progress/content/completion
          is yielded as a WorkflowEvent
- queued: steps become dependent tasks on the TaskQueue; the
          coordinator follows task events to keep the record current

Pause stops further steps from being dispatched (a running step
finishes). Resume dispatches the next pending step again. Cancel stops
dispatch and cancels the step's task. A retryable step failure is
retried once after WORKFLOW_RECOVERY_DELAY in sync and stream mode.
"""

import asyncio
import weakref
from typing import Any, AsyncIterator, Optional, Union

import structlog

from app.config import Settings, get_settings
from core import events as ev
from core import metrics
from core.constants import (
    EventType,
    ExecutionMode,
    StepStatus,
    TERMINAL_WORKFLOW_STATUSES,
    TaskStatus,
    WorkflowStatus,
    WorkflowType,
)
from core.events import EventBus
from core.exceptions import EngineException, MissingUpstreamResultError, NotFoundError, ValidationError
from core.result_store import ResultStore, workflow_key
from core.utils import elapsed_ms, generate_id, utc_now
from tasks.base_task import EventSink
from tasks.models import AgentTask, TaskContext, TaskError, TaskSpec, WorkflowSubmission
from tasks.payloads import INPUT_REQUIREMENTS, STEP_REQUIREMENTS, result_kind_for
from tasks.registry import StepRegistry
from worker.executor import TaskExecutor
from worker.task_queue import TaskQueue
from workflow.models import StepState, Workflow, WorkflowContext, WorkflowEvent, WorkflowInput
from workflow.retry_strategies import RetryStrategy, error_info, execute_with_retry
from workflow.suggestions import derive_suggestions
from workflow.templates import StepTemplate, build_step_input, build_steps

logger = structlog.get_logger(__name__)

STREAMED_SUGGESTIONS = 5

# Result kinds a WorkflowInput can carry up front
INPUT_KINDS = ("architecture", "design", "code")

_STREAM_DONE = object()


class StepFailed(Exception):
    """Unrecovered step failure inside a sync or stream run."""

    def __init__(self, step: StepState, error: BaseException):
        super().__init__(str(error))
        self.step = step
        self.error = error


class WorkflowCoordinator:
    """Builds, runs and controls workflows."""

    def __init__(
        self,
        store: ResultStore,
        registry: StepRegistry,
        queue: TaskQueue,
        executor: TaskExecutor,
        events: Optional[EventBus] = None,
        settings: Optional[Settings] = None,
    ):
        self.settings = settings or get_settings()
        self._store = store
        self._registry = registry
        self.queue = queue
        self.executor = executor
        self.events = events or queue.events

        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()
        # workflow id -> token of the in-process run currently driving it
        self._running: dict[str, object] = {}
        self._background: set[asyncio.Task] = set()

        self.queue.dispatch_gate = self._dispatch_gate
        self.events.subscribe(ev.TASK_COMPLETED, self._on_task_completed)
        self.events.subscribe(ev.TASK_FAILED, self._on_task_failed)
        self.events.subscribe(ev.TASK_CANCELLED, self._on_task_cancelled)

    # ─── Persistence ──────────────────────────────────────────

    def _lock(self, workflow_id: str) -> asyncio.Lock:
        lock = self._locks.get(workflow_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[workflow_id] = lock
        return lock

    async def get_workflow(self, workflow_id: str) -> Optional[Workflow]:
        raw = await self._store.get(workflow_key(workflow_id))
        if raw is None:
            return None
        return Workflow.model_validate_json(raw)

    async def save_workflow(self, workflow: Workflow) -> None:
        await self._store.put(
            workflow_key(workflow.id),
            workflow.model_dump_json(),
            ttl=self.settings.WORKFLOW_TTL,
        )

    async def _save_progress(self, workflow: Workflow) -> bool:
        """Save an in-process run's view of a workflow.

        Pause, cancel and feedback applied to the stored record in the
        meantime are kept. Returns False once the workflow is cancelled.
        """
        async with self._lock(workflow.id):
            stored = await self.get_workflow(workflow.id)
            if stored is not None:
                workflow.context.user_feedback = stored.context.user_feedback
                if stored.status == WorkflowStatus.CANCELLED:
                    workflow.status = WorkflowStatus.CANCELLED
                    for step in workflow.steps:
                        if step.status in (StepStatus.PENDING, StepStatus.RUNNING):
                            step.status = StepStatus.CANCELLED
                elif stored.status == WorkflowStatus.PAUSED and workflow.status == WorkflowStatus.RUNNING:
                    workflow.status = WorkflowStatus.PAUSED
            await self.save_workflow(workflow)
        return workflow.status != WorkflowStatus.CANCELLED

    # ─── Construction ─────────────────────────────────────────

    async def _prepare(
        self,
        workflow_type: Union[WorkflowType, str],
        workflow_input: Union[WorkflowInput, dict[str, Any], None],
        tenant_id: str,
        owner_id: str,
        priority: int,
        mode: ExecutionMode,
        context: Optional[WorkflowContext] = None,
    ) -> Workflow:
        """Build a workflow record and check it can run. Nothing is persisted."""
        if isinstance(workflow_input, WorkflowInput):
            workflow_input = workflow_input.model_copy(deep=True)
        else:
            workflow_input = WorkflowInput.model_validate(workflow_input or {})
        if not 0 <= priority <= 3:
            raise ValidationError(f"Priority must be between 0 and 3, got {priority}")

        templates = build_steps(workflow_type, workflow_input.options.model_dump())
        await self._inherit_previous_output(workflow_input)
        self._check_preconditions(templates, workflow_input)

        return Workflow(
            id=generate_id("wf"),
            type=WorkflowType(workflow_type),
            mode=mode,
            tenant_id=tenant_id,
            owner_id=owner_id,
            priority=priority,
            input=workflow_input,
            steps=[
                StepState(
                    task_type=t.task_type,
                    status=StepStatus.SKIPPED if t.skipped else StepStatus.PENDING,
                )
                for t in templates
            ],
            context=context or WorkflowContext(),
        )

    async def _inherit_previous_output(self, workflow_input: WorkflowInput) -> None:
        """Fill missing input kinds from the output of ``previous_workflow_id``."""
        if not workflow_input.previous_workflow_id:
            return
        previous = await self.get_workflow(workflow_input.previous_workflow_id)
        if previous is None:
            raise NotFoundError(f"Workflow {workflow_input.previous_workflow_id} not found")
        for kind in INPUT_KINDS:
            if getattr(workflow_input, kind) is None:
                setattr(workflow_input, kind, getattr(previous.output, kind))

    def _check_preconditions(self, templates: list[StepTemplate], workflow_input: WorkflowInput) -> None:
        """Fail fast when a step needs data that neither the input nor an earlier step provides."""
        available = {kind for kind in INPUT_KINDS if getattr(workflow_input, kind) is not None}
        for template in templates:
            if template.skipped:
                continue
            if not self._registry.has(template.task_type):
                raise ValidationError(f"No step registered for task type {template.task_type}")
            missing = [k for k in STEP_REQUIREMENTS.get(template.task_type, []) if k not in available]
            missing += [
                f for f in INPUT_REQUIREMENTS.get(template.task_type, [])
                if not getattr(workflow_input, f, None)
            ]
            if missing:
                raise MissingUpstreamResultError(template.task_type, missing)
            available.add(result_kind_for(template.task_type))

    # ─── Public API ───────────────────────────────────────────

    async def start_workflow(
        self,
        workflow_type: Union[WorkflowType, str],
        workflow_input: Union[WorkflowInput, dict[str, Any], None],
        tenant_id: str,
        owner_id: str,
        priority: int = 2,
        run_async: bool = False,
        context: Optional[WorkflowContext] = None,
    ) -> dict[str, Any]:
        """
        Start a workflow.

        Args:
            workflow_type: Template to build the steps from
            workflow_input: Prompt, url, upstream results and options
            tenant_id: Tenant the work is billed to
            owner_id: User who started it
            priority: Queue priority for queued runs (0 = highest)
            run_async: Queue the steps instead of running them here
            context: Iteration context, set by refinement

        Returns:
            ``{"workflow_id": ...}`` for queued runs, plus
            ``"workflow"`` (the finished record) for sync runs

        Raises:
            MissingUpstreamResultError: a step's required data is unavailable
            ValidationError: unknown workflow type, unregistered step or bad priority
            RateLimitedError, QuotaExceededError: queued admission refused
        """
        mode = ExecutionMode.QUEUED if run_async else ExecutionMode.SYNC
        workflow = await self._prepare(workflow_type, workflow_input, tenant_id, owner_id, priority, mode, context)
        logger.info(
            "Starting workflow",
            workflow_id=workflow.id,
            workflow_type=workflow.type.value,
            mode=mode.value,
        )

        if run_async:
            await self._queue_workflow(workflow)
            return {"workflow_id": workflow.id}

        workflow.status = WorkflowStatus.RUNNING
        await self.save_workflow(workflow)
        token = self._claim_run(workflow.id)
        result = await self._execute(workflow, token)
        return {"workflow_id": workflow.id, "workflow": result}

    async def stream_workflow(
        self,
        workflow_type: Union[WorkflowType, str],
        workflow_input: Union[WorkflowInput, dict[str, Any], None],
        tenant_id: str,
        owner_id: str,
        priority: int = 2,
        context: Optional[WorkflowContext] = None,
    ) -> AsyncIterator[WorkflowEvent]:
        """
        Run a workflow in-process, yielding its events in order.

        Yields ``workflow`` first, then per step ``step`` (started), any
        ``progress``/``content`` the step emits, ``step`` (completed);
        finally up to five ``suggestion`` events and ``complete``. Any
        failure ends the stream with a single ``error`` event.
        """
        try:
            workflow = await self._prepare(
                workflow_type, workflow_input, tenant_id, owner_id, priority, ExecutionMode.STREAM, context
            )
        except EngineException as e:
            yield WorkflowEvent(type=EventType.ERROR, data=e.to_dict())
            return

        events: asyncio.Queue = asyncio.Queue()

        async def sink(event_type: str, data: dict[str, Any]) -> None:
            await events.put(WorkflowEvent(type=EventType(event_type), data=data))

        workflow.status = WorkflowStatus.RUNNING
        await self.save_workflow(workflow)
        token = self._claim_run(workflow.id)
        await sink(EventType.WORKFLOW.value, {
            "workflow_id": workflow.id,
            "steps": [s.task_type for s in workflow.steps if s.status != StepStatus.SKIPPED],
        })

        producer = asyncio.create_task(self._stream_producer(workflow, token, sink, events))
        try:
            while True:
                item = await events.get()
                if item is _STREAM_DONE:
                    break
                yield item
        finally:
            if not producer.done():
                producer.cancel()
                await asyncio.gather(producer, return_exceptions=True)

    async def _stream_producer(self, workflow: Workflow, token: object, sink: EventSink, events: asyncio.Queue) -> None:
        try:
            await self._execute(workflow, token, sink)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception("Streamed workflow crashed", workflow_id=workflow.id)
            await sink(EventType.ERROR.value, {"workflow_id": workflow.id, **error_info(e)})
        finally:
            events.put_nowait(_STREAM_DONE)

    async def pause_workflow(self, workflow_id: str) -> bool:
        """Stop dispatching further steps. Only a running workflow can be paused."""
        async with self._lock(workflow_id):
            workflow = await self.get_workflow(workflow_id)
            if workflow is None or workflow.status != WorkflowStatus.RUNNING:
                return False
            workflow.status = WorkflowStatus.PAUSED
            await self.save_workflow(workflow)

        logger.info("Workflow paused", workflow_id=workflow_id)
        await self.events.publish(ev.WORKFLOW_PAUSED, workflow_id=workflow_id)
        return True

    async def resume_workflow(self, workflow_id: str) -> bool:
        """Dispatch a paused workflow's next pending step again."""
        token: Optional[object] = None
        finished = False
        async with self._lock(workflow_id):
            workflow = await self.get_workflow(workflow_id)
            if workflow is None or workflow.status != WorkflowStatus.PAUSED:
                return False
            workflow.status = WorkflowStatus.RUNNING
            if workflow.mode == ExecutionMode.QUEUED and not any(
                s.status in (StepStatus.PENDING, StepStatus.RUNNING) for s in workflow.steps
            ):
                self._mark_completed(workflow)
                finished = True
            await self.save_workflow(workflow)
            if workflow.mode != ExecutionMode.QUEUED and workflow_id not in self._running:
                token = object()
                self._running[workflow_id] = token

        logger.info("Workflow resumed", workflow_id=workflow_id)
        await self.events.publish(ev.WORKFLOW_RESUMED, workflow_id=workflow_id)

        if finished:
            await self._queued_completed(workflow)
        elif workflow.mode == ExecutionMode.QUEUED:
            await self._release_next(workflow)
        elif token is not None:
            self._spawn(self._execute(workflow, token), name=f"resume-{workflow_id}")
        return True

    async def cancel_workflow(self, workflow_id: str) -> bool:
        """Cancel a workflow unless it already finished."""
        async with self._lock(workflow_id):
            workflow = await self.get_workflow(workflow_id)
            if workflow is None or workflow.status in TERMINAL_WORKFLOW_STATUSES:
                return False
            now = utc_now()
            workflow.status = WorkflowStatus.CANCELLED
            workflow.metrics.completed_at = now
            workflow.metrics.total_duration_ms = elapsed_ms(workflow.metrics.started_at, now)
            task_ids = []
            for step in workflow.steps:
                if step.status in (StepStatus.PENDING, StepStatus.RUNNING):
                    step.status = StepStatus.CANCELLED
                    if step.task_id:
                        task_ids.append(step.task_id)
            await self.save_workflow(workflow)

        for task_id in task_ids:
            await self.queue.cancel_task(task_id)

        metrics.record_workflow(workflow.type.value, WorkflowStatus.CANCELLED.value)
        logger.info("Workflow cancelled", workflow_id=workflow_id)
        await self.events.publish(ev.WORKFLOW_CANCELLED, workflow_id=workflow_id)
        return True

    async def add_feedback(self, workflow_id: str, feedback: str) -> bool:
        async with self._lock(workflow_id):
            workflow = await self.get_workflow(workflow_id)
            if workflow is None:
                return False
            workflow.context.user_feedback.append(feedback)
            await self.save_workflow(workflow)
        return True

    async def refine_workflow(
        self,
        workflow_id: str,
        feedback: str,
        tenant_id: Optional[str] = None,
        owner_id: Optional[str] = None,
        run_async: bool = False,
    ) -> Workflow:
        """
        Start a ``refine`` workflow from a completed one.

        The new workflow carries the previous architecture, design and
        options plus the accumulated feedback. The previous workflow is
        left untouched, so refining it twice yields two independent
        refinements with the same lineage.

        Raises:
            NotFoundError: the workflow is missing or has no output
        """
        existing = await self.get_workflow(workflow_id)
        if existing is None or existing.status != WorkflowStatus.COMPLETED or not existing.output.available():
            raise NotFoundError("Workflow not found or incomplete")

        feedback_list = [*existing.context.user_feedback, feedback]
        refine_input = WorkflowInput(
            prompt=feedback,
            architecture=existing.output.architecture,
            design=existing.output.design,
            feedback=feedback_list,
            options=existing.input.options.model_copy(deep=True),
        )
        context = WorkflowContext(
            user_feedback=feedback_list,
            iteration_count=existing.context.iteration_count + 1,
            previous_versions=[*existing.context.previous_versions, existing.id],
        )

        started = await self.start_workflow(
            WorkflowType.REFINE,
            refine_input,
            tenant_id=tenant_id or existing.tenant_id,
            owner_id=owner_id or existing.owner_id,
            priority=existing.priority,
            run_async=run_async,
            context=context,
        )
        if "workflow" in started:
            return started["workflow"]
        return await self.get_workflow(started["workflow_id"])

    # ─── In-process execution ─────────────────────────────────

    def _claim_run(self, workflow_id: str) -> object:
        token = object()
        self._running[workflow_id] = token
        return token

    def _release_run(self, workflow_id: str, token: object) -> None:
        if self._running.get(workflow_id) is token:
            del self._running[workflow_id]

    def _spawn(self, coro, name: Optional[str] = None) -> asyncio.Task:
        task = asyncio.create_task(coro, name=name)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def _halted(self, workflow: Workflow, token: object, sink: Optional[EventSink]) -> bool:
        """Check the stored record for a pause or cancel before the next step."""
        async with self._lock(workflow.id):
            stored = await self.get_workflow(workflow.id)
            if stored is None or stored.status not in (WorkflowStatus.PAUSED, WorkflowStatus.CANCELLED):
                return False
            workflow.status = stored.status
            workflow.steps = stored.steps
            self._release_run(workflow.id, token)

        logger.info("Workflow run halted", workflow_id=workflow.id, status=workflow.status.value)
        if sink:
            await sink(EventType.WORKFLOW.value, {"workflow_id": workflow.id, "status": workflow.status.value})
        return True

    async def _execute(self, workflow: Workflow, token: object, sink: Optional[EventSink] = None) -> Workflow:
        """Run the remaining pending steps of a workflow in order."""
        try:
            for step in workflow.steps:
                if step.status != StepStatus.PENDING:
                    continue
                if await self._halted(workflow, token, sink):
                    return workflow
                if not await self._run_step(workflow, step, sink):
                    return workflow
        except StepFailed as failure:
            await self._fail(workflow, failure, sink)
            return workflow
        except asyncio.CancelledError:
            await self.cancel_workflow(workflow.id)
            raise
        finally:
            self._release_run(workflow.id, token)

        await self._finish(workflow, sink)
        return workflow

    def _step_task(self, workflow: Workflow, step: StepState) -> AgentTask:
        previous_ids = [
            s.task_id for s in workflow.steps
            if s.task_id and s.status == StepStatus.COMPLETED
        ]
        return self.queue.build_task(TaskSpec(
            type=step.task_type,
            tenant_id=workflow.tenant_id,
            owner_id=workflow.owner_id,
            input=build_step_input(step.task_type, workflow.input.model_dump(), workflow.output.available()),
            priority=workflow.priority,
            context=TaskContext(
                previous_task_ids=previous_ids,
                workflow_id=workflow.id,
                iteration_count=workflow.context.iteration_count,
                user_feedback=list(workflow.context.user_feedback),
            ),
        ))

    async def _run_step(self, workflow: Workflow, step: StepState, sink: Optional[EventSink]) -> bool:
        """
        Run one step to completion, retrying once on a recoverable error.

        Returns:
            False if the workflow was cancelled meanwhile

        Raises:
            StepFailed: the step failed and could not be recovered
        """
        task = self._step_task(workflow, step)
        await self.queue.persist_new(task)
        step.task_id = task.id
        step.status = StepStatus.RUNNING
        step.started_at = utc_now()
        if not await self._save_progress(workflow):
            await self.queue.cancel_task(task.id)
            return False

        await self.events.publish(
            ev.WORKFLOW_STEP_STARTED, workflow_id=workflow.id, task_type=step.task_type, task_id=task.id
        )
        if sink:
            await sink(EventType.STEP.value, {"task_type": step.task_type, "task_id": task.id, "status": "started"})

        running = await self.executor.begin(task.id)
        if running is None:
            step.status = StepStatus.CANCELLED
            await self._save_progress(workflow)
            return False

        async def log_recovery(attempt: int, error: BaseException, delay: float) -> None:
            logger.warning(
                "Recovering workflow step",
                workflow_id=workflow.id,
                task_type=step.task_type,
                delay=delay,
                error=str(error),
            )

        recovery = RetryStrategy.fixed(max_retries=1, delay=self.settings.WORKFLOW_RECOVERY_DELAY)
        try:
            result, run = await execute_with_retry(
                self.executor.run_step,
                recovery,
                running,
                sink=sink,
                cancel_event=self.queue.cancel_event(task.id),
                on_retry=log_recovery,
            )
        except asyncio.CancelledError:
            await self.executor.abort(running)
            raise
        except Exception as e:
            final = await self.executor.fail(running, e, allow_retry=False)
            step.completed_at = utc_now()
            if final.status == TaskStatus.CANCELLED:
                step.status = StepStatus.CANCELLED
                await self._save_progress(workflow)
                return False
            step.status = StepStatus.FAILED
            step.error = TaskError(**error_info(e))
            raise StepFailed(step, e)

        final = await self.executor.complete(running, result, run)
        step.completed_at = utc_now()
        if final.status != TaskStatus.COMPLETE:
            step.status = StepStatus.CANCELLED
            await self._save_progress(workflow)
            return False

        step.status = StepStatus.COMPLETED
        step.result = result
        workflow.output.merge(result_kind_for(step.task_type), result)
        workflow.metrics.total_tokens += run.tokens_used
        workflow.metrics.total_cost += run.cost
        still_active = await self._save_progress(workflow)

        await self.events.publish(
            ev.WORKFLOW_STEP_COMPLETED, workflow_id=workflow.id, task_type=step.task_type, task_id=task.id
        )
        if sink:
            await sink(EventType.STEP.value, {"task_type": step.task_type, "task_id": task.id, "status": "completed"})
        return still_active

    def _mark_completed(self, workflow: Workflow) -> None:
        """Attach suggestions and close the record's metrics."""
        now = utc_now()
        workflow.suggestions = derive_suggestions(workflow.output.available(), workflow.input.options.model_dump())
        workflow.status = WorkflowStatus.COMPLETED
        workflow.metrics.completed_at = now
        workflow.metrics.total_duration_ms = elapsed_ms(workflow.metrics.started_at, now)

    async def _finish(self, workflow: Workflow, sink: Optional[EventSink]) -> None:
        self._mark_completed(workflow)
        if not await self._save_progress(workflow):
            return

        metrics.record_workflow(workflow.type.value, WorkflowStatus.COMPLETED.value)
        logger.info(
            "Workflow completed",
            workflow_id=workflow.id,
            duration_ms=workflow.metrics.total_duration_ms,
            total_tokens=workflow.metrics.total_tokens,
        )
        await self.events.publish(ev.WORKFLOW_COMPLETED, workflow_id=workflow.id)

        if sink:
            for suggestion in workflow.suggestions[:STREAMED_SUGGESTIONS]:
                await sink(EventType.SUGGESTION.value, suggestion.model_dump())
            await sink(EventType.COMPLETE.value, {
                "workflow_id": workflow.id,
                "output": workflow.output.available(),
                "suggestions": [s.model_dump() for s in workflow.suggestions],
            })

    async def _fail(self, workflow: Workflow, failure: StepFailed, sink: Optional[EventSink]) -> None:
        now = utc_now()
        info = error_info(failure.error)
        workflow.status = WorkflowStatus.FAILED
        workflow.error = TaskError(**info)
        workflow.metrics.completed_at = now
        workflow.metrics.total_duration_ms = elapsed_ms(workflow.metrics.started_at, now)
        if not await self._save_progress(workflow):
            return

        metrics.record_workflow(workflow.type.value, WorkflowStatus.FAILED.value)
        logger.error(
            "Workflow failed",
            workflow_id=workflow.id,
            task_type=failure.step.task_type,
            code=info["code"],
            error=info["message"],
        )
        await self.events.publish(ev.WORKFLOW_FAILED, workflow_id=workflow.id, error=info)
        if sink:
            await sink(EventType.ERROR.value, {
                "workflow_id": workflow.id,
                "task_type": failure.step.task_type,
                **info,
            })

    # ─── Queued execution ─────────────────────────────────────

    async def _queue_workflow(self, workflow: Workflow) -> None:
        # Task events for this workflow wait on the lock until task ids are saved
        async with self._lock(workflow.id):
            await self.save_workflow(workflow)
            try:
                queued = await self.queue.add_workflow(WorkflowSubmission(
                    workflow_type=workflow.type,
                    tenant_id=workflow.tenant_id,
                    owner_id=workflow.owner_id,
                    input=workflow.input.model_dump(),
                    priority=workflow.priority,
                    workflow_id=workflow.id,
                ))
            except EngineException as e:
                workflow.status = WorkflowStatus.FAILED
                workflow.error = TaskError(**e.to_dict())
                workflow.metrics.completed_at = utc_now()
                await self.save_workflow(workflow)
                raise

            runnable = [s for s in workflow.steps if s.status != StepStatus.SKIPPED]
            for step, task_id in zip(runnable, queued["task_ids"]):
                step.task_id = task_id
            if runnable:
                runnable[0].status = StepStatus.RUNNING
                runnable[0].started_at = utc_now()
            workflow.status = WorkflowStatus.RUNNING
            await self.save_workflow(workflow)

    async def _dispatch_gate(self, task: AgentTask) -> bool:
        """Keep a paused or cancelled workflow's next task held."""
        if not task.context.workflow_id:
            return True
        workflow = await self.get_workflow(task.context.workflow_id)
        if workflow is None:
            return True
        return workflow.status == WorkflowStatus.RUNNING

    async def _release_next(self, workflow: Workflow) -> None:
        for step in workflow.steps:
            if step.task_id and step.status in (StepStatus.PENDING, StepStatus.RUNNING):
                if await self.queue.release_task(step.task_id):
                    await self._update_step(workflow.id, step.task_id, StepStatus.RUNNING)
                return

    async def _update_step(self, workflow_id: str, task_id: str, status: StepStatus) -> None:
        async with self._lock(workflow_id):
            workflow = await self.get_workflow(workflow_id)
            step = workflow.step_for_task(task_id) if workflow else None
            if step is None:
                return
            step.status = status
            step.started_at = step.started_at or utc_now()
            await self.save_workflow(workflow)

    async def _queued_step(self, payload: dict[str, Any]) -> tuple[Optional[Workflow], Optional[StepState]]:
        workflow_id = payload.get("workflow_id")
        if not workflow_id:
            return None, None
        workflow = await self.get_workflow(workflow_id)
        if workflow is None or workflow.mode != ExecutionMode.QUEUED:
            return None, None
        return workflow, workflow.step_for_task(payload["task_id"])

    async def _on_task_completed(self, event: str, payload: dict[str, Any]) -> None:
        if not payload.get("workflow_id"):
            return
        finished = False
        async with self._lock(payload["workflow_id"]):
            workflow, step = await self._queued_step(payload)
            if step is None:
                return
            task = await self.queue.get_task(payload["task_id"])
            now = utc_now()
            step.status = StepStatus.COMPLETED
            step.completed_at = now
            step.result = task.result if task else None
            workflow.output.merge(result_kind_for(step.task_type), step.result)
            if task:
                workflow.metrics.total_tokens += task.metrics.tokens_used
                workflow.metrics.total_cost += task.metrics.cost

            next_step = workflow.next_pending_step()
            # With no step left to dispatch a paused workflow finishes too
            if next_step is None and workflow.status in (WorkflowStatus.RUNNING, WorkflowStatus.PAUSED):
                self._mark_completed(workflow)
                finished = True
            elif next_step is not None and workflow.status == WorkflowStatus.RUNNING:
                # Released by the queue right after this handler returns
                next_step.status = StepStatus.RUNNING
                next_step.started_at = now
            await self.save_workflow(workflow)

        await self.events.publish(
            ev.WORKFLOW_STEP_COMPLETED,
            workflow_id=workflow.id,
            task_type=step.task_type,
            task_id=step.task_id,
        )
        if finished:
            await self._queued_completed(workflow)

    async def _queued_completed(self, workflow: Workflow) -> None:
        metrics.record_workflow(workflow.type.value, WorkflowStatus.COMPLETED.value)
        logger.info("Queued workflow completed", workflow_id=workflow.id)
        await self.events.publish(ev.WORKFLOW_COMPLETED, workflow_id=workflow.id)

    async def _on_task_failed(self, event: str, payload: dict[str, Any]) -> None:
        if not payload.get("workflow_id"):
            return
        async with self._lock(payload["workflow_id"]):
            workflow, step = await self._queued_step(payload)
            if step is None:
                return
            now = utc_now()
            step.status = StepStatus.FAILED
            step.completed_at = now
            step.error = TaskError(**payload["error"])
            if workflow.status in TERMINAL_WORKFLOW_STATUSES:
                await self.save_workflow(workflow)
                return
            workflow.status = WorkflowStatus.FAILED
            workflow.error = step.error
            workflow.metrics.completed_at = now
            workflow.metrics.total_duration_ms = elapsed_ms(workflow.metrics.started_at, now)
            await self.save_workflow(workflow)

        metrics.record_workflow(workflow.type.value, WorkflowStatus.FAILED.value)
        logger.error("Queued workflow failed", workflow_id=workflow.id, task_type=step.task_type)
        await self.events.publish(ev.WORKFLOW_FAILED, workflow_id=workflow.id, error=payload["error"])

    async def _on_task_cancelled(self, event: str, payload: dict[str, Any]) -> None:
        task = await self.queue.get_task(payload["task_id"])
        if task is None or not task.context.workflow_id:
            return
        async with self._lock(task.context.workflow_id):
            workflow, step = await self._queued_step({"workflow_id": task.context.workflow_id, "task_id": task.id})
            if step is None or step.status not in (StepStatus.PENDING, StepStatus.RUNNING):
                return
            step.status = StepStatus.CANCELLED
            step.completed_at = utc_now()
            await self.save_workflow(workflow)

        # A step cancelled on its own leaves nothing for the workflow to finish
        if workflow.status in (WorkflowStatus.RUNNING, WorkflowStatus.PAUSED):
            await self.cancel_workflow(workflow.id)

    async def close(self) -> None:
        """Cancel background continuations of resumed workflows."""
        tasks = list(self._background)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
