"""Tests for workflow construction, execution modes and control."""

import asyncio

import pytest

from app.engine import create_engine
from core.constants import StepStatus, TaskStatus, WorkflowStatus, WorkflowType
from core.exceptions import (
    ExternalServiceError,
    MissingUpstreamResultError,
    NotFoundError,
    QuotaExceededError,
    StepValidationError,
    ValidationError,
)
from core.rate_limit import TIER_QUOTAS


class EventWaiter:
    """Resolve when a workflow event fires for a given workflow."""

    def __init__(self, events, name: str):
        self._name = name
        self._futures: dict[str, asyncio.Future] = {}
        self.seen: list[str] = []
        events.subscribe(name, self._handle)

    def _future(self, workflow_id: str) -> asyncio.Future:
        if workflow_id not in self._futures:
            self._futures[workflow_id] = asyncio.get_running_loop().create_future()
        return self._futures[workflow_id]

    async def _handle(self, event, payload):
        self.seen.append(payload["workflow_id"])
        future = self._future(payload["workflow_id"])
        if not future.done():
            future.set_result(payload)

    async def wait(self, workflow_id: str, timeout: float = 2.0):
        return await asyncio.wait_for(self._future(workflow_id), timeout)


class Gate:
    """Step wrapper that blocks until opened."""

    def __init__(self, step):
        self._step = step
        self.started = asyncio.Event()
        self.opened = asyncio.Event()
        self.workflow_id = None
        self.task_id = None

    async def __call__(self, run):
        self.workflow_id = run.task.context.workflow_id
        self.task_id = run.task.id
        self.started.set()
        await self.opened.wait()
        return await self._step(run)


async def start_sync(coordinator, workflow_type="create", workflow_input=None, **kwargs):
    started = await coordinator.start_workflow(workflow_type, workflow_input or {}, "org_1", "user_1", **kwargs)
    return started["workflow"]


class TestConstruction:
    @pytest.mark.asyncio
    async def test_unknown_workflow_type(self, coordinator):
        with pytest.raises(ValidationError):
            await start_sync(coordinator, "rewrite")

    @pytest.mark.asyncio
    async def test_code_only_requires_upstream_results(self, coordinator, architecture):
        with pytest.raises(MissingUpstreamResultError) as exc_info:
            await start_sync(coordinator, "code-only", {"architecture": architecture})
        assert exc_info.value.kinds == ["design"]
        # Nothing was persisted
        assert await coordinator.queue.get_organization_tasks("org_1") == []

    @pytest.mark.asyncio
    async def test_analyze_only_requires_url(self, coordinator):
        with pytest.raises(MissingUpstreamResultError) as exc_info:
            await start_sync(coordinator, "analyze-only")
        assert exc_info.value.kinds == ["url"]

    @pytest.mark.asyncio
    async def test_unregistered_step(self, settings, store):
        engine = create_engine(settings=settings, store=store)
        with pytest.raises(ValidationError):
            await engine.coordinator.start_workflow("create", {}, "org_1", "user_1")

    @pytest.mark.asyncio
    async def test_bad_priority(self, coordinator):
        with pytest.raises(ValidationError):
            await start_sync(coordinator, priority=7)

    @pytest.mark.asyncio
    async def test_unknown_previous_workflow(self, coordinator):
        with pytest.raises(NotFoundError):
            await start_sync(coordinator, "code-only", {"previous_workflow_id": "wf_missing"})


class TestSyncExecution:
    @pytest.mark.asyncio
    async def test_create_runs_steps_in_order(self, coordinator, design):
        workflow = await start_sync(coordinator, "create", {"prompt": "a bakery", "options": {"industry": "food"}})

        assert workflow.status == WorkflowStatus.COMPLETED
        assert [s.task_type for s in workflow.steps] == ["ARCHITECT", "DESIGN", "CODE"]
        assert all(s.status == StepStatus.COMPLETED for s in workflow.steps)
        assert workflow.output.architecture["prompt"] == "a bakery"
        assert workflow.output.design == design
        assert "pages/home.tsx" in workflow.output.code["files"]
        assert workflow.metrics.total_tokens == 150
        assert workflow.metrics.total_duration_ms is not None

        stored = await coordinator.get_workflow(workflow.id)
        assert stored.status == WorkflowStatus.COMPLETED
        assert stored.output.code == workflow.output.code

    @pytest.mark.asyncio
    async def test_step_tasks_are_recorded(self, coordinator):
        workflow = await start_sync(coordinator)
        code_task = await coordinator.queue.wait_for_task(workflow.steps[2].task_id, timeout=1)
        assert code_task.status == TaskStatus.COMPLETE
        assert code_task.context.workflow_id == workflow.id
        assert code_task.context.previous_task_ids == [workflow.steps[0].task_id, workflow.steps[1].task_id]

    @pytest.mark.asyncio
    async def test_workflow_events(self, engine, coordinator):
        seen = []
        engine.events.subscribe("*", lambda event, payload: seen.append(event) if event.startswith("workflow.") else None)
        await start_sync(coordinator)
        assert seen == [
            "workflow.step_started", "workflow.step_completed",
            "workflow.step_started", "workflow.step_completed",
            "workflow.step_started", "workflow.step_completed",
            "workflow.completed",
        ]

    @pytest.mark.asyncio
    async def test_create_options(self, coordinator):
        workflow = await start_sync(coordinator, "create", {
            "url": "https://example.com",
            "options": {"skip_code": True, "include_analysis": True},
        })
        statuses = {s.task_type: s.status for s in workflow.steps}
        assert statuses == {
            "ARCHITECT": StepStatus.COMPLETED,
            "DESIGN": StepStatus.COMPLETED,
            "CODE": StepStatus.SKIPPED,
            "ANALYZE": StepStatus.COMPLETED,
        }
        assert workflow.output.analysis["url"] == "https://example.com"
        assert workflow.output.code is None

    @pytest.mark.asyncio
    async def test_code_only_uses_given_results(self, coordinator, architecture, design):
        workflow = await start_sync(coordinator, "code-only", {"architecture": architecture, "design": design})
        assert [s.status for s in workflow.steps] == [StepStatus.SKIPPED, StepStatus.SKIPPED, StepStatus.COMPLETED]
        assert workflow.output.code["files"]

    @pytest.mark.asyncio
    async def test_inherits_previous_output(self, coordinator):
        first = await start_sync(coordinator)
        second = await start_sync(coordinator, "code-only", {"previous_workflow_id": first.id})
        assert second.status == WorkflowStatus.COMPLETED
        assert second.input.architecture == first.output.architecture

    @pytest.mark.asyncio
    async def test_fatal_step_failure(self, engine, coordinator):
        async def broken_design(run):
            raise StepValidationError("palette missing")

        engine.register_step("DESIGN", broken_design)
        workflow = await start_sync(coordinator)

        assert workflow.status == WorkflowStatus.FAILED
        assert workflow.error.code == "VALIDATION_ERROR"
        assert [s.status for s in workflow.steps] == [StepStatus.COMPLETED, StepStatus.FAILED, StepStatus.PENDING]
        assert (await coordinator.get_workflow(workflow.id)).status == WorkflowStatus.FAILED

    @pytest.mark.asyncio
    async def test_transient_failure_recovered_once(self, engine, coordinator):
        calls = []
        original = engine.registry.get("DESIGN").fn

        async def flaky_design(run):
            calls.append(1)
            if len(calls) == 1:
                raise ExternalServiceError("generator overloaded")
            return await original(run)

        engine.register_step("DESIGN", flaky_design)
        workflow = await start_sync(coordinator)

        assert workflow.status == WorkflowStatus.COMPLETED
        assert len(calls) == 2

    @pytest.mark.asyncio
    async def test_transient_failure_recovery_exhausted(self, engine, coordinator):
        calls = []

        async def down(run):
            calls.append(1)
            raise ExternalServiceError("generator down")

        engine.register_step("DESIGN", down)
        workflow = await start_sync(coordinator)

        assert workflow.status == WorkflowStatus.FAILED
        assert workflow.error.retryable is True
        assert len(calls) == 2


class TestStreaming:
    @pytest.mark.asyncio
    async def test_event_order(self, coordinator):
        events = [e async for e in coordinator.stream_workflow("create", {"prompt": "a shop"}, "org_1", "user_1")]
        kinds = [e.type.value for e in events if e.type.value != "suggestion"]

        assert kinds == [
            "workflow",
            "step", "progress", "step",
            "step", "content", "step",
            "step", "step",
            "complete",
        ]
        assert events[0].data["steps"] == ["ARCHITECT", "DESIGN", "CODE"]
        assert events[1].data == {"task_type": "ARCHITECT", "task_id": events[1].data["task_id"], "status": "started"}
        assert events[-1].data["output"]["architecture"]["prompt"] == "a shop"

    @pytest.mark.asyncio
    async def test_suggestions_streamed_before_complete(self, engine, coordinator):
        async def sparse_architect(run):
            return {"pages": [{"name": "Home"}]}

        engine.register_step("ARCHITECT", sparse_architect)
        events = [e async for e in coordinator.stream_workflow("create", {}, "org_1", "user_1")]

        suggestions = [e for e in events if e.type.value == "suggestion"]
        assert 1 <= len(suggestions) <= 5
        assert events.index(suggestions[0]) < len(events) - 1
        assert events[-1].type.value == "complete"
        ids = [s.data["id"] for s in suggestions]
        assert "add-essential-pages" in ids

    @pytest.mark.asyncio
    async def test_precondition_failure_yields_single_error(self, coordinator):
        events = [e async for e in coordinator.stream_workflow("code-only", {}, "org_1", "user_1")]
        assert len(events) == 1
        assert events[0].type.value == "error"
        assert events[0].data["code"] == "MISSING_UPSTREAM_RESULT"

    @pytest.mark.asyncio
    async def test_step_failure_ends_with_error(self, engine, coordinator):
        async def broken_code(run):
            raise StepValidationError("no files")

        engine.register_step("CODE", broken_code)
        events = [e async for e in coordinator.stream_workflow("create", {}, "org_1", "user_1")]

        assert events[-1].type.value == "error"
        assert events[-1].data["task_type"] == "CODE"
        assert "complete" not in [e.type.value for e in events]

    @pytest.mark.asyncio
    async def test_json_lines(self, coordinator):
        lines = [e.to_json_line() async for e in coordinator.stream_workflow("create", {}, "org_1", "user_1")]
        assert lines[0].startswith('{"type":"workflow","data":')
        assert all(line.startswith('{"type":"') for line in lines)


class TestQueuedExecution:
    @pytest.mark.asyncio
    async def test_queued_workflow_completes(self, engine, coordinator):
        completed = EventWaiter(engine.events, "workflow.completed")
        started = await coordinator.start_workflow("create", {"prompt": "a gym"}, "org_1", "user_1", run_async=True)
        assert set(started) == {"workflow_id"}

        await completed.wait(started["workflow_id"])
        workflow = await coordinator.get_workflow(started["workflow_id"])
        assert workflow.status == WorkflowStatus.COMPLETED
        assert all(s.status == StepStatus.COMPLETED for s in workflow.steps)
        assert workflow.output.architecture["prompt"] == "a gym"
        assert workflow.metrics.total_tokens == 150

    @pytest.mark.asyncio
    async def test_queued_step_failure_fails_workflow(self, engine, coordinator):
        failed = EventWaiter(engine.events, "workflow.failed")

        async def broken_design(run):
            raise StepValidationError("palette missing")

        engine.register_step("DESIGN", broken_design)
        started = await coordinator.start_workflow("create", {}, "org_1", "user_1", run_async=True)
        await failed.wait(started["workflow_id"])

        workflow = await coordinator.get_workflow(started["workflow_id"])
        assert workflow.status == WorkflowStatus.FAILED
        assert workflow.steps[1].status == StepStatus.FAILED
        code_task = await coordinator.queue.wait_for_task(workflow.steps[2].task_id, timeout=1)
        assert code_task.status == TaskStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_admission_refused(self, engine, coordinator):
        for _ in range(TIER_QUOTAS["free"]["CODE"]):
            await engine.queue.quota.reserve("org_1", "CODE")

        with pytest.raises(QuotaExceededError):
            await coordinator.start_workflow("create", {}, "org_1", "user_1", run_async=True)
        assert await engine.queue.get_organization_tasks("org_1") == []


class TestControl:
    @pytest.mark.asyncio
    async def test_pause_and_resume_queued(self, engine, coordinator):
        gate = Gate(engine.registry.get("ARCHITECT").fn)
        engine.register_step("ARCHITECT", gate)
        completed = EventWaiter(engine.events, "workflow.completed")

        started = await coordinator.start_workflow("create", {}, "org_1", "user_1", run_async=True)
        workflow_id = started["workflow_id"]
        await asyncio.wait_for(gate.started.wait(), 1)

        assert await coordinator.pause_workflow(workflow_id) is True
        gate.opened.set()
        await asyncio.wait_for(engine.queue.wait_for_task(gate.task_id), 1)
        await asyncio.sleep(0.05)

        paused = await coordinator.get_workflow(workflow_id)
        assert paused.status == WorkflowStatus.PAUSED
        assert paused.steps[0].status == StepStatus.COMPLETED
        assert paused.steps[1].status == StepStatus.PENDING
        design_task = await engine.queue.get_task(paused.steps[1].task_id)
        assert design_task.status == TaskStatus.PENDING

        assert await coordinator.resume_workflow(workflow_id) is True
        await completed.wait(workflow_id)
        assert (await coordinator.get_workflow(workflow_id)).status == WorkflowStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_paused_during_last_step_completes(self, engine, coordinator):
        gate = Gate(engine.registry.get("ANALYZE").fn)
        engine.register_step("ANALYZE", gate)
        completed = EventWaiter(engine.events, "workflow.completed")

        started = await coordinator.start_workflow(
            "analyze-only", {"url": "https://example.com"}, "org_1", "user_1", run_async=True,
        )
        workflow_id = started["workflow_id"]
        await asyncio.wait_for(gate.started.wait(), 1)

        assert await coordinator.pause_workflow(workflow_id) is True
        gate.opened.set()
        await completed.wait(workflow_id)

        workflow = await coordinator.get_workflow(workflow_id)
        assert workflow.status == WorkflowStatus.COMPLETED
        assert [s.status for s in workflow.steps] == [StepStatus.COMPLETED]
        assert workflow.output.analysis["url"] == "https://example.com"
        assert workflow.metrics.total_duration_ms is not None
        # Nothing left to resume
        assert await coordinator.resume_workflow(workflow_id) is False

    @pytest.mark.asyncio
    async def test_resume_with_no_step_left_completes(self, engine, coordinator):
        completed = EventWaiter(engine.events, "workflow.completed")
        started = await coordinator.start_workflow(
            "analyze-only", {"url": "https://example.com"}, "org_1", "user_1", run_async=True,
        )
        workflow_id = started["workflow_id"]
        await completed.wait(workflow_id)

        # A record left paused after its last step finished
        workflow = await coordinator.get_workflow(workflow_id)
        workflow.status = WorkflowStatus.PAUSED
        workflow.metrics.completed_at = None
        await coordinator.save_workflow(workflow)
        resumed = EventWaiter(engine.events, "workflow.completed")

        assert await coordinator.resume_workflow(workflow_id) is True
        await resumed.wait(workflow_id)
        workflow = await coordinator.get_workflow(workflow_id)
        assert workflow.status == WorkflowStatus.COMPLETED
        assert workflow.metrics.completed_at is not None

    @pytest.mark.asyncio
    async def test_pause_and_resume_sync(self, engine, coordinator):
        gate = Gate(engine.registry.get("ARCHITECT").fn)
        engine.register_step("ARCHITECT", gate)
        completed = EventWaiter(engine.events, "workflow.completed")

        run = asyncio.create_task(start_sync(coordinator))
        await asyncio.wait_for(gate.started.wait(), 1)
        assert await coordinator.pause_workflow(gate.workflow_id) is True
        gate.opened.set()

        paused = await asyncio.wait_for(run, 1)
        assert paused.status == WorkflowStatus.PAUSED
        assert paused.steps[0].status == StepStatus.COMPLETED
        assert paused.steps[1].status == StepStatus.PENDING

        assert await coordinator.resume_workflow(gate.workflow_id) is True
        await completed.wait(gate.workflow_id)
        resumed = await coordinator.get_workflow(gate.workflow_id)
        assert resumed.status == WorkflowStatus.COMPLETED
        assert resumed.output.code is not None
        assert completed.seen == [gate.workflow_id]

    @pytest.mark.asyncio
    async def test_pause_and_resume_require_matching_status(self, coordinator):
        workflow = await start_sync(coordinator)
        assert await coordinator.pause_workflow(workflow.id) is False
        assert await coordinator.resume_workflow(workflow.id) is False
        assert await coordinator.cancel_workflow(workflow.id) is False
        assert await coordinator.pause_workflow("wf_missing") is False

    @pytest.mark.asyncio
    async def test_cancel_queued(self, engine, coordinator):
        gate = Gate(engine.registry.get("ARCHITECT").fn)
        engine.register_step("ARCHITECT", gate)

        started = await coordinator.start_workflow("create", {}, "org_1", "user_1", run_async=True)
        workflow_id = started["workflow_id"]
        await asyncio.wait_for(gate.started.wait(), 1)

        assert await coordinator.cancel_workflow(workflow_id) is True
        gate.opened.set()
        await asyncio.wait_for(engine.queue.wait_for_task(gate.task_id), 1)

        workflow = await coordinator.get_workflow(workflow_id)
        assert workflow.status == WorkflowStatus.CANCELLED
        assert all(s.status == StepStatus.CANCELLED for s in workflow.steps)
        for step in workflow.steps:
            task = await engine.queue.get_task(step.task_id)
            assert task.status == TaskStatus.CANCELLED
        assert workflow.output.architecture is None

    @pytest.mark.asyncio
    async def test_cancel_sync(self, engine, coordinator):
        gate = Gate(engine.registry.get("ARCHITECT").fn)
        engine.register_step("ARCHITECT", gate)

        run = asyncio.create_task(start_sync(coordinator))
        await asyncio.wait_for(gate.started.wait(), 1)
        assert await coordinator.cancel_workflow(gate.workflow_id) is True
        gate.opened.set()
        await asyncio.wait_for(run, 1)

        workflow = await coordinator.get_workflow(gate.workflow_id)
        assert workflow.status == WorkflowStatus.CANCELLED
        assert workflow.steps[1].status == StepStatus.CANCELLED
        assert workflow.steps[1].task_id is None

    @pytest.mark.asyncio
    async def test_external_task_cancel_cancels_queued_workflow(self, engine, coordinator):
        gate = Gate(engine.registry.get("ARCHITECT").fn)
        engine.register_step("ARCHITECT", gate)
        cancelled = EventWaiter(engine.events, "workflow.cancelled")

        started = await coordinator.start_workflow("create", {}, "org_1", "user_1", run_async=True)
        await asyncio.wait_for(gate.started.wait(), 1)
        await engine.queue.cancel_task(gate.task_id)
        gate.opened.set()

        await cancelled.wait(started["workflow_id"])
        workflow = await coordinator.get_workflow(started["workflow_id"])
        assert workflow.status == WorkflowStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_add_feedback(self, coordinator):
        workflow = await start_sync(coordinator)
        assert await coordinator.add_feedback(workflow.id, "more color") is True
        assert (await coordinator.get_workflow(workflow.id)).context.user_feedback == ["more color"]
        assert await coordinator.add_feedback("wf_missing", "x") is False


class TestRefinement:
    @pytest.mark.asyncio
    async def test_refine_completed_workflow(self, coordinator):
        original = await start_sync(coordinator, "create", {"prompt": "a bakery", "options": {"industry": "food"}})
        refined = await coordinator.refine_workflow(original.id, "make it darker")

        assert refined.type == WorkflowType.REFINE
        assert refined.status == WorkflowStatus.COMPLETED
        assert refined.input.feedback == ["make it darker"]
        assert refined.input.options.industry == "food"
        assert refined.context.iteration_count == 1
        assert refined.context.previous_versions == [original.id]
        assert refined.output.architecture["prompt"] == "make it darker"

    @pytest.mark.asyncio
    async def test_refining_twice_leaves_original_untouched(self, coordinator):
        original = await start_sync(coordinator)
        first = await coordinator.refine_workflow(original.id, "darker")
        second = await coordinator.refine_workflow(original.id, "darker")

        assert first.id != second.id
        assert first.context == second.context
        assert first.input.feedback == second.input.feedback == ["darker"]
        stored = await coordinator.get_workflow(original.id)
        assert stored.context.user_feedback == []
        assert stored.status == WorkflowStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_feedback_accumulates_across_iterations(self, coordinator):
        original = await start_sync(coordinator)
        await coordinator.add_feedback(original.id, "bigger logo")
        first = await coordinator.refine_workflow(original.id, "darker")
        second = await coordinator.refine_workflow(first.id, "rounder buttons")

        assert first.input.feedback == ["bigger logo", "darker"]
        assert second.input.feedback == ["bigger logo", "darker", "rounder buttons"]
        assert second.context.iteration_count == 2
        assert second.context.previous_versions == [original.id, first.id]

    @pytest.mark.asyncio
    async def test_refine_requires_completed_workflow(self, engine, coordinator):
        async def broken_design(run):
            raise StepValidationError("bad")

        engine.register_step("DESIGN", broken_design)
        failed = await start_sync(coordinator)
        with pytest.raises(NotFoundError):
            await coordinator.refine_workflow(failed.id, "again")
        with pytest.raises(NotFoundError):
            await coordinator.refine_workflow("wf_missing", "again")

    @pytest.mark.asyncio
    async def test_refine_queued(self, engine, coordinator):
        completed = EventWaiter(engine.events, "workflow.completed")
        original = await start_sync(coordinator)
        refined = await coordinator.refine_workflow(original.id, "darker", run_async=True)
        assert refined.type == WorkflowType.REFINE
        await completed.wait(refined.id)
