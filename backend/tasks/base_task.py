"""
Step interface for agent task implementations.

A step is any async callable taking a StepRun and returning a JSON-able
result. Simple steps are plain functions; steps that carry metadata or
helpers can subclass BaseStep.

StepRun is the only thing a step sees of the engine: its task, the
resolved input, progress/content reporting, usage accounting and the
cooperative cancellation flag.
"""

import asyncio
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Optional

import structlog

from core.exceptions import MissingUpstreamResultError, TaskCancelledError
from core.result_store import ResultStore, result_key
from tasks.models import AgentTask, TaskContext
from tasks.payloads import INPUT_REQUIREMENTS, STEP_REQUIREMENTS, parse_input

logger = structlog.get_logger(__name__)

# (event_type, data) -> awaitable; used for progress and content events
EventSink = Callable[[str, dict[str, Any]], Awaitable[None]]


class StepRun:
    """Execution handle passed to a step function."""

    def __init__(
        self,
        task: AgentTask,
        resolved_input: Optional[dict[str, Any]] = None,
        sink: Optional[EventSink] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ):
        self.task = task
        self.input = resolved_input if resolved_input is not None else dict(task.input)
        self._sink = sink
        self._cancel_event = cancel_event or asyncio.Event()
        self.tokens_used = 0
        self.cost = 0.0

    @property
    def context(self) -> TaskContext:
        return self.task.context

    @property
    def cancelled(self) -> bool:
        """True once cancellation was requested. Poll this at safe points."""
        return self._cancel_event.is_set()

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise TaskCancelledError(self.task.id)

    def parsed_input(self) -> Any:
        """Input validated against the step type's model (dict for custom types)."""
        return parse_input(self.task.type, self.input)

    def get_upstream_result(self, kind: str) -> Any:
        """Result of an upstream step, e.g. ``architecture`` for a DESIGN step.

        Raises:
            MissingUpstreamResultError: nothing upstream produced ``kind``.
        """
        value = self.input.get(kind)
        if value is None:
            raise MissingUpstreamResultError(self.task.type, [kind])
        return value

    async def report_progress(self, stage: str, progress: float, **data: Any) -> None:
        """Report a progress stage, ``progress`` in percent."""
        await self._emit("progress", {"stage": stage, "progress": progress, **data})

    async def emit_content(self, **data: Any) -> None:
        """Emit a partial content chunk produced by the step."""
        await self._emit("content", data)

    def record_usage(self, tokens: int = 0, cost: float = 0.0) -> None:
        self.tokens_used += tokens
        self.cost += cost

    async def _emit(self, event_type: str, data: dict[str, Any]) -> None:
        if self._sink is None:
            return
        payload = {"task_id": self.task.id, "task_type": self.task.type, **data}
        try:
            await self._sink(event_type, payload)
        except Exception as e:
            logger.warning("Step event sink failed", task_id=self.task.id, error=str(e))


StepFunction = Callable[[StepRun], Awaitable[Any]]


class BaseStep(ABC):
    """
    Base class for class-based step implementations.

    Subclasses must implement:
    - execute(run) -> result
    - task_type (class attribute)
    - display_name (class attribute)
    """

    task_type: str = "base"
    display_name: str = "Base Step"
    description: str = "Abstract base step"

    @abstractmethod
    async def execute(self, run: StepRun) -> Any:
        """
        Produce the step's result.

        Args:
            run: Execution handle with resolved input and reporting helpers

        Returns:
            JSON-serializable result stored under the step's result kind
        """

    async def __call__(self, run: StepRun) -> Any:
        return await self.execute(run)


async def resolve_step_input(task: AgentTask, store: ResultStore) -> dict[str, Any]:
    """
    Build the input a step runs with.

    Each result kind the step type needs comes from the task's explicit
    input first, then from the results of ``previous_task_ids``, newest
    first.

    Args:
        task: Task about to run
        store: Store holding upstream results

    Returns:
        Copy of the task input with upstream kinds filled in

    Raises:
        MissingUpstreamResultError: a required kind or input field is missing
    """
    resolved = dict(task.input)
    missing: list[str] = []

    for kind in STEP_REQUIREMENTS.get(task.type, []):
        if resolved.get(kind) is not None:
            continue
        for previous_id in reversed(task.context.previous_task_ids):
            value = await store.get_json(result_key(previous_id, kind))
            if value is not None:
                resolved[kind] = value
                break
        else:
            missing.append(kind)

    for field in INPUT_REQUIREMENTS.get(task.type, []):
        if not resolved.get(field):
            missing.append(field)

    if missing:
        raise MissingUpstreamResultError(task.type, missing)
    return resolved
