"""Agent Task Orchestration Engine.

The Engine owns every long-lived component: result store, step
registry, event bus, task queue, executor, worker pools and workflow
coordinator. Build one per process with ``create_engine()`` and pass it
to whatever needs it.

    async with create_engine() as engine:
        engine.register_step("ARCHITECT", generate_architecture)
        result = await engine.coordinator.start_workflow("create", {...}, "org_1", "user_1")
"""

from typing import Optional, Union

import structlog

from app.config import Settings, get_settings
from core.events import EventBus
from core.result_store import ResultStore, create_result_store
from tasks.base_task import BaseStep, StepFunction
from tasks.implementations.export_task import ExportStep
from tasks.registry import StepRegistration, StepRegistry
from worker.executor import TaskExecutor
from worker.pool import WorkerPool
from worker.task_queue import TaskQueue
from workflow.coordinator import WorkflowCoordinator

logger = structlog.get_logger(__name__)


class Engine:
    """Explicitly constructed orchestration engine."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        store: Optional[ResultStore] = None,
        registry: Optional[StepRegistry] = None,
        events: Optional[EventBus] = None,
    ):
        self.settings = settings or get_settings()
        self.store = store or create_result_store(self.settings)
        self.registry = registry or StepRegistry()
        self.events = events or EventBus()
        self.queue = TaskQueue(self.store, self.registry, self.events, self.settings)
        self.executor = TaskExecutor(self.queue, self.store, self.registry, self.events, self.settings)
        self.coordinator = WorkflowCoordinator(
            self.store, self.registry, self.queue, self.executor, self.events, self.settings
        )
        self.pools: dict[str, WorkerPool] = {}
        self._started = False

    @property
    def started(self) -> bool:
        return self._started

    def register_step(
        self,
        task_type: str,
        fn: Union[StepFunction, BaseStep],
        concurrency: Optional[int] = None,
    ) -> StepRegistration:
        """Register a step and, on a running engine, start its worker pool."""
        registration = self.registry.register(task_type, fn, concurrency)
        if self._started:
            self._start_pool(registration)
        return registration

    def _start_pool(self, registration: StepRegistration) -> None:
        concurrency = self.settings.concurrency_for(registration.task_type, registration.concurrency)
        pool = self.pools.get(registration.task_type)
        if pool is not None:
            pool.resize(concurrency)
            return
        pool = WorkerPool(registration.task_type, self.queue, self.executor, concurrency)
        pool.start()
        self.pools[registration.task_type] = pool

    async def start(self) -> None:
        """Start one worker pool per registered step type."""
        if self._started:
            return
        self._started = True
        for task_type in self.registry.available_types:
            self._start_pool(self.registry.get(task_type))
        logger.info(
            "Engine started",
            app=self.settings.APP_NAME,
            version=self.settings.APP_VERSION,
            step_types=self.registry.available_types,
        )

    async def stop(self) -> None:
        """Stop workers and background runs, then close the store."""
        if not self._started:
            await self.store.close()
            return
        self._started = False
        for pool in self.pools.values():
            await pool.stop()
        self.pools.clear()
        await self.coordinator.close()
        await self.queue.close()
        await self.store.close()
        logger.info("Engine stopped")

    async def __aenter__(self) -> "Engine":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()


def create_engine(
    settings: Optional[Settings] = None,
    store: Optional[ResultStore] = None,
    register_builtin_steps: bool = True,
) -> Engine:
    """
    Build an Engine from settings.

    Args:
        settings: Engine settings (defaults to environment)
        store: Result store to use instead of the configured backend
        register_builtin_steps: Register the EXPORT packaging step

    Returns:
        A stopped Engine; call ``start()`` or use it as an async context manager
    """
    engine = Engine(settings=settings, store=store)
    if register_builtin_steps:
        engine.register_step("EXPORT", ExportStep(engine.store))
    return engine
