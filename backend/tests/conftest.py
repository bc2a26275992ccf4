"""Shared pytest fixtures for the orchestration engine test suite.

Provides:
- Fast settings (tiny retry and recovery delays, no jitter)
- In-memory result store
- Engine wired with fake ARCHITECT / DESIGN / CODE / ANALYZE steps
- Queue and executor without worker pools, for driving tasks by hand
"""

import os
from typing import Any

import pytest
import pytest_asyncio

# Override settings BEFORE any app imports
os.environ.setdefault("ENVIRONMENT", "testing")
os.environ.setdefault("RESULT_STORE_BACKEND", "memory")

from app.config import Settings  # noqa: E402
from app.engine import Engine, create_engine  # noqa: E402
from core import metrics  # noqa: E402
from core.events import EventBus  # noqa: E402
from core.result_store import InMemoryResultStore  # noqa: E402
from tasks.base_task import StepRun  # noqa: E402
from tasks.registry import StepRegistry  # noqa: E402
from worker.executor import TaskExecutor  # noqa: E402
from worker.task_queue import TaskQueue  # noqa: E402


# ---------------------------------------------------------------------------
# Fake step functions
# ---------------------------------------------------------------------------

ARCHITECTURE = {
    "pages": [
        {"name": "Home", "route": "/", "sections": [{"type": "hero"}]},
        {"name": "About", "route": "/about"},
        {"name": "Contact", "route": "/contact"},
    ],
}

DESIGN = {
    "color_scheme": {"palette": {"primary": {"500": "#1d4ed8"}}, "dark_mode": True},
    "responsive": {"strategy": "mobile-first"},
}


async def architect_step(run: StepRun) -> dict[str, Any]:
    await run.report_progress("planning", 50)
    run.record_usage(tokens=100, cost=0.01)
    return {**ARCHITECTURE, "prompt": run.input.get("prompt")}


async def design_step(run: StepRun) -> dict[str, Any]:
    run.get_upstream_result("architecture")
    await run.emit_content(section="palette")
    run.record_usage(tokens=50)
    return dict(DESIGN)


async def code_step(run: StepRun) -> dict[str, Any]:
    architecture = run.get_upstream_result("architecture")
    run.get_upstream_result("design")
    return {"files": {f"pages/{p['name'].lower()}.tsx": "export default {}" for p in architecture["pages"]}}


async def analyze_step(run: StepRun) -> dict[str, Any]:
    return {"url": run.input["url"], "tech": ["react"]}


def register_fake_steps(registry_or_engine) -> None:
    register = registry_or_engine.register_step if isinstance(registry_or_engine, Engine) else registry_or_engine.register
    register("ARCHITECT", architect_step)
    register("DESIGN", design_step)
    register("CODE", code_step)
    register("ANALYZE", analyze_step)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture(autouse=True)
def reset_metrics():
    metrics.reset()
    yield
    metrics.reset()


@pytest.fixture
def settings() -> Settings:
    """Settings tuned for fast tests."""
    return Settings(
        ENVIRONMENT="testing",
        RESULT_STORE_BACKEND="memory",
        RETRY_BASE_DELAY=0.01,
        RETRY_MAX_DELAY=0.05,
        RETRY_JITTER=False,
        WORKFLOW_RECOVERY_DELAY=0.01,
        RATE_LIMIT_MAX=1000,
        DEFAULT_CONCURRENCY=2,
        TASK_CONCURRENCY={},
    )


@pytest.fixture
def store() -> InMemoryResultStore:
    return InMemoryResultStore()


@pytest.fixture
def registry() -> StepRegistry:
    registry = StepRegistry()
    register_fake_steps(registry)
    return registry


@pytest.fixture
def events() -> EventBus:
    return EventBus()


@pytest_asyncio.fixture
async def queue(store, registry, events, settings):
    """Task queue with no workers attached."""
    queue = TaskQueue(store, registry, events, settings)
    yield queue
    await queue.close()


@pytest.fixture
def executor(queue, store, registry, events, settings) -> TaskExecutor:
    return TaskExecutor(queue, store, registry, events, settings)


@pytest_asyncio.fixture
async def engine(settings, store):
    """Started engine with fake steps registered."""
    engine = create_engine(settings=settings, store=store)
    register_fake_steps(engine)
    await engine.start()
    yield engine
    await engine.stop()


@pytest.fixture
def coordinator(engine):
    return engine.coordinator


@pytest.fixture
def architecture() -> dict[str, Any]:
    """Architecture as produced by the fake ARCHITECT step."""
    return dict(ARCHITECTURE)


@pytest.fixture
def design() -> dict[str, Any]:
    """Design as produced by the fake DESIGN step."""
    return dict(DESIGN)
