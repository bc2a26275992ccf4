"""In-process event bus for queue and workflow notifications.

Queue and coordinator publish named events (``task.completed``,
``workflow.step_started``, ...) and any number of observers can
subscribe. Handlers may be plain functions or coroutines. A failing
handler is logged and never breaks the publisher.
"""

import asyncio
from collections import defaultdict
from typing import Any, Callable

import structlog

logger = structlog.get_logger(__name__)

# Task events
TASK_PROGRESS = "task.progress"
TASK_COMPLETED = "task.completed"
TASK_FAILED = "task.failed"
TASK_RETRYING = "task.retrying"
TASK_CANCELLED = "task.cancelled"

# Workflow events
WORKFLOW_STEP_STARTED = "workflow.step_started"
WORKFLOW_STEP_COMPLETED = "workflow.step_completed"
WORKFLOW_COMPLETED = "workflow.completed"
WORKFLOW_FAILED = "workflow.failed"
WORKFLOW_PAUSED = "workflow.paused"
WORKFLOW_RESUMED = "workflow.resumed"
WORKFLOW_CANCELLED = "workflow.cancelled"

WILDCARD = "*"


class EventBus:
    """Publish/subscribe registry keyed by event name."""

    def __init__(self):
        self._handlers: dict[str, list[Callable]] = defaultdict(list)

    def subscribe(self, event: str, handler: Callable) -> None:
        """Register a handler. Use ``"*"`` to receive every event."""
        if handler not in self._handlers[event]:
            self._handlers[event].append(handler)

    def unsubscribe(self, event: str, handler: Callable) -> None:
        handlers = self._handlers.get(event, [])
        if handler in handlers:
            handlers.remove(handler)

    async def publish(self, event: str, **payload: Any) -> None:
        """Deliver an event to its handlers and to wildcard handlers, in order."""
        handlers = list(self._handlers.get(event, [])) + list(self._handlers.get(WILDCARD, []))
        for handler in handlers:
            try:
                result = handler(event, payload)
                if asyncio.iscoroutine(result):
                    await result
            except Exception as e:
                logger.warning("Event handler failed", event_name=event, error=str(e))
