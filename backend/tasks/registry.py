"""
Step Registry: mapping of task type tags to step functions.

The engine accepts any tag that has a registered step. Each entry may
override the worker pool concurrency configured for its type.
"""

from dataclasses import dataclass
from typing import Callable, Optional, Union

from tasks.base_task import BaseStep, StepFunction


@dataclass
class StepRegistration:
    task_type: str
    fn: StepFunction
    concurrency: Optional[int] = None
    display_name: str = ""
    description: str = ""


class StepRegistry:
    """Registry of step implementations, owned by an Engine."""

    def __init__(self):
        self._steps: dict[str, StepRegistration] = {}

    def register(
        self,
        task_type: str,
        fn: Union[StepFunction, BaseStep],
        concurrency: Optional[int] = None,
    ) -> StepRegistration:
        """Register (or replace) the step for a task type."""
        if concurrency is not None and concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        registration = StepRegistration(
            task_type=task_type,
            fn=fn,
            concurrency=concurrency,
            display_name=getattr(fn, "display_name", "") or task_type.title(),
            description=getattr(fn, "description", "") or (fn.__doc__ or "").strip(),
        )
        self._steps[task_type] = registration
        return registration

    def step(self, task_type: str, concurrency: Optional[int] = None) -> Callable:
        """Decorator form of ``register``."""

        def decorator(fn: StepFunction) -> StepFunction:
            self.register(task_type, fn, concurrency)
            return fn

        return decorator

    def get(self, task_type: str) -> Optional[StepRegistration]:
        return self._steps.get(task_type)

    def has(self, task_type: str) -> bool:
        return task_type in self._steps

    def list_all(self) -> list:
        """List registered step types with metadata."""
        return [
            {
                "task_type": reg.task_type,
                "display_name": reg.display_name,
                "description": reg.description,
                "concurrency": reg.concurrency,
            }
            for reg in self._steps.values()
        ]

    @property
    def available_types(self) -> list:
        return list(self._steps.keys())
