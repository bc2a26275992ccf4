"""Pydantic models for agent tasks and queue submissions."""

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field

from core.constants import TaskStatus, WorkflowType
from core.utils import utc_now


class TaskContext(BaseModel):
    """Where a task sits in a chain of steps."""

    previous_task_ids: list[str] = Field(default_factory=list)
    iteration_count: int = 0
    max_iterations: int = 3
    workflow_id: Optional[str] = None
    # Task that must complete before this one is dispatched
    depends_on: Optional[str] = None
    user_feedback: list[str] = Field(default_factory=list)


class TaskError(BaseModel):
    """Error recorded on a failed task. Never carries a stack trace."""

    message: str
    code: str
    retryable: bool = False


class TaskMetrics(BaseModel):
    queued_at: datetime = Field(default_factory=utc_now)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    duration_ms: Optional[int] = None
    tokens_used: int = 0
    cost: float = 0.0


class AgentTask(BaseModel):
    """A unit of work for one step function, persisted in the result store."""

    id: str
    type: str
    tenant_id: str
    owner_id: str
    priority: int = 2
    input: dict[str, Any] = Field(default_factory=dict)
    context: TaskContext = Field(default_factory=TaskContext)
    status: TaskStatus = TaskStatus.PENDING
    result: Optional[Any] = None
    error: Optional[TaskError] = None
    metrics: TaskMetrics = Field(default_factory=TaskMetrics)
    retry_count: int = 0
    max_retries: int = 3
    ttl: int = 3600

    @property
    def is_terminal(self) -> bool:
        return self.status in (TaskStatus.COMPLETE, TaskStatus.FAILED, TaskStatus.CANCELLED)


class TaskSpec(BaseModel):
    """Submission request for a single task."""

    type: str
    tenant_id: str
    owner_id: str
    input: dict[str, Any] = Field(default_factory=dict)
    priority: Optional[int] = None
    context: Optional[TaskContext] = None
    max_retries: Optional[int] = None
    ttl: Optional[int] = None


class WorkflowSubmission(BaseModel):
    """Submission request for a chain of dependent tasks built from a template."""

    workflow_type: WorkflowType
    tenant_id: str
    owner_id: str
    input: dict[str, Any] = Field(default_factory=dict)
    priority: Optional[int] = None
    # Lets the coordinator attach tasks to a workflow record it already owns
    workflow_id: Optional[str] = None


class QueueStats(BaseModel):
    """Point-in-time counters for one task type's queue."""

    type: str
    waiting: int = 0
    active: int = 0
    completed: int = 0
    failed: int = 0
    delayed: int = 0
    held: int = 0
