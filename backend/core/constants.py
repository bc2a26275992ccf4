"""Constants and enums for the task orchestration engine."""

from enum import Enum


class TaskType(str, Enum):
    """Built-in agent task types. The step registry accepts any other tag too."""

    ARCHITECT = "ARCHITECT"
    DESIGN = "DESIGN"
    CODE = "CODE"
    ANALYZE = "ANALYZE"
    DEPLOY = "DEPLOY"
    EXPORT = "EXPORT"


class TaskStatus(str, Enum):
    """Agent task status."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETE = "complete"
    FAILED = "failed"
    RETRYING = "retrying"
    CANCELLED = "cancelled"


# Allowed task status transitions. Anything else is refused.
TASK_TRANSITIONS: dict[TaskStatus, frozenset] = {
    TaskStatus.PENDING: frozenset({TaskStatus.PROCESSING, TaskStatus.CANCELLED}),
    TaskStatus.PROCESSING: frozenset({
        TaskStatus.COMPLETE,
        TaskStatus.FAILED,
        TaskStatus.RETRYING,
        TaskStatus.CANCELLED,
    }),
    TaskStatus.RETRYING: frozenset({
        TaskStatus.PROCESSING,
        TaskStatus.FAILED,
        TaskStatus.CANCELLED,
    }),
    TaskStatus.FAILED: frozenset({TaskStatus.PENDING, TaskStatus.RETRYING}),
    TaskStatus.COMPLETE: frozenset(),
    TaskStatus.CANCELLED: frozenset(),
}

TERMINAL_TASK_STATUSES = frozenset({
    TaskStatus.COMPLETE,
    TaskStatus.FAILED,
    TaskStatus.CANCELLED,
})


class TaskPriority(int, Enum):
    """Queue priority. Lower number is dispatched first."""

    ENTERPRISE = 0
    PROFESSIONAL = 1
    STARTER = 2
    FREE = 3


class WorkflowType(str, Enum):
    """Workflow templates."""

    CREATE = "create"
    CLONE = "clone"
    REFINE = "refine"
    DESIGN_ONLY = "design-only"
    CODE_ONLY = "code-only"
    ANALYZE_ONLY = "analyze-only"


class WorkflowStatus(str, Enum):
    """Workflow status."""

    PENDING = "pending"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_WORKFLOW_STATUSES = frozenset({
    WorkflowStatus.COMPLETED,
    WorkflowStatus.FAILED,
    WorkflowStatus.CANCELLED,
})


class StepStatus(str, Enum):
    """Status of a single workflow step."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"


class ExecutionMode(str, Enum):
    """How a workflow is being driven."""

    SYNC = "sync"
    QUEUED = "queued"
    STREAM = "stream"


class SubscriptionTier(str, Enum):
    """Tenant subscription tier used to resolve quotas."""

    FREE = "free"
    STARTER = "starter"
    PROFESSIONAL = "professional"
    ENTERPRISE = "enterprise"


class ErrorCode(str, Enum):
    """Machine-readable error codes carried on task and workflow errors."""

    INTERNAL_ERROR = "INTERNAL_ERROR"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    NOT_FOUND = "NOT_FOUND"
    INVALID_STATE_TRANSITION = "INVALID_STATE_TRANSITION"
    RATE_LIMITED = "RATE_LIMITED"
    QUOTA_EXCEEDED = "QUOTA_EXCEEDED"
    TIMEOUT = "TIMEOUT"
    EXTERNAL_SERVICE_ERROR = "EXTERNAL_SERVICE_ERROR"
    MISSING_UPSTREAM_RESULT = "MISSING_UPSTREAM_RESULT"
    DEPENDENCY_FAILED = "DEPENDENCY_FAILED"
    CANCELLED = "CANCELLED"


# Step failures with these codes are transient and may be retried.
RETRYABLE_ERROR_CODES = frozenset({
    ErrorCode.RATE_LIMITED,
    ErrorCode.TIMEOUT,
    ErrorCode.EXTERNAL_SERVICE_ERROR,
})


class EventType(str, Enum):
    """Event types yielded by streaming workflow execution."""

    WORKFLOW = "workflow"
    STEP = "step"
    PROGRESS = "progress"
    CONTENT = "content"
    SUGGESTION = "suggestion"
    COMPLETE = "complete"
    ERROR = "error"
