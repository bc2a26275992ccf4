"""Pydantic models for workflows, their steps, events and suggestions."""

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from core.constants import EventType, ExecutionMode, StepStatus, WorkflowStatus, WorkflowType
from core.utils import utc_now
from tasks.models import TaskError


class WorkflowOptions(BaseModel):
    model_config = ConfigDict(extra="allow")

    industry: Optional[str] = None
    style: Optional[str] = None
    target_audience: Optional[str] = None
    brand_colors: list[str] = Field(default_factory=list)
    reference_image: Optional[str] = None
    include_tests: bool = False
    skip_design: bool = False
    skip_code: bool = False
    include_analysis: bool = False


class WorkflowInput(BaseModel):
    """What a workflow starts from. Any result kind may be supplied up front."""

    prompt: Optional[str] = None
    url: Optional[str] = None
    architecture: Optional[dict[str, Any]] = None
    design: Optional[dict[str, Any]] = None
    code: Optional[dict[str, Any]] = None
    previous_workflow_id: Optional[str] = None
    feedback: list[str] = Field(default_factory=list)
    options: WorkflowOptions = Field(default_factory=WorkflowOptions)


class WorkflowOutput(BaseModel):
    """Results collected from the steps. Fields are only ever added."""

    architecture: Optional[Any] = None
    design: Optional[Any] = None
    code: Optional[Any] = None
    analysis: Optional[Any] = None
    deployment: Optional[Any] = None
    export: Optional[Any] = None

    def merge(self, kind: str, value: Any) -> None:
        if value is None or kind not in type(self).model_fields:
            return
        setattr(self, kind, value)

    def available(self) -> dict[str, Any]:
        return self.model_dump(exclude_none=True)


class StepState(BaseModel):
    task_type: str
    status: StepStatus = StepStatus.PENDING
    task_id: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    result: Optional[Any] = None
    error: Optional[TaskError] = None


class WorkflowContext(BaseModel):
    user_feedback: list[str] = Field(default_factory=list)
    iteration_count: int = 0
    previous_versions: list[str] = Field(default_factory=list)


class WorkflowMetrics(BaseModel):
    started_at: datetime = Field(default_factory=utc_now)
    completed_at: Optional[datetime] = None
    total_duration_ms: Optional[int] = None
    total_tokens: int = 0
    total_cost: float = 0.0


class Suggestion(BaseModel):
    """Improvement derived from a workflow's output."""

    id: str
    category: str
    title: str
    description: str
    reason: str = ""
    priority: str = "medium"  # critical, high, medium, low
    impact: int = 5  # 1-10
    effort: str = "medium"  # trivial, low, medium, high, complex
    source: str = "rule"
    confidence: int = 80  # 0-100
    tags: list[str] = Field(default_factory=list)


class Workflow(BaseModel):
    id: str
    type: WorkflowType
    status: WorkflowStatus = WorkflowStatus.PENDING
    mode: ExecutionMode = ExecutionMode.SYNC
    tenant_id: str
    owner_id: str
    priority: int = 2
    input: WorkflowInput = Field(default_factory=WorkflowInput)
    steps: list[StepState] = Field(default_factory=list)
    output: WorkflowOutput = Field(default_factory=WorkflowOutput)
    context: WorkflowContext = Field(default_factory=WorkflowContext)
    metrics: WorkflowMetrics = Field(default_factory=WorkflowMetrics)
    suggestions: list[Suggestion] = Field(default_factory=list)
    error: Optional[TaskError] = None

    def next_pending_step(self) -> Optional[StepState]:
        for step in self.steps:
            if step.status == StepStatus.PENDING:
                return step
        return None

    def step_for_task(self, task_id: str) -> Optional[StepState]:
        for step in self.steps:
            if step.task_id == task_id:
                return step
        return None


class WorkflowEvent(BaseModel):
    """One item of a streamed workflow run."""

    type: EventType
    data: dict[str, Any] = Field(default_factory=dict)

    def to_json_line(self) -> str:
        return self.model_dump_json()
