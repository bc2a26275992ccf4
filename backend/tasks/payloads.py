"""Typed inputs for the built-in step types and the tables that chain them.

The engine itself moves plain dicts around. These models are what a
step function can parse its ``run.input`` into, and the two tables below
drive how results flow between steps:

- RESULT_KINDS: which result kind a step type produces
- STEP_REQUIREMENTS: which result kinds a step type needs from upstream
"""

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from core.constants import TaskType
from core.exceptions import StepValidationError


class StepInput(BaseModel):
    """Base for step inputs. Unknown keys are kept for custom step functions."""

    model_config = ConfigDict(extra="allow")


class ArchitectInput(StepInput):
    prompt: str = "Create a modern web application"
    industry: Optional[str] = None
    style: Optional[str] = None
    target_audience: Optional[str] = None
    feedback: list[str] = Field(default_factory=list)


class DesignInput(StepInput):
    architecture: dict[str, Any]
    industry: Optional[str] = None
    style: Optional[str] = None
    brand_colors: list[str] = Field(default_factory=list)
    reference_image: Optional[str] = None
    feedback: list[str] = Field(default_factory=list)


class CodeInput(StepInput):
    architecture: dict[str, Any]
    design: dict[str, Any]
    include_tests: bool = False
    feedback: list[str] = Field(default_factory=list)


class AnalyzeInput(StepInput):
    url: str
    include_screenshots: bool = True
    analyze_tech: bool = True
    analyze_design: bool = True
    analyze_performance: bool = True


class DeployInput(StepInput):
    code: dict[str, Any]
    provider: str = "vercel"
    project_name: Optional[str] = None


class ExportInput(StepInput):
    code: dict[str, Any]
    format: str = "zip"
    project_name: str = "project"


INPUT_MODELS: dict[str, type[StepInput]] = {
    TaskType.ARCHITECT.value: ArchitectInput,
    TaskType.DESIGN.value: DesignInput,
    TaskType.CODE.value: CodeInput,
    TaskType.ANALYZE.value: AnalyzeInput,
    TaskType.DEPLOY.value: DeployInput,
    TaskType.EXPORT.value: ExportInput,
}

RESULT_KINDS: dict[str, str] = {
    TaskType.ARCHITECT.value: "architecture",
    TaskType.DESIGN.value: "design",
    TaskType.CODE.value: "code",
    TaskType.ANALYZE.value: "analysis",
    TaskType.DEPLOY.value: "deployment",
    TaskType.EXPORT.value: "export",
}

STEP_REQUIREMENTS: dict[str, list[str]] = {
    TaskType.ARCHITECT.value: [],
    TaskType.DESIGN.value: ["architecture"],
    TaskType.CODE.value: ["architecture", "design"],
    TaskType.ANALYZE.value: [],
    TaskType.DEPLOY.value: ["code"],
    TaskType.EXPORT.value: ["code"],
}

# Plain input fields a step cannot run without
INPUT_REQUIREMENTS: dict[str, list[str]] = {
    TaskType.ANALYZE.value: ["url"],
}


def result_kind_for(task_type: str) -> str:
    """Result kind for a step type. Custom types store under their lowercased tag."""
    return RESULT_KINDS.get(task_type, task_type.lower())


def parse_input(task_type: str, data: dict[str, Any]) -> Any:
    """Validate a step's input against its model.

    Custom step types have no model and get the dict back unchanged.

    Raises:
        StepValidationError: the input does not match the model.
    """
    model = INPUT_MODELS.get(task_type)
    if model is None:
        return data
    try:
        return model.model_validate(data)
    except PydanticValidationError as e:
        raise StepValidationError(f"Invalid {task_type} input: {e.errors()[0]['msg']}") from e
