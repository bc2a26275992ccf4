"""Workflow templates: which steps a workflow type runs, and with what input."""

from dataclasses import dataclass
from typing import Any, Optional, Union

from core.constants import TaskType, WorkflowType
from core.exceptions import ValidationError
from tasks.payloads import RESULT_KINDS

A, D, C, Z = TaskType.ARCHITECT.value, TaskType.DESIGN.value, TaskType.CODE.value, TaskType.ANALYZE.value

BASE_STEPS: dict[WorkflowType, list[str]] = {
    WorkflowType.CREATE: [A, D, C],
    WorkflowType.CLONE: [Z, A, D, C],
    WorkflowType.REFINE: [A, D, C],
    WorkflowType.DESIGN_ONLY: [A, D],
    WorkflowType.CODE_ONLY: [A, D, C],
    WorkflowType.ANALYZE_ONLY: [Z],
}

# Steps present in the list but never run for a workflow type
ALWAYS_SKIPPED: dict[WorkflowType, set[str]] = {
    WorkflowType.CODE_ONLY: {A, D},
}

# Input fields copied from workflow options into each step type's input
OPTION_FIELDS: dict[str, list[str]] = {
    A: ["industry", "style", "target_audience"],
    D: ["industry", "style", "brand_colors", "reference_image"],
    C: ["include_tests"],
}


@dataclass
class StepTemplate:
    task_type: str
    skipped: bool = False


def build_steps(workflow_type: Union[WorkflowType, str], options: Optional[dict[str, Any]] = None) -> list[StepTemplate]:
    """
    Build the ordered step list for a workflow type.

    ``create`` honours ``skip_design``, ``skip_code`` and
    ``include_analysis``; ``code-only`` lists ARCHITECT and DESIGN as
    skipped so CODE must be given both upstream results.
    """
    try:
        workflow_type = WorkflowType(workflow_type)
    except ValueError:
        raise ValidationError(f"Unknown workflow type: {workflow_type}") from None
    options = options or {}

    skipped = set(ALWAYS_SKIPPED.get(workflow_type, set()))
    steps = list(BASE_STEPS[workflow_type])
    if workflow_type == WorkflowType.CREATE:
        if options.get("skip_design"):
            skipped.add(D)
        if options.get("skip_code"):
            skipped.add(C)
        if options.get("include_analysis"):
            steps.append(Z)

    return [StepTemplate(task_type=t, skipped=t in skipped) for t in steps]


def build_step_input(
    task_type: str,
    workflow_input: dict[str, Any],
    output: Optional[dict[str, Any]] = None,
) -> dict[str, Any]:
    """
    Input for one step of a workflow.

    Upstream result kinds come from the workflow's output so far, then
    from the workflow input (a refinement carries the previous
    architecture and design). Step-specific options are copied in.
    """
    output = output or {}
    options = workflow_input.get("options") or {}
    step_input: dict[str, Any] = {}

    for kind in RESULT_KINDS.values():
        value = output.get(kind)
        if value is None:
            value = workflow_input.get(kind)
        if value is not None:
            step_input[kind] = value

    for field in OPTION_FIELDS.get(task_type, []):
        if options.get(field) is not None:
            step_input[field] = options[field]

    if task_type == A:
        step_input["prompt"] = workflow_input.get("prompt") or "Create a modern web application"
    if workflow_input.get("url"):
        step_input["url"] = workflow_input["url"]
    if workflow_input.get("feedback"):
        step_input["feedback"] = list(workflow_input["feedback"])
    return step_input
