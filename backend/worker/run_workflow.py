"""
Standalone workflow runner.

Runs one workflow in-process and prints the outcome as JSON lines on
stdout. Step functions are loaded from a ``module:function`` hook that
receives the engine and registers them:

    # mysteps.py
    def register(engine):
        engine.register_step("ARCHITECT", generate_architecture)

    python -m worker.run_workflow code-only --input '{"architecture": {...}}' \
        --steps mysteps:register --stream
"""

import argparse
import asyncio
import importlib
import json
import sys
from datetime import datetime
from typing import Any, Callable, Optional, TextIO

import structlog

from app.config import Settings, get_settings
from app.engine import Engine, create_engine
from core.constants import WorkflowType
from core.exceptions import EngineException
from core.logging_config import setup_logging

logger = structlog.get_logger(__name__)


def _safe_serialize(obj: Any) -> Any:
    """Recursively make an object JSON-serializable."""
    if obj is None or isinstance(obj, (str, int, float, bool)):
        return obj
    if isinstance(obj, datetime):
        return obj.isoformat()
    if isinstance(obj, dict):
        return {str(k): _safe_serialize(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple, set)):
        return [_safe_serialize(v) for v in obj]
    if hasattr(obj, "model_dump"):
        return _safe_serialize(obj.model_dump(mode="json"))
    return str(obj)


def load_steps_hook(path: str) -> Callable[[Engine], Any]:
    """Resolve a ``module:function`` path to a callable."""
    module_name, _, attr = path.partition(":")
    if not module_name or not attr:
        raise ValueError(f"Steps hook must look like 'module:function', got {path!r}")
    module = importlib.import_module(module_name)
    hook = getattr(module, attr, None)
    if not callable(hook):
        raise ValueError(f"{path} is not callable")
    return hook


def _write(out: TextIO, payload: Any) -> None:
    out.write(json.dumps(_safe_serialize(payload)) + "\n")
    out.flush()


async def run_workflow_async(
    workflow_type: str,
    workflow_input: Optional[dict[str, Any]] = None,
    tenant_id: str = "local",
    owner_id: str = "cli",
    steps_hook: Optional[str] = None,
    stream: bool = False,
    settings: Optional[Settings] = None,
    out: TextIO = sys.stdout,
    engine: Optional[Engine] = None,
) -> str:
    """
    Run a workflow to completion and print it.

    Args:
        workflow_type: create, clone, refine, design-only, code-only or analyze-only
        workflow_input: Raw workflow input
        tenant_id: Tenant to run the workflow for
        owner_id: User to run the workflow as
        steps_hook: ``module:function`` registering step functions
        stream: Print every workflow event instead of the final record
        settings: Engine settings (defaults to environment)
        out: Where JSON lines are written
        engine: Pre-built engine; one is created from settings otherwise

    Returns:
        Final workflow status ("completed", "failed", "paused", ...) or
        "error" when the workflow could not start
    """
    settings = settings or get_settings()
    engine = engine or create_engine(settings)
    if steps_hook:
        load_steps_hook(steps_hook)(engine)

    async with engine:
        if stream:
            status = "error"
            async for event in engine.coordinator.stream_workflow(
                workflow_type, workflow_input, tenant_id, owner_id
            ):
                out.write(event.to_json_line() + "\n")
                out.flush()
                if event.type.value == "complete":
                    status = "completed"
                elif event.type.value == "workflow" and "status" in event.data:
                    status = event.data["status"]
            return status

        try:
            started = await engine.coordinator.start_workflow(
                workflow_type, workflow_input, tenant_id, owner_id
            )
        except EngineException as e:
            logger.error("Workflow could not start", workflow_type=workflow_type, error=e.message)
            _write(out, {"error": e.to_dict()})
            return "error"

        workflow = started["workflow"]
        _write(out, workflow)
        return workflow.status.value


def _parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run an agent workflow in-process.")
    parser.add_argument("workflow_type", choices=[t.value for t in WorkflowType])
    parser.add_argument("--input", default="{}", help="Workflow input as a JSON object.")
    parser.add_argument("--input-file", default=None, help="Read the workflow input from a JSON file.")
    parser.add_argument("--tenant", default="local")
    parser.add_argument("--owner", default="cli")
    parser.add_argument(
        "--steps",
        default=None,
        help="module:function called with the engine to register step functions.",
    )
    parser.add_argument("--stream", action="store_true", help="Print every workflow event.")
    return parser.parse_args(argv)


def main(argv: Optional[list[str]] = None) -> int:
    args = _parse_args(argv)
    settings = get_settings()
    setup_logging(settings)

    if args.input_file:
        with open(args.input_file, encoding="utf-8") as f:
            workflow_input = json.load(f)
    else:
        workflow_input = json.loads(args.input)

    status = asyncio.run(
        run_workflow_async(
            args.workflow_type,
            workflow_input,
            tenant_id=args.tenant,
            owner_id=args.owner,
            steps_hook=args.steps,
            stream=args.stream,
            settings=settings,
        )
    )
    return 0 if status == "completed" else 1


if __name__ == "__main__":
    sys.exit(main())
