"""Tests for the standalone workflow runner."""

import io
import json
from datetime import datetime

import pytest

from app.engine import create_engine
from worker.run_workflow import _parse_args, _safe_serialize, load_steps_hook, run_workflow_async

FAKE_TYPES = ("ARCHITECT", "DESIGN", "CODE", "ANALYZE")


@pytest.fixture
def runner_engine(settings, store, registry):
    """Stopped engine with the fake steps; the runner starts and stops it."""
    engine = create_engine(settings=settings, store=store)
    for task_type in FAKE_TYPES:
        engine.register_step(task_type, registry.get(task_type).fn)
    return engine


def lines(out: io.StringIO) -> list[dict]:
    return [json.loads(line) for line in out.getvalue().splitlines()]


class TestRunWorkflow:
    @pytest.mark.asyncio
    async def test_sync_run_prints_workflow(self, runner_engine, settings):
        out = io.StringIO()
        status = await run_workflow_async(
            "create", {"prompt": "a bakery"}, settings=settings, out=out, engine=runner_engine,
        )

        assert status == "completed"
        [workflow] = lines(out)
        assert workflow["status"] == "completed"
        assert workflow["tenant_id"] == "local"
        assert workflow["output"]["architecture"]["prompt"] == "a bakery"
        assert not runner_engine.started

    @pytest.mark.asyncio
    async def test_stream_run_prints_events(self, runner_engine, settings):
        out = io.StringIO()
        status = await run_workflow_async(
            "analyze-only", {"url": "https://example.com"},
            stream=True, settings=settings, out=out, engine=runner_engine,
        )

        assert status == "completed"
        events = lines(out)
        assert events[0]["type"] == "workflow"
        assert events[-1]["type"] == "complete"

    @pytest.mark.asyncio
    async def test_workflow_that_cannot_start(self, runner_engine, settings):
        out = io.StringIO()
        status = await run_workflow_async("code-only", {}, settings=settings, out=out, engine=runner_engine)

        assert status == "error"
        [payload] = lines(out)
        assert payload["error"]["code"] == "MISSING_UPSTREAM_RESULT"

    @pytest.mark.asyncio
    async def test_stream_error(self, runner_engine, settings):
        out = io.StringIO()
        status = await run_workflow_async(
            "analyze-only", {}, stream=True, settings=settings, out=out, engine=runner_engine,
        )

        assert status == "error"
        assert [e["type"] for e in lines(out)] == ["error"]


class TestHelpers:
    def test_load_steps_hook(self):
        assert load_steps_hook("json:dumps") is json.dumps

    @pytest.mark.parametrize("path", ["json", ":dumps", "json:missing", "json:__doc__"])
    def test_load_steps_hook_rejects(self, path):
        with pytest.raises(ValueError):
            load_steps_hook(path)

    def test_safe_serialize(self):
        value = _safe_serialize({"at": datetime(2024, 1, 2), "ids": ("a", "b"), 1: object})
        assert value["at"] == "2024-01-02T00:00:00"
        assert value["ids"] == ["a", "b"]
        assert value["1"].startswith("<class")

    def test_parse_args(self):
        args = _parse_args(["design-only", "--input", '{"prompt": "x"}', "--stream", "--tenant", "org_1"])
        assert args.workflow_type == "design-only"
        assert json.loads(args.input) == {"prompt": "x"}
        assert args.stream is True
        assert args.tenant == "org_1"
        assert args.owner == "cli"

    def test_parse_args_rejects_unknown_type(self):
        with pytest.raises(SystemExit):
            _parse_args(["teleport"])
