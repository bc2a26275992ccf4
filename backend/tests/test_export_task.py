"""Tests for the built-in EXPORT step."""

import base64
import io
import zipfile

import pytest

from core.constants import TaskStatus
from core.exceptions import StepValidationError
from core.result_store import InMemoryResultStore
from tasks.base_task import StepRun
from tasks.implementations.export_task import ExportStep, export_key, iter_code_files
from tasks.models import AgentTask, TaskSpec


def make_run(step_input: dict) -> StepRun:
    task = AgentTask(id="export_1", type="EXPORT", tenant_id="org_1", owner_id="user_1", input=step_input)
    return StepRun(task)


def read_archive(encoded: str) -> dict[str, str]:
    with zipfile.ZipFile(io.BytesIO(base64.b64decode(encoded))) as archive:
        return {name: archive.read(name).decode() for name in archive.namelist()}


class TestIterCodeFiles:
    def test_mapping(self):
        assert iter_code_files({"files": {"a.ts": "1"}}) == [("a.ts", "1")]

    def test_list(self):
        files = [{"path": "a.ts", "content": "1"}, {"path": "b.ts"}]
        assert iter_code_files({"files": files}) == [("a.ts", "1"), ("b.ts", "")]

    def test_missing(self):
        assert iter_code_files({}) == []


class TestExportStep:
    @pytest.mark.asyncio
    async def test_archive_stored_with_ttl(self, store):
        step = ExportStep(store)
        code = {"files": {"pages/home.tsx": "export default {}", "/README.md": "# Shop"}}

        result = await step(make_run({"code": code, "project_name": "shop"}))

        assert result["export_id"] == "export_1"
        assert result["format"] == "zip"
        assert result["file_count"] == 2
        assert result["size"] > 0
        assert "expires_at" in result

        files = read_archive(await store.get(export_key("export_1")))
        assert files == {"shop/pages/home.tsx": "export default {}", "shop/README.md": "# Shop"}

    @pytest.mark.asyncio
    async def test_archive_expires(self):
        now = [0.0]
        store = InMemoryResultStore(clock=lambda: now[0])
        await ExportStep(store, ttl=60)(make_run({"code": {"files": {"a.ts": "1"}}}))
        now[0] = 59.0
        assert await store.get(export_key("export_1")) is not None
        now[0] = 60.0
        assert await store.get(export_key("export_1")) is None

    @pytest.mark.asyncio
    async def test_unsupported_format(self, store):
        with pytest.raises(StepValidationError):
            await ExportStep(store)(make_run({"code": {"files": {"a": "b"}}, "format": "tar"}))

    @pytest.mark.asyncio
    async def test_empty_code(self, store):
        with pytest.raises(StepValidationError):
            await ExportStep(store)(make_run({"code": {"files": {}}}))

    @pytest.mark.asyncio
    async def test_missing_code(self, store):
        with pytest.raises(StepValidationError):
            await ExportStep(store)(make_run({}))

    @pytest.mark.asyncio
    async def test_runs_through_engine(self, engine):
        task_id = await engine.queue.add_task(TaskSpec(
            type="EXPORT",
            tenant_id="org_1",
            owner_id="user_1",
            input={"code": {"files": [{"path": "index.ts", "content": "x"}]}},
        ))
        task = await engine.queue.wait_for_task(task_id, timeout=2)

        assert task.status == TaskStatus.COMPLETE
        assert task.result["file_count"] == 1
        assert read_archive(await engine.store.get(export_key(task_id))) == {"project/index.ts": "x"}
