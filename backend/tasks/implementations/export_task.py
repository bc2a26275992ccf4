"""Export step: package generated code into a downloadable archive.

The archive is kept in the result store for an hour under
``export:{task_id}`` as base64 text; the step result only carries its
metadata.
"""

import base64
import io
import zipfile
from datetime import timedelta
from typing import Any

import structlog

from core.exceptions import StepValidationError
from core.result_store import ResultStore
from core.utils import utc_now
from tasks.base_task import BaseStep, StepRun
from tasks.payloads import ExportInput

logger = structlog.get_logger(__name__)

EXPORT_TTL = 3600


def export_key(task_id: str) -> str:
    return f"export:{task_id}"


def iter_code_files(code: dict[str, Any]) -> list[tuple[str, str]]:
    """Normalize generated code files to ``(path, content)`` pairs.

    Accepts ``{"files": {path: content}}`` as well as
    ``{"files": [{"path": ..., "content": ...}]}``.
    """
    files = code.get("files") or {}
    if isinstance(files, dict):
        return [(path, content) for path, content in files.items()]
    return [(f["path"], f.get("content", "")) for f in files]


class ExportStep(BaseStep):
    """Zip the CODE step's files.

    Input:
        code: Code output with a ``files`` mapping or list (required)
        format: Only ``zip`` is supported
        project_name: Top-level folder inside the archive
    """

    task_type = "EXPORT"
    display_name = "Export"
    description = "Package generated code as a zip archive"

    def __init__(self, store: ResultStore, ttl: int = EXPORT_TTL):
        self._store = store
        self._ttl = ttl

    async def execute(self, run: StepRun) -> dict[str, Any]:
        params: ExportInput = run.parsed_input()
        if params.format != "zip":
            raise StepValidationError(f"Unsupported export format: {params.format}")

        files = iter_code_files(params.code)
        if not files:
            raise StepValidationError("No code to export")

        await run.report_progress("packaging", 30)
        run.raise_if_cancelled()

        buffer = io.BytesIO()
        with zipfile.ZipFile(buffer, "w", zipfile.ZIP_DEFLATED) as archive:
            for path, content in files:
                archive.writestr(f"{params.project_name}/{path.lstrip('/')}", content)
        payload = buffer.getvalue()

        await self._store.put(
            export_key(run.task.id),
            base64.b64encode(payload).decode("ascii"),
            ttl=self._ttl,
        )
        await run.report_progress("complete", 100)

        logger.info(
            "Export packaged",
            task_id=run.task.id,
            file_count=len(files),
            size=len(payload),
        )
        return {
            "export_id": run.task.id,
            "format": params.format,
            "size": len(payload),
            "file_count": len(files),
            "expires_at": (utc_now() + timedelta(seconds=self._ttl)).isoformat(),
        }
