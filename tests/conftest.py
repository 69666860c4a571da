"""Shared test fixtures."""

from __future__ import annotations

import json
from collections.abc import Callable, Iterator
from pathlib import Path
from typing import Any

import pytest

from annotation_queue.config import Settings
from annotation_queue.intake.models import ImportRowStatus, ImportRowWrite
from annotation_queue.intake.repository import ImportRowRepository
from annotation_queue.queue.repository import TaskRepository
from annotation_queue.queue.services import TaskQueueService

StageRows = Callable[..., int]


def make_row_data(request_id: str, **overrides: Any) -> dict[str, Any]:
    """Row data shaped like one line of a validated import file."""

    data: dict[str, Any] = {
        "request_id": request_id,
        "type": "meal",
        "user_input": f"https://cdn.example.com/scans/{request_id}.jpg",
        "raw_ai_output": json.dumps({"confidence": 0.5, "foods": ["apple"]}),
    }
    data.update(overrides)
    return data


@pytest.fixture()
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "annotation-queue.db"


@pytest.fixture()
def row_repository(db_path: Path) -> Iterator[ImportRowRepository]:
    repository = ImportRowRepository(db_path)
    repository.init_schema()
    yield repository
    repository.close()


@pytest.fixture()
def repository(db_path: Path, row_repository: ImportRowRepository) -> Iterator[TaskRepository]:
    repository = TaskRepository(db_path)
    yield repository
    repository.close()


@pytest.fixture()
def service(
    db_path: Path,
    repository: TaskRepository,
    row_repository: ImportRowRepository,
) -> TaskQueueService:
    return TaskQueueService(
        repository=repository,
        source=row_repository,
        settings=Settings(db_path=db_path),
    )


@pytest.fixture()
def stage_rows(row_repository: ImportRowRepository) -> StageRows:
    """Stage rows for a job from ``(request_id, overrides)`` pairs or plain ids."""

    def _stage(
        job_id: str,
        *rows: str | tuple[str, dict[str, Any]],
        resource_status: str = "ok",
        bad_resources: tuple[str, ...] = (),
    ) -> int:
        writes: list[ImportRowWrite] = []
        for line_number, entry in enumerate(rows, start=1):
            request_id, overrides = (entry, {}) if isinstance(entry, str) else entry
            writes.append(
                ImportRowWrite(
                    line_number=line_number,
                    row_data=make_row_data(request_id, **overrides),
                    status=ImportRowStatus.VALID,
                    resource_status="broken" if request_id in bad_resources else resource_status,
                ),
            )
        return row_repository.stage_rows(job_id=job_id, rows=writes)

    return _stage
