"""Controllers for import-row CLI commands."""

from __future__ import annotations

import json
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from annotation_queue.config import Settings
from annotation_queue.intake.models import ImportRowStatus, ImportRowWrite
from annotation_queue.intake.repository import ImportRowRepository


@dataclass(slots=True)
class RowStageCommand:
    """CLI inputs for staging import rows of a job."""

    db_path: Path | None
    job_id: str
    rows_file: Path


class IntakeCliController:
    """Stages rows that an external import validator already checked."""

    def stage_rows(self, command: RowStageCommand) -> list[str]:
        rows = load_rows_file(command.rows_file)
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            written = repository.stage_rows(job_id=command.job_id, rows=rows)

        valid = sum(1 for row in rows if row.status is ImportRowStatus.VALID)
        return [
            f"Rows staged: job_id={command.job_id} written={written} "
            f"valid={valid} invalid={written - valid}",
        ]


def load_rows_file(path: Path) -> list[ImportRowWrite]:
    """Read a JSON list of ``{status, resource_status, row_data}`` objects.

    A bare object without ``row_data`` is treated as the row data itself.
    """

    raw = json.loads(path.read_text(encoding="utf-8"))
    if not isinstance(raw, list):
        raise ValueError(f"{path}: expected a JSON list of rows")

    rows: list[ImportRowWrite] = []
    for index, item in enumerate(raw, start=1):
        if not isinstance(item, dict):
            raise ValueError(f"{path}: row {index} is not an object")
        rows.append(_row_from_item(item, line_number=index))
    return rows


def _row_from_item(item: dict[str, Any], *, line_number: int) -> ImportRowWrite:
    row_data = item.get("row_data", item)
    if not isinstance(row_data, dict):
        raise ValueError(f"row {line_number}: row_data must be an object")
    resource_status = item.get("resource_status")
    return ImportRowWrite(
        line_number=int(item.get("line_number", line_number)),
        row_data=row_data,
        status=ImportRowStatus(item.get("status", ImportRowStatus.VALID.value)),
        resource_status=str(resource_status) if resource_status is not None else None,
    )


@contextmanager
def _repository(settings: Settings) -> Iterator[ImportRowRepository]:
    repository = ImportRowRepository(
        db_path=settings.db_path,
        sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()
