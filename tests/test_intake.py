from __future__ import annotations

import json
from pathlib import Path

import allure
import pytest

from annotation_queue.intake.controllers import load_rows_file
from annotation_queue.intake.models import ImportRowStatus, ImportRowWrite
from annotation_queue.intake.repository import ImportRowRepository

pytestmark = [
    allure.epic("Task Queue"),
    allure.feature("Row Intake"),
]


def test_only_valid_rows_are_served_in_file_order(row_repository: ImportRowRepository) -> None:
    row_repository.stage_rows(
        job_id="job-1",
        rows=[
            ImportRowWrite(
                line_number=2,
                row_data={"request_id": "second", "assignee_hint": "ann-7"},
                resource_status="ok",
            ),
            ImportRowWrite(
                line_number=1,
                row_data={"request_id": "first"},
                resource_status="ok",
            ),
            ImportRowWrite(
                line_number=3,
                row_data={"request_id": "broken"},
                status=ImportRowStatus.INVALID,
            ),
        ],
    )
    row_repository.stage_rows(
        job_id="job-2",
        rows=[ImportRowWrite(line_number=1, row_data={"request_id": "elsewhere"})],
    )

    rows = row_repository.get_valid_rows_for_job("job-1")

    assert [row.business_key for row in rows] == ["first", "second"]
    assert rows[1].assignee_hint == "ann-7"
    assert rows[0].resource_status == "ok"
    assert row_repository.get_valid_rows_for_job("missing") == []


def test_restaging_a_job_is_rejected_and_keeps_first_rows(
    row_repository: ImportRowRepository,
) -> None:
    rows = [ImportRowWrite(line_number=1, row_data={"request_id": "only"})]
    row_repository.stage_rows(job_id="job-once", rows=rows)

    with pytest.raises(ValueError, match="job-once"):
        row_repository.stage_rows(job_id="job-once", rows=rows)

    assert [row.business_key for row in row_repository.get_valid_rows_for_job("job-once")] == [
        "only",
    ]


def test_rows_file_accepts_wrapped_and_bare_rows(tmp_path: Path) -> None:
    path = tmp_path / "rows.json"
    path.write_text(
        json.dumps(
            [
                {"status": "invalid", "resource_status": "ok", "row_data": {"request_id": "a"}},
                {"request_id": "b", "type": "meal"},
            ],
        ),
        encoding="utf-8",
    )

    rows = load_rows_file(path)

    assert rows[0].status is ImportRowStatus.INVALID
    assert rows[0].row_data == {"request_id": "a"}
    assert rows[1].line_number == 2
    assert rows[1].status is ImportRowStatus.VALID
    assert rows[1].row_data == {"request_id": "b", "type": "meal"}


def test_rows_file_must_be_a_list(tmp_path: Path) -> None:
    path = tmp_path / "rows.json"
    path.write_text(json.dumps({"request_id": "a"}), encoding="utf-8")

    with pytest.raises(ValueError, match="expected a JSON list"):
        load_rows_file(path)
