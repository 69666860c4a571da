"""SQLModel-backed store of staged import rows."""

from __future__ import annotations

import json
from pathlib import Path
from uuid import uuid4

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from annotation_queue.intake.models import ImportRowStatus, ImportRowWrite, ValidatedRow
from annotation_queue.storage.alembic_runner import upgrade_head
from annotation_queue.storage.common import build_sqlite_engine, utc_now
from annotation_queue.storage.sqlmodel_models import ImportRow

BUSINESS_KEY_FIELD = "request_id"
ASSIGNEE_HINT_FIELD = "assignee_hint"


class ImportRowRepository:
    """Stages import rows per job and serves the valid ones back as ``ValidatedRow``."""

    def __init__(self, db_path: Path, *, sqlite_busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(
            db_path=db_path,
            busy_timeout_ms=sqlite_busy_timeout_ms,
        )

    def close(self) -> None:
        self.engine.dispose()

    def init_schema(self) -> None:
        upgrade_head(self.db_path)

    def stage_rows(self, *, job_id: str, rows: list[ImportRowWrite]) -> int:
        """Persist rows for a job; returns how many rows were written."""

        now = utc_now()
        with Session(self.engine) as session:
            for row in rows:
                session.add(
                    ImportRow(
                        row_id=str(uuid4()),
                        job_id=job_id,
                        line_number=row.line_number,
                        status=row.status.value,
                        resource_status=row.resource_status,
                        row_data_json=json.dumps(row.row_data, ensure_ascii=False, sort_keys=True),
                        created_at=now,
                    ),
                )
            try:
                session.commit()
            except IntegrityError as error:
                raise ValueError(
                    f"Job {job_id!r} already has staged rows at these line numbers",
                ) from error
        return len(rows)

    def get_valid_rows_for_job(self, job_id: str) -> list[ValidatedRow]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(ImportRow)
                .where(
                    ImportRow.job_id == job_id,
                    ImportRow.status == ImportRowStatus.VALID.value,
                )
                .order_by(col(ImportRow.line_number).asc()),
            ).all()

        validated: list[ValidatedRow] = []
        for row in rows:
            row_data = json.loads(row.row_data_json)
            if not isinstance(row_data, dict):
                row_data = {}
            hint = row_data.get(ASSIGNEE_HINT_FIELD)
            validated.append(
                ValidatedRow(
                    row_id=row.row_id,
                    line_number=row.line_number,
                    business_key=str(row_data.get(BUSINESS_KEY_FIELD) or ""),
                    resource_status=row.resource_status,
                    payload=row_data,
                    assignee_hint=str(hint) if hint else None,
                ),
            )
        return validated
