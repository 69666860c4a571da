"""Materialize pending tasks from a job's validated import rows."""

from __future__ import annotations

import logging

from sqlalchemy.exc import IntegrityError

from annotation_queue.config import CreationSettings
from annotation_queue.intake.models import ValidatedRow
from annotation_queue.intake.sources import ValidatedRowSource
from annotation_queue.queue.annotation import (
    extract_confidence,
    parse_vendor_output,
    validate_row_fields,
)
from annotation_queue.queue.models import SkipReason, TaskCreate, TaskCreationResult
from annotation_queue.queue.repository import TaskRepository

logger = logging.getLogger(__name__)

RESOURCE_STATUS_OK = "ok"
SCAN_TYPE_FIELD = "type"
PAYLOAD_URL_FIELD = "user_input"
VENDOR_OUTPUT_FIELD = "raw_ai_output"


class TaskCreationPipeline:
    """Turns validated rows into at most one task per business key.

    Each row either becomes a task or is counted under a skip reason; a bad row
    never aborts the batch, and re-running a job creates nothing new.
    """

    def __init__(
        self,
        *,
        repository: TaskRepository,
        source: ValidatedRowSource,
        settings: CreationSettings,
    ) -> None:
        self.repository = repository
        self.source = source
        self.settings = settings

    def create_tasks_from_validated_rows(self, job_id: str) -> TaskCreationResult:
        rows = self.source.get_valid_rows_for_job(job_id)
        result = TaskCreationResult(total_rows=len(rows))

        for row in rows:
            try:
                reason = self._process_row(job_id=job_id, row=row)
            except Exception:  # noqa: BLE001
                logger.exception(
                    "Task creation failed for request_id=%s (job=%s line=%d)",
                    row.business_key,
                    job_id,
                    row.line_number,
                )
                reason = SkipReason.CREATION_ERROR
            if reason is None:
                result.created += 1
            else:
                result.record_skip(reason)

        logger.info(
            "Task creation for job %s: rows=%d created=%d skipped=%d reasons=%s",
            job_id,
            result.total_rows,
            result.created,
            result.skipped,
            result.skip_reasons,
        )
        return result

    def _process_row(self, *, job_id: str, row: ValidatedRow) -> SkipReason | None:
        if row.resource_status != RESOURCE_STATUS_OK:
            return SkipReason.ASSET_UNAVAILABLE

        if row.business_key and self.repository.find_task_id_by_request_id(row.business_key):
            return SkipReason.ALREADY_EXISTS

        scan_type = row.payload.get(SCAN_TYPE_FIELD)
        payload_url = row.payload.get(PAYLOAD_URL_FIELD)
        errors = validate_row_fields(
            business_key=row.business_key,
            scan_type=scan_type,
            payload_url=payload_url,
            scan_types=self.settings.scan_types,
        )
        if errors:
            logger.debug("Row %d of job %s rejected: %s", row.line_number, job_id, errors)
            return SkipReason.INVALID_VALUE

        try:
            vendor_output = parse_vendor_output(row.payload.get(VENDOR_OUTPUT_FIELD))
        except ValueError:
            return SkipReason.INVALID_PAYLOAD

        try:
            self.repository.insert_task(
                TaskCreate(
                    request_id=row.business_key,
                    scan_type=str(scan_type),
                    payload_url=str(payload_url),
                    vendor_output=vendor_output,
                    confidence=extract_confidence(
                        vendor_output,
                        self.settings.confidence_fields,
                    ),
                    job_id=job_id,
                    import_row_id=row.row_id,
                    assignee_hint=row.assignee_hint,
                ),
            )
        except IntegrityError:
            # A concurrent run inserted the same business key between check and insert.
            if self.repository.find_task_id_by_request_id(row.business_key):
                return SkipReason.ALREADY_EXISTS
            raise
        return None
