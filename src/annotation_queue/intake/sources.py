"""Validated row source contract."""

from __future__ import annotations

from typing import Protocol

from annotation_queue.intake.models import ValidatedRow


class ValidatedRowSource(Protocol):
    """Interface the import pipeline exposes to the task queue."""

    def get_valid_rows_for_job(self, job_id: str) -> list[ValidatedRow]:
        """Return rows of one import job that passed validation, in file order."""
        raise NotImplementedError
