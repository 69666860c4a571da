"""Assignment engine: batch equal-split and on-demand pull queue."""

from __future__ import annotations

import logging
import math
from collections.abc import Sequence

from annotation_queue.config import AssignmentSettings
from annotation_queue.queue.errors import TaskValidationError
from annotation_queue.queue.models import (
    AssignmentMethod,
    EqualSplitResult,
    TaskView,
    UserAssignmentCount,
)
from annotation_queue.queue.repository import TaskRepository

logger = logging.getLogger(__name__)


class AssignmentEngine:
    """Claims tasks for annotators; every path goes through ``TaskRepository.claim*``."""

    def __init__(self, *, repository: TaskRepository, settings: AssignmentSettings) -> None:
        self.repository = repository
        self.settings = settings

    def assign_equal_split(
        self,
        user_ids: Sequence[str],
        quota_per_user: int | None = None,
    ) -> EqualSplitResult:
        """Walk the FIFO backlog once, handing each user up to ``quota_per_user`` tasks."""

        errors: list[str] = []
        if any(not user_id.strip() for user_id in user_ids):
            errors.append("user ids must not be blank")
        if quota_per_user is not None and quota_per_user <= 0:
            errors.append("quota_per_user must be a positive integer")
        if errors:
            raise TaskValidationError(errors)

        tasks = self.repository.list_unassigned_pending()
        result = EqualSplitResult(total_tasks=len(tasks))
        if not tasks or not user_ids:
            return result

        quota = quota_per_user or math.ceil(len(tasks) / len(user_ids))
        cursor = 0
        for user_id in user_ids:
            assigned = 0
            max_to_assign = min(quota, len(tasks) - cursor)
            while assigned < max_to_assign and cursor < len(tasks):
                task = tasks[cursor]
                cursor += 1
                claimed = self.repository.claim(
                    task_id=task.task_id,
                    user_id=user_id,
                    method=AssignmentMethod.EQUAL_SPLIT,
                    priority_score=task.confidence,
                )
                if claimed is not None:
                    assigned += 1
            result.assignments.append(UserAssignmentCount(user_id=user_id, count=assigned))

        logger.info(
            "Equal-split over %d tasks for %d users (quota=%d): %s",
            result.total_tasks,
            len(user_ids),
            quota,
            ", ".join(f"{item.user_id}={item.count}" for item in result.assignments),
        )
        return result

    def claim_next(self, user_id: str) -> TaskView | None:
        """Dequeue the highest-confidence, oldest pending task; None when nothing is free."""

        if not user_id.strip():
            raise TaskValidationError(["user_id must not be blank"])
        return self.repository.claim_next_pending(
            user_id=user_id,
            max_attempts=self.settings.pull_claim_attempts,
        )
