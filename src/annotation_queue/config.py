"""Runtime configuration for the annotation task queue."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

DEFAULT_SCAN_TYPES = ("meal", "label", "front_label", "screenshot", "others")
DEFAULT_RESULT_RETURNS = ("correct_result", "wrong_result", "no_result")
DEFAULT_FEEDBACK_CORRECTIONS = (
    "wrong_food",
    "incorrect_nutrition",
    "incorrect_ingredients",
    "wrong_portion_size",
    "no_feedback",
    "correct_feedback",
)


@dataclass(slots=True)
class CreationSettings:
    """Task creation pipeline settings."""

    scan_types: tuple[str, ...] = DEFAULT_SCAN_TYPES
    confidence_fields: tuple[str, ...] = ("confidence", "score")


@dataclass(slots=True)
class AnnotationSettings:
    """Enumerations accepted in submitted annotations."""

    result_returns: tuple[str, ...] = DEFAULT_RESULT_RETURNS
    feedback_corrections: tuple[str, ...] = DEFAULT_FEEDBACK_CORRECTIONS
    note_max_chars: int = 2_000


@dataclass(slots=True)
class AssignmentSettings:
    """Assignment engine and audit read settings."""

    pull_claim_attempts: int = 5
    activity_limit: int = 50
    list_limit: int = 100


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".annotation_queue.db")
    sqlite_busy_timeout_ms: int = 5_000
    creation: CreationSettings = field(default_factory=CreationSettings)
    annotation: AnnotationSettings = field(default_factory=AnnotationSettings)
    assignment: AssignmentSettings = field(default_factory=AssignmentSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        return cls(
            db_path=db_path
            or Path(os.getenv("ANNOTATION_QUEUE_DB_PATH", ".annotation_queue.db")),
            sqlite_busy_timeout_ms=int(
                os.getenv("ANNOTATION_QUEUE_SQLITE_BUSY_TIMEOUT_MS", "5000"),
            ),
            creation=CreationSettings(
                scan_types=_env_csv("ANNOTATION_QUEUE_SCAN_TYPES", DEFAULT_SCAN_TYPES),
                confidence_fields=_env_csv(
                    "ANNOTATION_QUEUE_CONFIDENCE_FIELDS",
                    ("confidence", "score"),
                ),
            ),
            annotation=AnnotationSettings(
                result_returns=_env_csv(
                    "ANNOTATION_QUEUE_RESULT_RETURNS",
                    DEFAULT_RESULT_RETURNS,
                ),
                feedback_corrections=_env_csv(
                    "ANNOTATION_QUEUE_FEEDBACK_CORRECTIONS",
                    DEFAULT_FEEDBACK_CORRECTIONS,
                ),
                note_max_chars=int(os.getenv("ANNOTATION_QUEUE_NOTE_MAX_CHARS", "2000")),
            ),
            assignment=AssignmentSettings(
                pull_claim_attempts=int(
                    os.getenv("ANNOTATION_QUEUE_PULL_CLAIM_ATTEMPTS", "5"),
                ),
                activity_limit=int(os.getenv("ANNOTATION_QUEUE_ACTIVITY_LIMIT", "50")),
                list_limit=int(os.getenv("ANNOTATION_QUEUE_LIST_LIMIT", "100")),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error on values the queue cannot operate with."""

        if self.sqlite_busy_timeout_ms <= 0:
            raise ValueError("ANNOTATION_QUEUE_SQLITE_BUSY_TIMEOUT_MS must be > 0.")
        if not self.creation.scan_types:
            raise ValueError("ANNOTATION_QUEUE_SCAN_TYPES must list at least one type.")
        if not self.annotation.result_returns:
            raise ValueError("ANNOTATION_QUEUE_RESULT_RETURNS must list at least one value.")
        if self.annotation.note_max_chars <= 0:
            raise ValueError("ANNOTATION_QUEUE_NOTE_MAX_CHARS must be > 0.")
        if self.assignment.pull_claim_attempts <= 0:
            raise ValueError("ANNOTATION_QUEUE_PULL_CLAIM_ATTEMPTS must be > 0.")
        if self.assignment.activity_limit <= 0:
            raise ValueError("ANNOTATION_QUEUE_ACTIVITY_LIMIT must be > 0.")
        if self.assignment.list_limit <= 0:
            raise ValueError("ANNOTATION_QUEUE_LIST_LIMIT must be > 0.")


def _env_csv(name: str, default: tuple[str, ...]) -> tuple[str, ...]:
    raw = os.getenv(name)
    if raw is None:
        return default
    deduped: list[str] = []
    seen: set[str] = set()
    for part in raw.split(","):
        normalized = part.strip()
        if not normalized or normalized in seen:
            continue
        seen.add(normalized)
        deduped.append(normalized)
    return tuple(deduped)
