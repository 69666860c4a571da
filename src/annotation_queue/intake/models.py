"""Domain models for staged import rows."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ImportRowStatus(str, Enum):
    VALID = "valid"
    INVALID = "invalid"


@dataclass(slots=True)
class ImportRowWrite:
    """One row as produced by the (external) import validator."""

    line_number: int
    row_data: dict[str, Any]
    status: ImportRowStatus = ImportRowStatus.VALID
    resource_status: str | None = None


@dataclass(slots=True)
class ValidatedRow:
    """Row that passed import validation; the only input the queue accepts."""

    row_id: str
    line_number: int
    business_key: str
    resource_status: str | None
    payload: dict[str, Any] = field(default_factory=dict)
    assignee_hint: str | None = None
