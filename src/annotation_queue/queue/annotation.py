"""Validation of validated-row fields and annotator payloads."""

from __future__ import annotations

import json
import math
from collections.abc import Mapping, Sequence
from typing import Any
from urllib.parse import urlparse

from annotation_queue.config import AnnotationSettings


def validate_row_fields(
    *,
    business_key: str,
    scan_type: object,
    payload_url: object,
    scan_types: Sequence[str],
) -> list[str]:
    """Second-pass checks on a row that already passed import validation."""

    errors: list[str] = []
    if not business_key.strip():
        errors.append("request_id must not be empty")
    if not isinstance(scan_type, str) or scan_type not in scan_types:
        errors.append(f"Invalid type {scan_type!r}. Must be one of: {', '.join(scan_types)}")
    if not isinstance(payload_url, str) or not _is_absolute_http_url(payload_url):
        errors.append(f"Invalid payload URL {payload_url!r}. Expected an absolute http(s) URL.")
    return errors


def parse_vendor_output(raw: object) -> dict[str, Any]:
    """Parse the vendor output blob; raise ``ValueError`` unless it is a JSON object."""

    if isinstance(raw, Mapping):
        return dict(raw)
    if not isinstance(raw, str):
        raise ValueError(f"Vendor output must be a JSON string, got {type(raw).__name__}")
    parsed = json.loads(raw)
    if not isinstance(parsed, dict):
        raise ValueError("Vendor output must be a JSON object")
    return parsed


def extract_confidence(output: Mapping[str, Any], fields: Sequence[str]) -> float | None:
    """Return the first numeric confidence-like field, or None."""

    for name in fields:
        if name not in output:
            continue
        value = output[name]
        if isinstance(value, bool):
            continue
        try:
            confidence = float(value)
        except (TypeError, ValueError):
            continue
        if math.isfinite(confidence):
            return confidence
    return None


def validate_draft(payload: object) -> list[str]:
    if not isinstance(payload, Mapping):
        return ["Draft payload must be a JSON object"]
    try:
        json.dumps(payload)
    except (TypeError, ValueError):
        return ["Draft payload must be JSON serializable"]
    return []


def validate_annotation(
    payload: object,
    *,
    scan_types: Sequence[str],
    settings: AnnotationSettings,
) -> list[str]:
    """Check a final annotation; returns human-readable errors, empty when valid."""

    if not isinstance(payload, Mapping):
        return ["Annotation payload must be a JSON object"]

    errors: list[str] = []
    if payload.get("scan_type") not in scan_types:
        errors.append(f"Invalid scan_type. Must be one of: {', '.join(scan_types)}")
    if payload.get("result_return") not in settings.result_returns:
        errors.append(
            f"Invalid result_return. Must be one of: {', '.join(settings.result_returns)}",
        )

    corrections = payload.get("feedback_correction")
    if corrections is not None:
        values = [corrections] if isinstance(corrections, str) else corrections
        if not isinstance(values, list) or any(
            value not in settings.feedback_corrections for value in values
        ):
            errors.append(
                "Invalid feedback_correction. Must be one of: "
                f"{', '.join(settings.feedback_corrections)}",
            )

    note = payload.get("note")
    if note is not None:
        if not isinstance(note, str):
            errors.append("note must be a string")
        elif len(note) > settings.note_max_chars:
            errors.append(f"note must be at most {settings.note_max_chars} characters")
    return errors


def _is_absolute_http_url(value: str) -> bool:
    parsed = urlparse(value)
    return parsed.scheme in {"http", "https"} and bool(parsed.netloc)
