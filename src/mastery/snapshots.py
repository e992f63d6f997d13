"""
JSON snapshot encoding for the two stores.

Module progress is stored as an object keyed by module id; the remediation
registry as an array of entries in insertion order. Decoding skips individual
records that fail validation and raises SnapshotError only when the payload
as a whole is unusable.
"""

from __future__ import annotations

import json
from collections.abc import Iterable, Mapping

from loguru import logger
from pydantic import ValidationError

from src.mastery.exceptions import SnapshotError
from src.mastery.models import (
    MODULE_RECORD,
    ModuleRecord,
    RemediationEntry,
    infer_record_kind,
)


def _loads(raw: bytes | str) -> object:
    try:
        return json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise SnapshotError(f"Snapshot is not valid JSON: {exc}") from exc


def encode_module_progress(records: Mapping[str, ModuleRecord]) -> bytes:
    payload = {
        module_id: record.model_dump(mode="json", by_alias=True, exclude_none=True)
        for module_id, record in records.items()
    }
    return json.dumps(payload).encode("utf-8")


def decode_module_progress(raw: bytes | str) -> dict[str, ModuleRecord]:
    data = _loads(raw)
    if not isinstance(data, dict):
        raise SnapshotError(f"Module progress snapshot must be an object, got {type(data).__name__}")

    records: dict[str, ModuleRecord] = {}
    for module_id, item in data.items():
        if not isinstance(item, dict):
            logger.warning("Skipping malformed progress record for {}", module_id)
            continue
        try:
            record = MODULE_RECORD.validate_python(infer_record_kind({"moduleId": module_id, **item}))
        except ValidationError as exc:
            logger.warning("Skipping invalid progress record for {}: {}", module_id, exc)
            continue
        records[record.module_id] = record
    return records


def encode_remediation_entries(entries: Iterable[RemediationEntry]) -> bytes:
    payload = [
        entry.model_dump(mode="json", by_alias=True, exclude_none=True)
        for entry in entries
    ]
    return json.dumps(payload).encode("utf-8")


def decode_remediation_entries(raw: bytes | str) -> dict[str, RemediationEntry]:
    """Decode the registry array into an insertion-ordered map keyed by concept id."""
    data = _loads(raw)
    if not isinstance(data, list):
        raise SnapshotError(f"Remediation snapshot must be an array, got {type(data).__name__}")

    entries: dict[str, RemediationEntry] = {}
    for item in data:
        try:
            entry = RemediationEntry.model_validate(item)
        except ValidationError as exc:
            logger.warning("Skipping invalid remediation entry: {}", exc)
            continue
        # Later duplicates replace earlier ones but keep the first position
        entries[entry.concept_id] = entry
    return entries
