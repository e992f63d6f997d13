"""
Module Progress Tracker.

Authoritative record of module-level completion and mastery, and the
source of truth for lesson-level gating.

Rules:
- Reading modules are mastered the moment they are completed
- Quiz/assessment modules are mastered iff the last score reached
  mastery_threshold * 100
- A module is accessible only when every earlier module in the lesson is
  completed, and every earlier scored module is mastered

Every mutation replaces the in-memory record map and hands the new
snapshot to the persistence writer before returning.
"""

from __future__ import annotations

import threading
from collections.abc import Callable, Mapping, Sequence
from datetime import datetime
from typing import Any

from loguru import logger
from pydantic import ValidationError

from config import MODULE_PROGRESS_KEY
from src.mastery.exceptions import SnapshotError, StorageError
from src.mastery.models import (
    DEFAULT_MASTERY_THRESHOLD,
    MODULE_RECORD,
    CompletionStatus,
    LessonModule,
    LessonProgressView,
    ModuleProgressEntry,
    ModuleRecord,
    ReadingRecord,
    ScoredRecord,
    UntouchedModule,
    infer_record_kind,
    utc_now,
)
from src.mastery.snapshots import decode_module_progress, encode_module_progress
from src.mastery.storage import PersistenceWriter


def module_satisfied(module: LessonModule, record: ModuleRecord | None) -> bool:
    """
    Gating predicate for a single module.

    True when the module has a completed record and, for scored modules,
    mastery was achieved.
    """
    if record is None or record.status != CompletionStatus.COMPLETED:
        return False
    if module.scored and not record.mastery_achieved:
        return False
    return True


class ModuleProgressTracker:
    """
    Per-module completion and mastery state for one learner.

    The lesson catalog is never cached: every gating query takes the
    ordered module list from the caller.
    """

    def __init__(
        self,
        writer: PersistenceWriter,
        key: str = MODULE_PROGRESS_KEY,
        default_threshold: float = DEFAULT_MASTERY_THRESHOLD,
        clock: Callable[[], datetime] | None = None,
    ):
        self._writer = writer
        self.key = key
        self.default_threshold = default_threshold
        self._clock = clock or utc_now
        self._lock = threading.RLock()
        self._records: dict[str, ModuleRecord] = {}
        self.reload()

    # =========================================================================
    # Loading / Snapshot
    # =========================================================================

    def reload(self) -> None:
        """Replace in-memory state with the durable snapshot (empty on failure)."""
        with self._lock:
            self._records = self._load()
        logger.debug("Loaded {} module progress records from {}", len(self._records), self.key)

    def _load(self) -> dict[str, ModuleRecord]:
        try:
            raw = self._writer.read(self.key)
        except StorageError as exc:
            logger.warning("Failed to load module progress: {}", exc)
            return {}
        if raw is None:
            return {}
        try:
            return decode_module_progress(raw)
        except SnapshotError as exc:
            logger.warning("Failed to load module progress: {}", exc)
            return {}

    def replace_snapshot(self, records: Mapping[str, ModuleRecord | Mapping[str, Any]]) -> None:
        """
        Replace all local state with a snapshot from another source.

        Remote snapshots are a full replacement, never a merge. Invalid
        records are skipped.
        """
        new_records: dict[str, ModuleRecord] = {}
        for module_id, record in records.items():
            if isinstance(record, (ReadingRecord, ScoredRecord)):
                new_records[module_id] = record
                continue
            try:
                parsed = MODULE_RECORD.validate_python(
                    infer_record_kind({"moduleId": module_id, **dict(record)})
                )
            except ValidationError as exc:
                logger.warning("Skipping invalid progress record for {}: {}", module_id, exc)
                continue
            new_records[parsed.module_id] = parsed
        self._commit(new_records)
        logger.info("Replaced module progress with {} records", len(new_records))

    def _commit(self, records: dict[str, ModuleRecord]) -> None:
        with self._lock:
            self._records = records
            self._writer.write(self.key, encode_module_progress(records))

    def _update(self, module_id: str, build: Callable[[ModuleRecord | None], ModuleRecord]) -> ModuleRecord:
        with self._lock:
            record = build(self._records.get(module_id))
            self._commit({**self._records, module_id: record})
        return record

    # =========================================================================
    # Queries
    # =========================================================================

    @property
    def module_progress(self) -> dict[str, ModuleRecord]:
        """All records keyed by module id (a copy)."""
        return dict(self._records)

    def get_module_progress(self, module_id: str) -> ModuleRecord | None:
        return self._records.get(module_id)

    def can_access_module(
        self,
        module_id: str,
        module_index: int,
        lesson_modules: Sequence[LessonModule],
    ) -> bool:
        """
        Check if the learner may open a module.

        Args:
            module_id: Module being opened (informational; the index governs)
            module_index: Position of the module in lesson_modules
            lesson_modules: Lesson modules in pedagogical order

        Returns:
            False at the first predecessor that is incomplete or unmastered
        """
        if module_index <= 0:
            return True

        records = self._records
        for prev in lesson_modules[:module_index]:
            if not module_satisfied(prev, records.get(prev.id)):
                logger.debug("Module {} blocked by {}", module_id, prev.id)
                return False
        return True

    def is_lesson_complete(
        self,
        lesson_modules: Sequence[LessonModule],
        lesson_id: str | None = None,
    ) -> bool:
        """True when every module is completed and every scored module mastered."""
        records = self._records
        return all(module_satisfied(m, records.get(m.id)) for m in lesson_modules)

    def get_lesson_progress(
        self,
        lesson_id: str,
        lesson_modules: Sequence[LessonModule],
    ) -> LessonProgressView:
        """Aggregate module records into a lesson view."""
        records = self._records
        progress: dict[str, ModuleProgressEntry] = {}
        completed_count = 0
        all_mastered = True

        for module in lesson_modules:
            record = records.get(module.id)
            if record is None:
                progress[module.id] = UntouchedModule(module_id=module.id)
                all_mastered = False
                continue

            progress[module.id] = record
            if record.status == CompletionStatus.COMPLETED:
                completed_count += 1
            if module.scored and not record.mastery_achieved:
                all_mastered = False

        total = len(lesson_modules)
        if completed_count == total:
            overall = CompletionStatus.COMPLETED
        elif completed_count > 0:
            overall = CompletionStatus.IN_PROGRESS
        else:
            overall = CompletionStatus.NOT_STARTED

        return LessonProgressView(
            lesson_id=lesson_id,
            module_progress=progress,
            overall_status=overall,
            can_proceed=overall == CompletionStatus.COMPLETED and all_mastered,
            completed_count=completed_count,
            total_modules=total,
        )

    # =========================================================================
    # Mutations
    # =========================================================================

    def complete_reading(self, module_id: str) -> ModuleRecord:
        """Mark a reading module completed; repeat visits still count as attempts."""
        now = self._clock()

        def build(existing: ModuleRecord | None) -> ModuleRecord:
            return ReadingRecord(
                module_id=module_id,
                status=CompletionStatus.COMPLETED,
                attempts=(existing.attempts if existing else 0) + 1,
                last_attempt_date=now,
                mastery_achieved=True,
            )

        record = self._update(module_id, build)
        logger.debug("Reading {} completed (attempt {})", module_id, record.attempts)
        return record

    def record_quiz_attempt(
        self,
        module_id: str,
        score: float,
        mastery_threshold: float | None = None,
    ) -> bool:
        """
        Record a quiz submission.

        Args:
            module_id: Quiz or assessment module id
            score: Percentage score (0-100)
            mastery_threshold: Fraction to pass (defaults to the tracker default)

        Returns:
            True if mastery was achieved on this attempt
        """
        threshold = self.default_threshold if mastery_threshold is None else mastery_threshold
        achieved = score >= threshold * 100
        now = self._clock()

        def build(existing: ModuleRecord | None) -> ModuleRecord:
            return ScoredRecord(
                module_id=module_id,
                status=CompletionStatus.COMPLETED if achieved else CompletionStatus.IN_PROGRESS,
                score=score,
                attempts=(existing.attempts if existing else 0) + 1,
                last_attempt_date=now,
                mastery_achieved=achieved,
            )

        record = self._update(module_id, build)
        logger.debug(
            "Quiz {} scored {} (threshold {:.0%}) -> mastered={} (attempt {})",
            module_id,
            score,
            threshold,
            achieved,
            record.attempts,
        )
        return achieved

    def reset_module(self, module_id: str) -> None:
        """Delete a module's record entirely."""
        with self._lock:
            if module_id not in self._records:
                return
            remaining = {k: v for k, v in self._records.items() if k != module_id}
            self._commit(remaining)
        logger.info("Reset progress for module {}", module_id)

    def clear_all(self) -> None:
        """Forget every record and erase the durable snapshot."""
        with self._lock:
            self._records = {}
            self._writer.delete(self.key)
        logger.info("Cleared all module progress")
