"""
Remediation Registry.

Tracks concepts a learner has answered incorrectly. Each failed concept
owes a correct answer on a different-format question before it counts as
safe again:

1. A wrong answer registers the concept with the failing question's format
2. The variant picker (external) uses that format to choose a different one
3. The concept blocks the global proceed gate until marked remediated

The registry answers "is this concept currently owed", not "how often was
it failed": a second failure on the same concept refreshes the entry in
place instead of stacking.
"""

from __future__ import annotations

import threading
from collections.abc import Callable, Iterable, Mapping
from datetime import datetime
from enum import Enum
from typing import Any

from loguru import logger
from pydantic import ValidationError

from config import REMEDIATION_REGISTRY_KEY
from src.mastery.exceptions import SnapshotError, StorageError
from src.mastery.models import RemediationEntry, utc_now
from src.mastery.snapshots import decode_remediation_entries, encode_remediation_entries
from src.mastery.storage import PersistenceWriter

# Records bound with audit=True are routed to the optional audit sink
audit_logger = logger.bind(audit=True)


class RemediationRegistry:
    """
    Concept debt created by wrong answers.

    Entries are keyed by concept id and kept in first-failure order.
    """

    def __init__(
        self,
        writer: PersistenceWriter,
        key: str = REMEDIATION_REGISTRY_KEY,
        clock: Callable[[], datetime] | None = None,
    ):
        self._writer = writer
        self.key = key
        self._clock = clock or utc_now
        self._lock = threading.RLock()
        self._entries: dict[str, RemediationEntry] = {}
        self.reload()

    # =========================================================================
    # Loading / Snapshot
    # =========================================================================

    def reload(self) -> None:
        """Replace in-memory state with the durable snapshot (empty on failure)."""
        with self._lock:
            self._entries = self._load()
        logger.debug("Loaded {} remediation entries from {}", len(self._entries), self.key)

    def _load(self) -> dict[str, RemediationEntry]:
        try:
            raw = self._writer.read(self.key)
        except StorageError as exc:
            logger.warning("Failed to load remediation registry: {}", exc)
            return {}
        if raw is None:
            return {}
        try:
            return decode_remediation_entries(raw)
        except SnapshotError as exc:
            logger.warning("Failed to load remediation registry: {}", exc)
            return {}

    def replace_snapshot(self, entries: Iterable[RemediationEntry | Mapping[str, Any]]) -> None:
        """Replace all local entries with a snapshot from another source (no merge)."""
        new_entries: dict[str, RemediationEntry] = {}
        for item in entries:
            try:
                entry = item if isinstance(item, RemediationEntry) else RemediationEntry.model_validate(item)
            except ValidationError as exc:
                logger.warning("Skipping invalid remediation entry: {}", exc)
                continue
            new_entries[entry.concept_id] = entry
        self._commit(new_entries)
        logger.info("Replaced remediation registry with {} entries", len(new_entries))

    def _commit(self, entries: dict[str, RemediationEntry]) -> None:
        with self._lock:
            self._entries = entries
            self._writer.write(self.key, encode_remediation_entries(entries.values()))

    # =========================================================================
    # Queries
    # =========================================================================

    @property
    def entries(self) -> list[RemediationEntry]:
        """Every entry, resolved ones included, in first-failure order."""
        return list(self._entries.values())

    @property
    def can_proceed(self) -> bool:
        """Global gate: no concept is still owed."""
        return all(not e.requires_remediation or e.remediation_complete for e in self._entries.values())

    def get_entry(self, concept_id: str) -> RemediationEntry | None:
        return self._entries.get(concept_id)

    def needs_remediation(self, concept_id: str) -> bool:
        entry = self._entries.get(concept_id)
        return entry is not None and entry.pending

    def get_remediation_for_lesson(self, lesson_id: str) -> list[RemediationEntry]:
        return [e for e in self._entries.values() if e.lesson_id == lesson_id and e.pending]

    def get_pending_remediation(self) -> list[RemediationEntry]:
        return [e for e in self._entries.values() if e.pending]

    # =========================================================================
    # Mutations
    # =========================================================================

    def register_failure(
        self,
        question_id: str,
        concept_id: str,
        question_type: str,
        lesson_id: str,
        variant_question_id: str | None = None,
    ) -> RemediationEntry:
        """
        Register a wrong answer on a concept.

        Args:
            question_id: Question that was answered incorrectly
            concept_id: Concept the question tests
            question_type: Interaction family of the failing question
            lesson_id: Lesson in which the failure happened
            variant_question_id: Optional remediation question to present next

        Returns:
            The new or refreshed entry
        """
        if isinstance(question_type, Enum):
            question_type = question_type.value
        now = self._clock()

        with self._lock:
            existing = self._entries.get(concept_id)
            if existing is not None:
                # Failed again: refresh in place
                entry = RemediationEntry(
                    question_id=question_id,
                    concept_id=concept_id,
                    question_type=question_type,
                    lesson_id=lesson_id,
                    timestamp=now,
                    requires_remediation=True,
                    remediation_complete=False,
                    variant_question_id=variant_question_id or existing.variant_question_id,
                )
            else:
                entry = RemediationEntry(
                    question_id=question_id,
                    concept_id=concept_id,
                    question_type=question_type,
                    lesson_id=lesson_id,
                    timestamp=now,
                    variant_question_id=variant_question_id,
                )
            self._commit({**self._entries, concept_id: entry})

        logger.debug(
            "Concept {} needs remediation (question {}, type {}, renewed={})",
            concept_id,
            question_id,
            question_type,
            existing is not None,
        )
        audit_logger.info(
            "failure concept={} question={} type={} lesson={} variant={}",
            concept_id,
            question_id,
            question_type,
            entry.lesson_id,
            entry.variant_question_id,
        )
        return entry

    def mark_remediated(self, concept_id: str) -> None:
        """Clear a concept's debt. Unknown concepts are ignored."""
        with self._lock:
            existing = self._entries.get(concept_id)
            if existing is None:
                logger.debug("mark_remediated: no entry for concept {}", concept_id)
                return
            entry = existing.model_copy(
                update={"remediation_complete": True, "requires_remediation": False}
            )
            self._commit({**self._entries, concept_id: entry})

        logger.debug("Concept {} remediated", concept_id)
        audit_logger.info("remediated concept={} question={}", concept_id, entry.question_id)

    def clear(self) -> None:
        """Erase every entry and the durable snapshot."""
        with self._lock:
            self._entries = {}
            self._writer.delete(self.key)
        logger.info("Cleared remediation registry")
