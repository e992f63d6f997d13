"""
Mastery Engine: wiring and combined queries.

Binds the Module Progress Tracker and the Remediation Registry to one
persistence substrate and answers the questions the lesson flow asks of
both at once:
- Can the learner move past this lesson? (lesson gate AND remediation gate)
- Which module is blocking access?
- What does an answered question do to remediation state?
- What should come next? (delegated to an external recommender)
"""

from __future__ import annotations

from collections.abc import Callable, Sequence
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from loguru import logger

from config import Settings, StorageBackend, get_settings
from src.mastery.exceptions import StorageError
from src.mastery.logging_setup import add_audit_sink
from src.mastery.models import LessonModule
from src.mastery.progress_tracker import ModuleProgressTracker, module_satisfied
from src.mastery.remediation_registry import RemediationRegistry
from src.mastery.storage import (
    KeyValueStore,
    MemoryKeyValueStore,
    PersistenceWriter,
    create_key_value_store,
)

# Opaque next-content policy (e.g. a contextual bandit); returns a module id
Recommender = Callable[[dict[str, Any]], str | None]


@dataclass
class AnswerEvent:
    """One answered question from the quiz pipeline."""

    question_id: str
    concept_id: str
    question_type: str
    lesson_id: str
    is_correct: bool
    variant_question_id: str | None = None


@dataclass
class AnswerOutcome:
    """Effect of an answer on remediation state."""

    concept_id: str
    remediation_required: bool = False
    remediation_cleared: bool = False
    same_format_retry: bool = False


class MasteryEngine:
    """
    Tracker + registry over a shared persistence writer.

    Usage:
        with MasteryEngine(MemoryKeyValueStore()) as engine:
            engine.tracker.complete_reading("reading-1")
            engine.record_answer(AnswerEvent(...))
            engine.can_proceed("lesson-1", modules)
    """

    def __init__(
        self,
        store: KeyValueStore | None = None,
        settings: Settings | None = None,
        background: bool | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self.settings = settings or get_settings()
        self._owns_store = store is None
        self.store = store if store is not None else _open_store(self.settings)
        if background is None:
            background = self.settings.background_writes

        self._audit_sink: int | None = None
        if self.settings.audit_log_enabled:
            try:
                self._audit_sink = add_audit_sink(self.settings.audit_log_path)
            except OSError as exc:
                logger.error("Cannot open audit log {}: {}", self.settings.audit_log_path, exc)

        self.writer = PersistenceWriter(self.store, background=background)
        self.tracker = ModuleProgressTracker(
            self.writer,
            key=self.settings.module_progress_key,
            default_threshold=self.settings.default_mastery_threshold,
            clock=clock,
        )
        self.registry = RemediationRegistry(
            self.writer,
            key=self.settings.remediation_registry_key,
            clock=clock,
        )

    # =========================================================================
    # Gates
    # =========================================================================

    def can_proceed(self, lesson_id: str, lesson_modules: Sequence[LessonModule]) -> bool:
        """Lesson completed with mastery AND no concept awaiting remediation."""
        lesson = self.tracker.get_lesson_progress(lesson_id, lesson_modules)
        return lesson.can_proceed and self.registry.can_proceed

    def find_blocking_module(
        self,
        lesson_modules: Sequence[LessonModule],
        module_index: int,
    ) -> LessonModule | None:
        """First predecessor of module_index that fails the gating predicate."""
        for prev in lesson_modules[: max(module_index, 0)]:
            if not module_satisfied(prev, self.tracker.get_module_progress(prev.id)):
                return prev
        return None

    def next_module(self, lesson_modules: Sequence[LessonModule]) -> LessonModule | None:
        """
        The module the learner should work on next.

        This is the first module not yet completed with mastery; it is
        always accessible. None when the lesson is complete.
        """
        for module in lesson_modules:
            if not module_satisfied(module, self.tracker.get_module_progress(module.id)):
                return module
        return None

    # =========================================================================
    # Answer Pipeline
    # =========================================================================

    def record_answer(self, event: AnswerEvent) -> AnswerOutcome:
        """
        Apply an answered question to remediation state.

        A wrong answer registers (or renews) the concept's debt. A correct
        answer clears the debt only when it comes from a different question
        format than the one that failed.
        """
        outcome = AnswerOutcome(concept_id=event.concept_id)

        if not event.is_correct:
            self.registry.register_failure(
                event.question_id,
                event.concept_id,
                event.question_type,
                event.lesson_id,
                event.variant_question_id,
            )
            outcome.remediation_required = True
            return outcome

        entry = self.registry.get_entry(event.concept_id)
        if entry is None or not entry.pending:
            return outcome

        if _format_of(event.question_type) == entry.question_type:
            logger.debug(
                "Correct {} answer on {} does not clear remediation (same format as failure)",
                entry.question_type,
                event.concept_id,
            )
            outcome.remediation_required = True
            outcome.same_format_retry = True
            return outcome

        self.registry.mark_remediated(event.concept_id)
        outcome.remediation_cleared = True
        return outcome

    def recommend_next(
        self,
        recommender: Recommender,
        context: dict[str, Any] | None = None,
    ) -> str | None:
        """
        Ask an external next-content policy for a module id.

        The recommender sees the caller's context plus the pending
        remediation concepts and the global gate. Recommender errors are
        logged and treated as "no recommendation".
        """
        full_context = {
            **(context or {}),
            "pending_concepts": [e.concept_id for e in self.registry.get_pending_remediation()],
            "can_proceed_globally": self.registry.can_proceed,
        }
        try:
            return recommender(full_context)
        except Exception as exc:
            logger.warning("Recommender failed: {}", exc)
            return None

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def reload(self) -> None:
        """Reload both stores from the substrate (full replacement)."""
        self.writer.flush()
        self.tracker.reload()
        self.registry.reload()

    def reset(self) -> None:
        """Clear all module progress and remediation state."""
        self.tracker.clear_all()
        self.registry.clear()

    def flush(self) -> None:
        self.writer.flush()

    def close(self) -> None:
        """Flush pending writes and release the writer, audit sink and any store the engine opened."""
        self.writer.close()
        if self._owns_store:
            close_store = getattr(self.store, "close", None)
            if close_store is not None:
                close_store()
            self._owns_store = False
        if self._audit_sink is not None:
            logger.remove(self._audit_sink)
            self._audit_sink = None

    def __enter__(self) -> "MasteryEngine":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


def _open_store(settings: Settings) -> KeyValueStore:
    try:
        return create_key_value_store(settings)
    except StorageError as exc:
        # Progress still works for this session; nothing is persisted
        logger.error(
            "Cannot open {} storage, using memory only: {}",
            StorageBackend(settings.storage_backend).value,
            exc,
        )
        return MemoryKeyValueStore()


def _format_of(question_type: Any) -> str:
    return getattr(question_type, "value", question_type)
