"""
Mastery Progression & Remediation Engine.

Decides, for a learner moving through a lesson of ordered modules, whether
a module is complete, whether a quiz is mastered, whether the learner may
advance, and which concepts still owe a format-varied correct answer.

Components:
- ModuleProgressTracker: module completion/mastery and lesson gating
- RemediationRegistry: concept debt from wrong answers, global proceed gate
- MasteryEngine: both stores over one persistence substrate
- KeyValueStore backends + PersistenceWriter: durable snapshots
"""
from src.mastery.engine import AnswerEvent, AnswerOutcome, MasteryEngine
from src.mastery.exceptions import CatalogError, MasteryError, SnapshotError, StorageError
from src.mastery.models import (
    DEFAULT_MASTERY_THRESHOLD,
    AssessmentModule,
    CompletionStatus,
    LessonModule,
    LessonProgressView,
    ModuleRecord,
    QuestionType,
    QuizModule,
    ReadingModule,
    ReadingRecord,
    RemediationEntry,
    ScoredRecord,
    UntouchedModule,
    parse_lesson_modules,
)
from src.mastery.progress_tracker import MODULE_PROGRESS_KEY, ModuleProgressTracker
from src.mastery.remediation_registry import REMEDIATION_REGISTRY_KEY, RemediationRegistry
from src.mastery.storage import (
    JsonFileKeyValueStore,
    KeyValueStore,
    MemoryKeyValueStore,
    PersistenceWriter,
    SQLiteKeyValueStore,
    create_key_value_store,
)

__all__ = [
    "AnswerEvent",
    "AnswerOutcome",
    "AssessmentModule",
    "CatalogError",
    "CompletionStatus",
    "DEFAULT_MASTERY_THRESHOLD",
    "JsonFileKeyValueStore",
    "KeyValueStore",
    "LessonModule",
    "LessonProgressView",
    "MODULE_PROGRESS_KEY",
    "MasteryEngine",
    "MasteryError",
    "MemoryKeyValueStore",
    "ModuleProgressTracker",
    "ModuleRecord",
    "PersistenceWriter",
    "QuestionType",
    "QuizModule",
    "REMEDIATION_REGISTRY_KEY",
    "ReadingModule",
    "ReadingRecord",
    "RemediationEntry",
    "RemediationRegistry",
    "SQLiteKeyValueStore",
    "ScoredRecord",
    "SnapshotError",
    "StorageError",
    "UntouchedModule",
    "create_key_value_store",
    "parse_lesson_modules",
]
