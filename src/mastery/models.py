"""
Mastery Engine Data Models.

Module descriptors (catalog input), module records (tracker state),
remediation entries (registry state) and the derived lesson view.

Field names are snake_case in Python and camelCase on the wire, so stored
snapshots stay interchangeable with the mobile app's durable storage.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    TypeAdapter,
    ValidationError,
    field_validator,
    model_validator,
)
from pydantic.alias_generators import to_camel

from src.mastery.exceptions import CatalogError

# Quiz modules pass at 80% unless the catalog says otherwise
DEFAULT_MASTERY_THRESHOLD = 0.8


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class _WireModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
    )


# =============================================================================
# Enums
# =============================================================================


class CompletionStatus(str, Enum):
    """Completion state of a module or lesson."""

    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


class QuestionType(str, Enum):
    """
    Interaction families the quiz screens render.

    The registry stores the family of the failing question so the variant
    picker can choose a different one for remediation.
    """

    MCQ = "mcq"
    TRUE_FALSE = "true_false"
    FILL_BLANK = "fill_blank"
    MATCHING = "matching"
    ORDERING = "ordering"
    SCENARIO = "scenario"
    CALCULATION = "calculation"
    HIGHLIGHT = "highlight"


# =============================================================================
# Module Descriptors (lesson catalog input)
# =============================================================================


class _ModuleBase(_WireModel):
    model_config = ConfigDict(extra="ignore")

    id: str

    @property
    def scored(self) -> bool:
        return False


class ReadingModule(_ModuleBase):
    """Reading block; mastered as soon as it is completed."""

    type: Literal["reading"] = "reading"


class _ScoredModuleBase(_ModuleBase):
    mastery_threshold: float = Field(default=DEFAULT_MASTERY_THRESHOLD, ge=0.0, le=1.0)

    @field_validator("mastery_threshold", mode="before")
    @classmethod
    def _default_when_null(cls, value: Any) -> Any:
        return DEFAULT_MASTERY_THRESHOLD if value is None else value

    @property
    def scored(self) -> bool:
        return True


class QuizModule(_ScoredModuleBase):
    """Quiz gated on reaching its mastery threshold."""

    type: Literal["quiz"] = "quiz"


class AssessmentModule(_ScoredModuleBase):
    """Assessment; gated the same way as a quiz."""

    type: Literal["assessment"] = "assessment"


LessonModule = Annotated[
    Union[ReadingModule, QuizModule, AssessmentModule],
    Field(discriminator="type"),
]

_LESSON_MODULES = TypeAdapter(list[LessonModule])


def parse_lesson_modules(data: Any) -> list[LessonModule]:
    """
    Validate an ordered list of module descriptors.

    Args:
        data: List of dicts (or descriptor objects) in pedagogical order

    Returns:
        Typed descriptors in the same order

    Raises:
        CatalogError: If any descriptor is malformed or has an unknown type
    """
    try:
        return _LESSON_MODULES.validate_python(data)
    except ValidationError as exc:
        raise CatalogError(f"Invalid lesson module list: {exc}") from exc


# =============================================================================
# Module Records (tracker state)
# =============================================================================


class _RecordBase(_WireModel):
    module_id: str
    status: CompletionStatus = CompletionStatus.NOT_STARTED
    attempts: int = Field(default=0, ge=0)
    last_attempt_date: datetime | None = None
    mastery_achieved: bool = False

    @model_validator(mode="after")
    def _mastery_requires_completion(self) -> "_RecordBase":
        if self.mastery_achieved and self.status != CompletionStatus.COMPLETED:
            raise ValueError("masteryAchieved cannot be true before the module is completed")
        return self

    @property
    def completed(self) -> bool:
        return self.status == CompletionStatus.COMPLETED


class ReadingRecord(_RecordBase):
    """Progress on a reading module."""

    kind: Literal["reading"] = "reading"


class ScoredRecord(_RecordBase):
    """Progress on a quiz or assessment; carries the last submitted score (0-100)."""

    kind: Literal["scored"] = "scored"
    score: float


class UntouchedModule(_RecordBase):
    """Placeholder shown in lesson views for modules with no record."""

    kind: Literal["untouched"] = "untouched"
    status: Literal[CompletionStatus.NOT_STARTED] = CompletionStatus.NOT_STARTED


ModuleRecord = Annotated[
    Union[ReadingRecord, ScoredRecord],
    Field(discriminator="kind"),
]

ModuleProgressEntry = Annotated[
    Union[ReadingRecord, ScoredRecord, UntouchedModule],
    Field(discriminator="kind"),
]

MODULE_RECORD = TypeAdapter(ModuleRecord)


def infer_record_kind(data: dict[str, Any]) -> dict[str, Any]:
    """Tag a legacy record (stored without ``kind``) by the presence of a score."""
    if "kind" in data:
        return data
    kind = "scored" if data.get("score") is not None else "reading"
    return {**data, "kind": kind}


class LessonProgressView(_WireModel):
    """Derived, never-persisted projection of a lesson's module records."""

    lesson_id: str
    module_progress: dict[str, ModuleProgressEntry]
    overall_status: CompletionStatus
    can_proceed: bool
    completed_count: int = 0
    total_modules: int = 0


# =============================================================================
# Remediation Entries (registry state)
# =============================================================================


class RemediationEntry(_WireModel):
    """A concept the learner currently owes a format-varied correct answer on."""

    question_id: str
    concept_id: str
    question_type: str
    lesson_id: str
    timestamp: datetime
    requires_remediation: bool = True
    remediation_complete: bool = False
    variant_question_id: str | None = None

    @property
    def pending(self) -> bool:
        return self.requires_remediation and not self.remediation_complete
