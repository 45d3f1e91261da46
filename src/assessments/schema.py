import datetime as dt
import typing as t
from decimal import Decimal
from uuid import UUID

from django.conf import settings
from django.utils.translation import get_language
from ninja import Schema
from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_core import PydanticCustomError

from .enums import ConditionOperator, QuestionType, TriggerResponseType

# ---- MIME type constants for file upload questions ----

DEFAULT_ALLOWED_DATA_TYPES: tuple[str, ...] = (
    "image/jpeg",
    "image/png",
    "image/gif",
    "application/pdf",
    "application/msword",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document",  # .docx
    "text/plain",
)

MIN_FILE_SIZE = 1024
MAX_FILE_SIZE = 100 * 1024 * 1024


def _to_number(value: str) -> float | None:
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def localized(value: str | dict[str, str]) -> dict[str, str]:
    """Normalize a plain string into a ``{locale: text}`` map for the active language."""
    if isinstance(value, dict):
        return value
    return {get_language() or settings.LANGUAGE_CODE: value}


# ---- Stored JSON payloads ----


class VisibilityCondition(BaseModel):
    """The trigger that makes a conditional section or question visible."""

    trigger_question_id: UUID
    trigger_response_type: TriggerResponseType
    trigger_values: list[str] = Field(min_length=1)
    operator: ConditionOperator | None = None

    @field_validator("trigger_values", mode="before")
    @classmethod
    def stringify_trigger_values(cls, v: t.Any) -> t.Any:
        """Trigger values are always compared as strings."""
        if isinstance(v, (list, tuple, set)):
            return [str(item) for item in v]
        if v is None or v == "":
            return v
        return [str(v)]

    @model_validator(mode="after")
    def check_operator(self) -> "VisibilityCondition":
        """Fill the default operator and validate the operands it needs."""
        if self.trigger_response_type == TriggerResponseType.VALUE_RANGE:
            self.operator = ConditionOperator.BETWEEN
        elif self.operator is None:
            self.operator = (
                ConditionOperator.CONTAINS
                if self.trigger_response_type == TriggerResponseType.OPTION_SELECTED
                else ConditionOperator.EQUALS
            )

        if self.operator == ConditionOperator.BETWEEN:
            if len(self.trigger_values) != 2 or any(_to_number(v) is None for v in self.trigger_values):
                raise PydanticCustomError(
                    "invalid_range", "A range condition needs exactly two numeric trigger values."
                )
        elif self.operator in (ConditionOperator.GREATER_THAN, ConditionOperator.LESS_THAN):
            if _to_number(self.trigger_values[0]) is None:
                raise PydanticCustomError(
                    "invalid_comparison", "A numeric comparison needs a numeric trigger value."
                )
        return self


class RangeMetaData(BaseModel):
    min_value: int | float = 1
    max_value: int | float = 10
    step_value: int | float = Field(1, gt=0)

    @model_validator(mode="after")
    def check_bounds(self) -> "RangeMetaData":
        """min_value must not exceed max_value."""
        if self.min_value > self.max_value:
            raise PydanticCustomError("invalid_range", "min_value must be less than or equal to max_value.")
        return self


class FileUploadMetaData(BaseModel):
    allowed_data_types: list[str] = Field(default_factory=lambda: list(DEFAULT_ALLOWED_DATA_TYPES), min_length=1)
    max_file_size: int = Field(default_factory=lambda: settings.ASSESSMENTS_MAX_FILE_SIZE)
    upload_mode: t.Literal["single", "multiple"] = "single"

    @field_validator("allowed_data_types", mode="before")
    @classmethod
    def listify(cls, v: t.Any) -> t.Any:
        """Accept a single MIME type."""
        return [v] if isinstance(v, str) else v

    @field_validator("allowed_data_types")
    @classmethod
    def validate_mime_types(cls, v: list[str]) -> list[str]:
        """MIME types look like ``type/subtype``."""
        invalid = [mime for mime in v if "/" not in mime]
        if invalid:
            raise PydanticCustomError(
                "invalid_mime_type", "Invalid MIME type(s): {invalid}.", {"invalid": ", ".join(invalid)}
            )
        return v

    @field_validator("max_file_size")
    @classmethod
    def validate_max_file_size(cls, v: int) -> int:
        """Between 1 KiB and 100 MiB."""
        if v < MIN_FILE_SIZE:
            raise PydanticCustomError("file_size_too_small", "max_file_size must be at least 1KB.")
        if v > MAX_FILE_SIZE:
            raise PydanticCustomError("file_size_too_large", "max_file_size cannot exceed 100MB.")
        return v


class EmptyMetaData(BaseModel):
    pass


META_DATA_MODELS: dict[str, type[BaseModel]] = {
    QuestionType.RANGE: RangeMetaData,
    QuestionType.FILE_UPLOAD: FileUploadMetaData,
}


def parse_meta_data(question_type: str, data: dict[str, t.Any] | None) -> BaseModel:
    """Validate a question's meta data against its question type, filling defaults."""
    return META_DATA_MODELS.get(question_type, EmptyMetaData).model_validate(data or {})


class MarkingSettings(BaseModel):
    """Settings stored on a marking scheme."""

    passing_score: Decimal | None = Field(None, ge=0)
    grade_boundaries: dict[str, Decimal] = Field(default_factory=dict)
    feedback_templates: dict[str, str] = Field(default_factory=dict)

    def ordered_boundaries(self) -> list[tuple[str, Decimal]]:
        """Grade boundaries sorted by threshold, highest first."""
        return sorted(self.grade_boundaries.items(), key=lambda item: item[1], reverse=True)


# ---- Answer values ----


class NumberAnswerValue(BaseModel):
    number: int | float

    @model_validator(mode="before")
    @classmethod
    def accept_rating(cls, data: t.Any) -> t.Any:
        """Rating widgets submit ``rating`` instead of ``number``."""
        if isinstance(data, dict) and "number" not in data and "rating" in data:
            return {**data, "number": data["rating"]}
        return data


class TextAnswerValue(BaseModel):
    text: str


class DateAnswerValue(BaseModel):
    date: dt.date | None = None
    datetime: dt.datetime | None = None
    time: dt.time | None = None
    year: int | None = None
    start_date: dt.date | None = None
    end_date: dt.date | None = None

    @model_validator(mode="after")
    def check_present(self) -> "DateAnswerValue":
        """At least one date component, and complete ranges."""
        if (self.start_date is None) != (self.end_date is None):
            raise PydanticCustomError("incomplete_range", "A date range needs both start_date and end_date.")
        if self.start_date and self.end_date and self.start_date > self.end_date:
            raise PydanticCustomError("invalid_range", "start_date must not be after end_date.")
        if not any((self.date, self.datetime, self.time, self.year, self.start_date)):
            raise PydanticCustomError(
                "missing_date", "A date answer needs a date, datetime, time, year or range."
            )
        return self


class FileAnswerValue(BaseModel):
    filename: str = ""
    content_type: str
    size: int = Field(ge=0)


ANSWER_VALUE_MODELS: dict[str, type[BaseModel]] = {
    QuestionType.RANGE: NumberAnswerValue,
    QuestionType.RICH_TEXT: TextAnswerValue,
    QuestionType.DATE: DateAnswerValue,
    QuestionType.FILE_UPLOAD: FileAnswerValue,
}


# ---- Authoring payloads ----


class AssessmentCreateSchema(Schema):
    title: str
    description: str = ""
    is_active: bool = True


class SectionCreateSchema(Schema):
    name: str | None = None
    order: int | None = Field(None, ge=1)
    visibility_conditions: VisibilityCondition | None = None
    restricted_countries: list[str] = Field(default_factory=list)


class SectionUpdateSchema(Schema):
    name: str | None = None
    order: int | None = Field(None, ge=1)


class OptionCreateSchema(Schema):
    text: dict[str, str]
    order: int | None = Field(None, ge=1)
    is_correct_answer: bool = False
    points: Decimal | None = None

    _localize_text = field_validator("text", mode="before")(localized)


class OptionUpdateSchema(Schema):
    text: dict[str, str] | None = None
    is_correct_answer: bool | None = None
    points: Decimal | None = None

    @field_validator("text", mode="before")
    @classmethod
    def localize_text(cls, v: t.Any) -> t.Any:
        """Plain strings are stored under the active language."""
        return None if v is None else localized(v)


class QuestionCreateSchema(Schema):
    section_id: UUID
    type: QuestionType
    sub_type: str | None = None
    text: dict[str, str]
    order: int | None = Field(None, ge=1)
    is_required: bool = False
    active: bool = True
    meta_data: dict[str, t.Any] = Field(default_factory=dict)
    visibility_conditions: VisibilityCondition | None = None
    restricted_countries: list[str] = Field(default_factory=list)
    options: list[OptionCreateSchema] = Field(default_factory=list)

    _localize_text = field_validator("text", mode="before")(localized)


class QuestionUpdateSchema(Schema):
    sub_type: str | None = None
    text: dict[str, str] | None = None
    is_required: bool | None = None
    active: bool | None = None
    meta_data: dict[str, t.Any] | None = None

    @field_validator("text", mode="before")
    @classmethod
    def localize_text(cls, v: t.Any) -> t.Any:
        """Plain strings are stored under the active language."""
        return None if v is None else localized(v)


class MarkingSchemeCreateSchema(Schema):
    name: str
    description: str = ""
    total_possible_score: Decimal = Field(Decimal("0"), ge=0)
    settings: MarkingSettings = Field(default_factory=MarkingSettings)
    is_active: bool = False


class MarkingRuleCreateSchema(Schema):
    question_id: UUID
    rule_type: str | None = None
    points: Decimal = Field(Decimal("0"), ge=0)
    is_active: bool = True
    order: int = Field(0, ge=0)
    criteria: dict[str, t.Any] = Field(default_factory=dict)


class MarkingRuleUpdateSchema(Schema):
    points: Decimal | None = Field(None, ge=0)
    is_active: bool | None = None
    order: int | None = Field(None, ge=0)
    criteria: dict[str, t.Any] | None = None


# ---- Answering ----


class AnswerSchema(Schema):
    question_id: UUID
    option_ids: list[UUID] = Field(default_factory=list)
    value: dict[str, t.Any] | None = None


# ---- Results ----


class SessionScoreSummary(BaseModel):
    total_score: Decimal
    max_possible_score: Decimal
    percentage: Decimal
    grade: str
    responses_graded: int


class CompletionBucket(BaseModel):
    total: int
    completed: int
    percentage: Decimal


class CompletionStats(BaseModel):
    sections: CompletionBucket
    questions: CompletionBucket
    required_questions: CompletionBucket
    can_complete: bool
    is_fully_answered: bool
