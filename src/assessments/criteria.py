"""Typed criteria payloads for marking rules.

Each rule type stores its parameters in ``MarkingRule.criteria`` as JSON. The payload is validated
against the model registered for the rule type when the rule is authored, and parsed again by the
evaluator before scoring.
"""

import re
import typing as t
from datetime import date, time
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .enums import QuestionType, RuleType, ScoringMethod


class Criteria(BaseModel):
    model_config = ConfigDict(extra="allow")


class OptionBasedCriteria(Criteria):
    minimum_score: Decimal | None = None


class RangeBasedCriteria(Criteria):
    min: Decimal | None = None
    max: Decimal | None = None
    tolerance: Decimal = Decimal("0")

    @model_validator(mode="after")
    def check_bounds(self) -> t.Self:
        """Min must not exceed max."""
        if self.min is not None and self.max is not None and self.min > self.max:
            raise ValueError("min must be less than or equal to max")
        return self


class ExactMatchCriteria(Criteria):
    expected_values: list[str] = Field(default_factory=list)
    case_sensitive: bool = False
    trim_whitespace: bool = False


class PartialMatchCriteria(Criteria):
    expected_values: list[str] = Field(default_factory=list)
    partial_match_threshold: Decimal | None = Field(None, ge=0, le=1)
    scoring_method: ScoringMethod = ScoringMethod.ALL_OR_NOTHING


class KeywordBasedCriteria(Criteria):
    keywords: list[str] = Field(default_factory=list)
    scoring_method: ScoringMethod = ScoringMethod.ALL_OR_NOTHING


class FormatBasedCriteria(Criteria):
    format_type: t.Literal["email", "url", "phone"] | None = None
    format_pattern: str | None = None
    phone_pattern: str | None = None

    @field_validator("format_pattern", "phone_pattern")
    @classmethod
    def validate_pattern(cls, v: str | None) -> str | None:
        """Patterns must be valid regular expressions."""
        if v is not None:
            try:
                re.compile(v)
            except re.error as e:
                raise ValueError(f"Invalid regular expression: {e}") from e
        return v


class StepInterval(BaseModel):
    min: Decimal
    max: Decimal
    points: Decimal | None = None


class StepBasedCriteria(Criteria):
    step_intervals: list[StepInterval] = Field(default_factory=list)


class ToleranceBasedCriteria(Criteria):
    expected_value: Decimal | None = None
    tolerance: Decimal = Field(Decimal("0"), ge=0)


class DateRangeBasedCriteria(Criteria):
    start_date: date | None = None
    end_date: date | None = None


class TimeBasedCriteria(Criteria):
    expected_time: time | None = None
    time_tolerance: int = Field(0, ge=0, description="Tolerance in seconds.")


class OverlapBasedCriteria(Criteria):
    start_date: date | None = None
    end_date: date | None = None
    scoring_method: ScoringMethod = ScoringMethod.ALL_OR_NOTHING


class FileCriteria(BaseModel):
    allowed_types: list[str] | None = None
    max_size: int | None = Field(None, ge=0)


class FileBasedCriteria(Criteria):
    file_criteria: FileCriteria = Field(default_factory=FileCriteria)


class SizeBasedCriteria(Criteria):
    max_size: int | None = Field(None, ge=0)


class TypeBasedCriteria(Criteria):
    allowed_types: list[str] = Field(default_factory=list)


class ContentBasedCriteria(Criteria):
    pass


class StrengthSettings(BaseModel):
    min_length: int | None = Field(None, ge=0)


class StrengthBasedCriteria(Criteria):
    min_length: int | None = Field(None, ge=0)
    strength_criteria: StrengthSettings = Field(default_factory=StrengthSettings)

    def effective_min_length(self, default: int) -> int:
        """The top-level min_length wins over the nested one."""
        if self.min_length is not None:
            return self.min_length
        if self.strength_criteria.min_length is not None:
            return self.strength_criteria.min_length
        return default


class ContentAnalysisRule(BaseModel):
    type: t.Literal["word_count", "sentence_count", "paragraph_count"]
    min: int = Field(0, ge=0)
    max: int | None = Field(None, ge=0)
    points: Decimal = Field(Decimal("0"), ge=0)


class ContentAnalysisCriteria(Criteria):
    content_analysis_rules: list[ContentAnalysisRule] = Field(default_factory=list)


class RuleTypeDefinition(t.NamedTuple):
    name: str
    question_types: frozenset[str]
    criteria_model: type[Criteria]


_CHOICE = frozenset({QuestionType.MULTIPLE_CHOICE, QuestionType.RADIO, QuestionType.BOOLEAN})
_RANGE = frozenset({QuestionType.RANGE})
_TEXT = frozenset({QuestionType.RICH_TEXT})
_DATE = frozenset({QuestionType.DATE})
_FILE = frozenset({QuestionType.FILE_UPLOAD})

RULE_TYPES: dict[str, RuleTypeDefinition] = {
    RuleType.OPTION_BASED: RuleTypeDefinition("Option based", _CHOICE, OptionBasedCriteria),
    RuleType.RANGE_BASED: RuleTypeDefinition("Range based", _RANGE, RangeBasedCriteria),
    RuleType.EXACT_MATCH: RuleTypeDefinition("Exact match", _TEXT, ExactMatchCriteria),
    RuleType.PARTIAL_MATCH: RuleTypeDefinition("Partial match", _TEXT, PartialMatchCriteria),
    RuleType.KEYWORD_BASED: RuleTypeDefinition("Keyword based", _TEXT, KeywordBasedCriteria),
    RuleType.FORMAT_BASED: RuleTypeDefinition("Format based", _TEXT, FormatBasedCriteria),
    RuleType.STEP_BASED: RuleTypeDefinition("Step based", _RANGE, StepBasedCriteria),
    RuleType.TOLERANCE_BASED: RuleTypeDefinition("Tolerance based", _RANGE | _DATE, ToleranceBasedCriteria),
    RuleType.DATE_RANGE_BASED: RuleTypeDefinition("Date range based", _DATE, DateRangeBasedCriteria),
    RuleType.TIME_BASED: RuleTypeDefinition("Time based", _DATE, TimeBasedCriteria),
    RuleType.OVERLAP_BASED: RuleTypeDefinition("Overlap based", _DATE, OverlapBasedCriteria),
    RuleType.FILE_BASED: RuleTypeDefinition("File based", _FILE, FileBasedCriteria),
    RuleType.SIZE_BASED: RuleTypeDefinition("Size based", _FILE, SizeBasedCriteria),
    RuleType.TYPE_BASED: RuleTypeDefinition("Type based", _FILE, TypeBasedCriteria),
    RuleType.CONTENT_BASED: RuleTypeDefinition("Content based", _FILE, ContentBasedCriteria),
    RuleType.STRENGTH_BASED: RuleTypeDefinition("Strength based", _TEXT, StrengthBasedCriteria),
    RuleType.CONTENT_ANALYSIS: RuleTypeDefinition("Content analysis", _TEXT, ContentAnalysisCriteria),
}

DEFAULT_RULE_TYPES: dict[str, str] = {
    QuestionType.MULTIPLE_CHOICE: RuleType.OPTION_BASED,
    QuestionType.RADIO: RuleType.OPTION_BASED,
    QuestionType.BOOLEAN: RuleType.OPTION_BASED,
    QuestionType.RANGE: RuleType.RANGE_BASED,
    QuestionType.RICH_TEXT: RuleType.EXACT_MATCH,
    QuestionType.DATE: RuleType.DATE_RANGE_BASED,
    QuestionType.FILE_UPLOAD: RuleType.FILE_BASED,
}


def available_rule_types(question_type: str) -> list[str]:
    """Rule types applicable to a question type, in catalog order."""
    return [str(key) for key, definition in RULE_TYPES.items() if question_type in definition.question_types]


def parse_criteria(rule_type: str, data: dict[str, t.Any] | None) -> Criteria:
    """Validate raw criteria against the model registered for the rule type.

    Raises:
        KeyError: if the rule type is unknown.
        pydantic.ValidationError: if the payload does not fit the rule type.
    """
    return RULE_TYPES[rule_type].criteria_model.model_validate(data or {})
