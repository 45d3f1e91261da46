"""Scoring of a single question response against a single marking rule."""

import re
import typing as t
from datetime import date, datetime, time
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

import structlog
from django.conf import settings
from django.core.exceptions import ValidationError
from django.core.validators import EmailValidator, URLValidator
from django.utils.dateparse import parse_date, parse_datetime, parse_time
from pydantic import ValidationError as PydanticValidationError

from . import criteria as c
from .criteria import parse_criteria
from .enums import RuleType, ScoringMethod
from .models import MarkingRule, QuestionResponse

logger = structlog.get_logger(__name__)

ZERO = Decimal("0")
TWO_PLACES = Decimal("0.01")
QUARTER = Decimal("0.25")
DEFAULT_PHONE_PATTERN = r"^[\d\s\-\+\(\)]+$"
FORMAT_SUB_TYPES = frozenset({"email", "url", "phone"})


class MalformedAnswerError(ValueError):
    """The stored answer value cannot be read as the kind the rule expects."""


def _round(value: Decimal) -> Decimal:
    return value.quantize(TWO_PLACES, rounding=ROUND_HALF_UP)


def _to_decimal(raw: t.Any) -> Decimal:
    if isinstance(raw, bool):
        raise MalformedAnswerError(f"Expected a number, got {raw!r}.")
    try:
        value = Decimal(str(raw))
    except (InvalidOperation, ValueError) as e:
        raise MalformedAnswerError(f"Expected a number, got {raw!r}.") from e
    if not value.is_finite():
        raise MalformedAnswerError(f"Expected a finite number, got {raw!r}.")
    return value


def _to_date(raw: t.Any) -> date:
    if isinstance(raw, datetime):
        return raw.date()
    if isinstance(raw, date):
        return raw
    if isinstance(raw, str):
        parsed = parse_date(raw) or (dt.date() if (dt := parse_datetime(raw)) else None)
        if parsed:
            return parsed
    raise MalformedAnswerError(f"Expected a date, got {raw!r}.")


def _to_time(raw: t.Any) -> time:
    if isinstance(raw, time):
        return raw
    if isinstance(raw, str):
        parsed = parse_time(raw) or (dt.time() if (dt := parse_datetime(raw)) else None)
        if parsed:
            return parsed
    raise MalformedAnswerError(f"Expected a time, got {raw!r}.")


def _seconds(value: time) -> int:
    return value.hour * 3600 + value.minute * 60 + value.second


def _words(text: str) -> set[str]:
    return {word for word in re.split(r"\W+", text.lower()) if word}


def word_similarity(first: str, second: str) -> Decimal:
    """Jaccard similarity of the word sets of two texts."""
    words1, words2 = _words(first), _words(second)
    union = words1 | words2
    if not union:
        return ZERO
    return Decimal(len(words1 & words2)) / Decimal(len(union))


class RuleEvaluator:
    """Computes the score a response earns under one marking rule.

    Each rule type maps to one strategy. Strategies read only the criteria fields they need and the
    response's typed value. A missing value scores 0. A malformed value or criteria payload scores 0 and is
    logged, so one bad response never aborts the aggregation of a whole session.
    """

    def __init__(self, rule: MarkingRule) -> None:
        """Initialize the evaluator for a rule."""
        self.rule = rule
        self.points: Decimal = rule.points or ZERO

    def evaluate(self, response: QuestionResponse) -> Decimal:
        """Score the response. Always non-negative, rounded to two decimals."""
        strategy = self.STRATEGIES.get(self.rule.rule_type)
        if strategy is None:
            logger.warning("unknown_rule_type", rule_id=str(self.rule.pk), rule_type=self.rule.rule_type)
            return ZERO

        try:
            criteria = parse_criteria(self.rule.rule_type, self.rule.criteria)
            score = strategy(self, response, criteria)
        except (PydanticValidationError, MalformedAnswerError, ValidationError, re.error) as e:
            logger.warning(
                "rule_evaluation_failed",
                rule_id=str(self.rule.pk),
                rule_type=self.rule.rule_type,
                response_id=str(response.pk),
                error=str(e),
            )
            return ZERO

        return _round(max(score, ZERO))

    # ---- Value extraction ----

    def _value(self, response: QuestionResponse) -> dict[str, t.Any]:
        value = response.value
        if value is None:
            return {}
        if not isinstance(value, dict):
            raise MalformedAnswerError(f"Expected a structured answer, got {value!r}.")
        return value

    def _number(self, response: QuestionResponse) -> Decimal | None:
        value = self._value(response)
        for key in ("number", "rating", "year"):
            if value.get(key) not in (None, ""):
                return _to_decimal(value[key])
        return None

    def _text(self, response: QuestionResponse) -> str | None:
        value = response.value
        if isinstance(value, str):
            return value
        text = self._value(response).get("text")
        if text is None:
            return None
        if not isinstance(text, str):
            raise MalformedAnswerError(f"Expected text, got {text!r}.")
        return text

    def _date(self, response: QuestionResponse) -> date | None:
        value = self._value(response)
        raw = value.get("date") or value.get("datetime")
        return _to_date(raw) if raw else None

    def _date_range(self, response: QuestionResponse) -> tuple[date, date] | None:
        value = self._value(response)
        if not (value.get("start_date") and value.get("end_date")):
            return None
        return _to_date(value["start_date"]), _to_date(value["end_date"])

    def _time(self, response: QuestionResponse) -> time | None:
        value = self._value(response)
        raw = value.get("time") or value.get("datetime")
        return _to_time(raw) if raw else None

    def _file(self, response: QuestionResponse) -> tuple[str | None, int | None] | None:
        value = self._value(response)
        if not value:
            return None
        size = value.get("size")
        return value.get("content_type"), None if size is None else int(_to_decimal(size))

    # ---- Choice ----

    def _option_based(self, response: QuestionResponse, criteria: c.OptionBasedCriteria) -> Decimal:
        total = ZERO
        seen: set[t.Any] = set()
        for selected in response.selected_options.select_related("option"):
            option = selected.option
            if option.pk in seen or not option.is_correct_answer:
                continue
            seen.add(option.pk)
            total += option.points if option.has_assigned_points else self.points
        if criteria.minimum_score is not None and total < criteria.minimum_score:
            total = criteria.minimum_score
        return total

    # ---- Numeric ----

    def _range_based(self, response: QuestionResponse, criteria: c.RangeBasedCriteria) -> Decimal:
        value = self._number(response)
        if value is None or criteria.min is None or criteria.max is None:
            return ZERO
        if criteria.min - criteria.tolerance <= value <= criteria.max + criteria.tolerance:
            return self.points
        return ZERO

    def _step_based(self, response: QuestionResponse, criteria: c.StepBasedCriteria) -> Decimal:
        value = self._number(response)
        if value is None:
            return ZERO
        for interval in criteria.step_intervals:
            if interval.min <= value <= interval.max:
                return interval.points if interval.points is not None else self.points
        return ZERO

    def _tolerance_based(self, response: QuestionResponse, criteria: c.ToleranceBasedCriteria) -> Decimal:
        value = self._number(response)
        if value is None or criteria.expected_value is None:
            return ZERO
        return self.points if abs(value - criteria.expected_value) <= criteria.tolerance else ZERO

    # ---- Text ----

    def _exact_match(self, response: QuestionResponse, criteria: c.ExactMatchCriteria) -> Decimal:
        text = self._text(response)
        if text is None or not criteria.expected_values:
            return ZERO

        def normalize(value: str) -> str:
            if criteria.trim_whitespace:
                value = value.strip()
            return value if criteria.case_sensitive else value.lower()

        answer = normalize(text)
        return self.points if any(answer == normalize(expected) for expected in criteria.expected_values) else ZERO

    def _partial_match(self, response: QuestionResponse, criteria: c.PartialMatchCriteria) -> Decimal:
        text = self._text(response)
        if text is None or not criteria.expected_values:
            return ZERO
        threshold = criteria.partial_match_threshold
        if threshold is None:
            threshold = Decimal(str(settings.ASSESSMENTS_PARTIAL_MATCH_THRESHOLD))

        similarity = max(word_similarity(text, phrase) for phrase in criteria.expected_values)
        if similarity < threshold:
            return ZERO
        if criteria.scoring_method == ScoringMethod.PROPORTIONAL:
            return _round(similarity * self.points)
        return self.points

    def _keyword_based(self, response: QuestionResponse, criteria: c.KeywordBasedCriteria) -> Decimal:
        text = self._text(response)
        if text is None or not criteria.keywords:
            return ZERO
        lowered = text.lower()
        found = [keyword for keyword in criteria.keywords if keyword.lower() in lowered]
        if criteria.scoring_method == ScoringMethod.PROPORTIONAL:
            return _round(Decimal(len(found)) / Decimal(len(criteria.keywords)) * self.points)
        return self.points if found else ZERO

    def _format_based(self, response: QuestionResponse, criteria: c.FormatBasedCriteria) -> Decimal:
        text = self._text(response)
        if text is None:
            return ZERO

        format_type = criteria.format_type
        if format_type is None and self.rule.question.sub_type in FORMAT_SUB_TYPES:
            format_type = self.rule.question.sub_type  # type: ignore[assignment]

        if format_type == "email":
            return self.points if self._passes(EmailValidator(), text) else ZERO
        if format_type == "url":
            return self.points if self._passes(URLValidator(schemes=["http", "https"]), text) else ZERO
        if format_type == "phone":
            return self.points if re.fullmatch(criteria.phone_pattern or DEFAULT_PHONE_PATTERN, text) else ZERO
        if criteria.format_pattern and re.search(criteria.format_pattern, text):
            return self.points
        return ZERO

    @staticmethod
    def _passes(validator: t.Callable[[str], None], text: str) -> bool:
        try:
            validator(text)
        except ValidationError:
            return False
        return True

    def _strength_based(self, response: QuestionResponse, criteria: c.StrengthBasedCriteria) -> Decimal:
        text = self._text(response)
        if text is None:
            return ZERO
        checks = (
            len(text) >= criteria.effective_min_length(settings.ASSESSMENTS_STRENGTH_MIN_LENGTH),
            re.search(r"[A-Z]", text) is not None,
            re.search(r"[a-z]", text) is not None,
            re.search(r"\d", text) is not None,
        )
        return _round(self.points * QUARTER * sum(checks))

    def _content_analysis(self, response: QuestionResponse, criteria: c.ContentAnalysisCriteria) -> Decimal:
        text = self._text(response)
        if text is None or not criteria.content_analysis_rules:
            return ZERO
        counts = {
            "word_count": len(text.split()),
            "sentence_count": len([s for s in re.split(r"[.!?]+", text) if s.strip()]),
            "paragraph_count": len([p for p in re.split(r"\n\s*\n", text) if p.strip()]),
        }
        score = ZERO
        for rule in criteria.content_analysis_rules:
            count = counts[rule.type]
            if rule.min <= count and (rule.max is None or count <= rule.max):
                score += rule.points
        return score

    # ---- Dates ----

    def _date_range_based(self, response: QuestionResponse, criteria: c.DateRangeBasedCriteria) -> Decimal:
        answer = self._date(response)
        if answer is None or criteria.start_date is None or criteria.end_date is None:
            return ZERO
        return self.points if criteria.start_date <= answer <= criteria.end_date else ZERO

    def _time_based(self, response: QuestionResponse, criteria: c.TimeBasedCriteria) -> Decimal:
        answer = self._time(response)
        if answer is None or criteria.expected_time is None:
            return ZERO
        difference = abs(_seconds(answer) - _seconds(criteria.expected_time))
        return self.points if difference <= criteria.time_tolerance else ZERO

    def _overlap_based(self, response: QuestionResponse, criteria: c.OverlapBasedCriteria) -> Decimal:
        answer = self._date_range(response)
        if answer is None or criteria.start_date is None or criteria.end_date is None:
            return ZERO
        overlap_start = max(answer[0], criteria.start_date)
        overlap_end = min(answer[1], criteria.end_date)
        if overlap_start > overlap_end:
            return ZERO
        if criteria.scoring_method != ScoringMethod.PROPORTIONAL:
            return self.points
        expected_days = (criteria.end_date - criteria.start_date).days
        if expected_days <= 0:
            return self.points
        overlap_days = (overlap_end - overlap_start).days
        return _round(Decimal(overlap_days) / Decimal(expected_days) * self.points)

    # ---- Files ----

    def _file_based(self, response: QuestionResponse, criteria: c.FileBasedCriteria) -> Decimal:
        file = self._file(response)
        if file is None:
            return ZERO
        content_type, size = file
        limits = criteria.file_criteria
        if limits.allowed_types is not None and content_type not in limits.allowed_types:
            return ZERO
        if limits.max_size is not None and (size is None or size > limits.max_size):
            return ZERO
        return self.points

    def _size_based(self, response: QuestionResponse, criteria: c.SizeBasedCriteria) -> Decimal:
        file = self._file(response)
        if file is None or criteria.max_size is None or file[1] is None:
            return ZERO
        return self.points if file[1] <= criteria.max_size else ZERO

    def _type_based(self, response: QuestionResponse, criteria: c.TypeBasedCriteria) -> Decimal:
        file = self._file(response)
        if file is None or not criteria.allowed_types:
            return ZERO
        return self.points if file[0] in criteria.allowed_types else ZERO

    def _content_based(self, response: QuestionResponse, criteria: c.ContentBasedCriteria) -> Decimal:
        # File contents are not inspected; any uploaded file earns the rule's points.
        return ZERO if self._file(response) is None else self.points

    STRATEGIES: dict[str, t.Callable[..., Decimal]] = {
        RuleType.OPTION_BASED: _option_based,
        RuleType.RANGE_BASED: _range_based,
        RuleType.EXACT_MATCH: _exact_match,
        RuleType.PARTIAL_MATCH: _partial_match,
        RuleType.KEYWORD_BASED: _keyword_based,
        RuleType.FORMAT_BASED: _format_based,
        RuleType.STEP_BASED: _step_based,
        RuleType.TOLERANCE_BASED: _tolerance_based,
        RuleType.DATE_RANGE_BASED: _date_range_based,
        RuleType.TIME_BASED: _time_based,
        RuleType.OVERLAP_BASED: _overlap_based,
        RuleType.FILE_BASED: _file_based,
        RuleType.SIZE_BASED: _size_based,
        RuleType.TYPE_BASED: _type_based,
        RuleType.CONTENT_BASED: _content_based,
        RuleType.STRENGTH_BASED: _strength_based,
        RuleType.CONTENT_ANALYSIS: _content_analysis,
    }


def evaluate(response: QuestionResponse, rule: MarkingRule) -> Decimal:
    """Score a response under a rule."""
    return RuleEvaluator(rule).evaluate(response)
