"""Per-session visibility of sections and questions.

Visibility is derived from the catalog and the session's current answers, never stored. A resolver caches what
it computes for the duration of one pass; call ``invalidate()`` after an answer changes.
"""

import typing as t
from decimal import Decimal, InvalidOperation

import structlog
from pydantic import ValidationError as PydanticValidationError

from .enums import ConditionOperator, TriggerResponseType
from .models import ConditionalVisibilityModel, Question, QuestionResponse, ResponseSession, Section, percentage
from .schema import CompletionBucket, CompletionStats, VisibilityCondition

logger = structlog.get_logger(__name__)

TRIGGER_VALUE_KEYS = ("number", "rating", "text", "date", "time", "year", "value")
HUNDRED = Decimal("100")


def _number(value: t.Any) -> Decimal | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        number = Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None
    return number if number.is_finite() else None


def trigger_value(response: QuestionResponse) -> t.Any:
    """The scalar a value condition compares against: the first present answer component."""
    value = response.value
    if not isinstance(value, dict):
        return value
    for key in TRIGGER_VALUE_KEYS:
        if value.get(key) not in (None, ""):
            return value[key]
    return None


def _values_equal(answer: t.Any, expected: str) -> bool:
    if str(answer) == expected:
        return True
    left, right = _number(answer), _number(expected)
    return left is not None and right is not None and left == right


def options_match(selected: set[str], operator: str, values: list[str]) -> bool:
    """Compare selected option ids against the condition's option ids."""
    expected = set(values)
    match operator:
        case ConditionOperator.EQUALS | ConditionOperator.CONTAINS | ConditionOperator.ANY:
            return bool(selected & expected)
        case ConditionOperator.NOT_EQUALS | ConditionOperator.NONE:
            return not selected & expected
        case ConditionOperator.ALL:
            return expected <= selected
    return False


def value_matches(answer: t.Any, operator: str, values: list[str]) -> bool:
    """Compare a scalar answer against the condition's values."""
    if answer is None:
        return False
    match operator:
        case ConditionOperator.EQUALS:
            return any(_values_equal(answer, expected) for expected in values)
        case ConditionOperator.NOT_EQUALS:
            return not any(_values_equal(answer, expected) for expected in values)
        case ConditionOperator.CONTAINS:
            return any(expected in str(answer) for expected in values)
        case ConditionOperator.ANY:
            return str(answer) in values
        case ConditionOperator.ALL:
            return all(expected in str(answer) for expected in values)
        case ConditionOperator.NONE:
            return str(answer) not in values
        case ConditionOperator.GREATER_THAN | ConditionOperator.LESS_THAN:
            number, threshold = _number(answer), _number(values[0])
            if number is None or threshold is None:
                return False
            return number > threshold if operator == ConditionOperator.GREATER_THAN else number < threshold
        case ConditionOperator.BETWEEN:
            number, low, high = _number(answer), _number(values[0]), _number(values[-1])
            if number is None or low is None or high is None:
                return False
            return low <= number <= high
    return False


class VisibilityResolver:
    """Answers visibility and navigation questions for one response session."""

    def __init__(self, session: ResponseSession) -> None:
        """Initialize the resolver for a session."""
        self.session = session
        self.country_code = session.country_code
        self._sections: list[Section] | None = None
        self._questions: list[Question] | None = None
        self._responses: dict[t.Any, QuestionResponse] | None = None
        self._section_visibility: dict[t.Any, bool] = {}
        self._question_visibility: dict[t.Any, bool] = {}

    def invalidate(self) -> None:
        """Forget cached answers and visibility. Call after any answer of the session changes."""
        self._responses = None
        self._section_visibility.clear()
        self._question_visibility.clear()

    # ---- Loading ----

    @property
    def sections(self) -> list[Section]:
        """All sections of the assessment, in order."""
        if self._sections is None:
            self._sections = list(Section.objects.filter(assessment_id=self.session.assessment_id).order_by("order"))
        return self._sections

    @property
    def questions(self) -> list[Question]:
        """All active questions of the assessment, flattened in section then question order."""
        if self._questions is None:
            self._questions = list(
                Question.objects.active()
                .filter(assessment_id=self.session.assessment_id)
                .select_related("section")
                .ordered()
            )
        return self._questions

    @property
    def responses(self) -> dict[t.Any, QuestionResponse]:
        """The session's responses keyed by question id."""
        if self._responses is None:
            self._responses = {
                response.question_id: response
                for response in QuestionResponse.objects.filter(session=self.session).with_selections()
            }
        return self._responses

    def is_answered(self, question: Question) -> bool:
        """Whether the session holds a valid response to the question."""
        response = self.responses.get(question.pk)
        return response is not None and response.has_valid_response

    # ---- Conditions ----

    def condition_met(self, item: ConditionalVisibilityModel) -> bool:
        """Evaluate the item's trigger against the session's answers. Unconditional items always pass."""
        if not item.is_conditional:
            return True
        try:
            condition = VisibilityCondition.model_validate(item.visibility_conditions)
        except PydanticValidationError as e:
            logger.warning("visibility_condition_invalid", item_id=str(item.pk), error=str(e))
            return False

        response = self.responses.get(condition.trigger_question_id)
        if response is None:
            return False

        operator = t.cast(str, condition.operator)
        if condition.trigger_response_type == TriggerResponseType.OPTION_SELECTED:
            return options_match(set(response.selected_option_ids()), operator, condition.trigger_values)
        return value_matches(trigger_value(response), operator, condition.trigger_values)

    def _passes(self, item: ConditionalVisibilityModel) -> bool:
        return item.accessible_to_country(self.country_code) and self.condition_met(item)

    # ---- Visibility ----

    def section_visible(self, section: Section) -> bool:
        """Whether the session may see the section."""
        if section.pk not in self._section_visibility:
            self._section_visibility[section.pk] = self._passes(section)
        return self._section_visibility[section.pk]

    def question_visible(self, question: Question) -> bool:
        """Whether the session may see the question. Hidden sections hide all of their questions."""
        if question.pk not in self._question_visibility:
            self._question_visibility[question.pk] = (
                question.active and self.section_visible(question.section) and self._passes(question)
            )
        return self._question_visibility[question.pk]

    def visible_sections(self) -> list[Section]:
        """Visible sections, in order."""
        return [section for section in self.sections if self.section_visible(section)]

    def visible_questions_in_section(self, section: Section) -> list[Question]:
        """Visible questions of one section, in order."""
        return [
            question
            for question in self.questions
            if question.section_id == section.pk and self.question_visible(question)
        ]

    def visible_questions(self) -> list[Question]:
        """Visible questions across all sections, in section then question order."""
        return [question for question in self.questions if self.question_visible(question)]

    # ---- Navigation ----

    @staticmethod
    def _position(question: Question) -> tuple[int, int]:
        return question.section.order, question.order

    def next_visible_question(self, current: Question) -> Question | None:
        """The first visible question after ``current``, or None at the end."""
        position = self._position(current)
        return next((q for q in self.visible_questions() if self._position(q) > position), None)

    def previous_visible_question(self, current: Question) -> Question | None:
        """The last visible question before ``current``, or None at the start."""
        position = self._position(current)
        return next((q for q in reversed(self.visible_questions()) if self._position(q) < position), None)

    def next_visible_section(self, current: Section) -> Section | None:
        """The first visible section after ``current``, or None at the end."""
        return next((s for s in self.visible_sections() if s.order > current.order), None)

    def previous_visible_section(self, current: Section) -> Section | None:
        """The last visible section before ``current``, or None at the start."""
        return next((s for s in reversed(self.visible_sections()) if s.order < current.order), None)

    def can_access_section(self, section: Section) -> bool:
        """A section is reachable once every required question of each earlier visible section is answered."""
        if not self.section_visible(section):
            return False
        return all(
            self.is_answered(question)
            for earlier in self.visible_sections()
            if earlier.order < section.order
            for question in self.visible_questions_in_section(earlier)
            if question.is_required
        )

    # ---- Completion ----

    def unanswered_required_questions(self) -> list[Question]:
        """Visible required questions without a valid response, in order."""
        return [q for q in self.visible_questions() if q.is_required and not self.is_answered(q)]

    def first_unanswered_required_question(self) -> Question | None:
        """The earliest visible required question still missing an answer."""
        return next(iter(self.unanswered_required_questions()), None)

    def all_required_visible_questions_answered(self) -> bool:
        """Completeness guard: every visible required question has a valid response."""
        return not self.unanswered_required_questions()

    def section_completion_percentage(self, section: Section) -> Decimal:
        """Answered over visible required questions of the section. Sections without any are complete."""
        required = [q for q in self.visible_questions_in_section(section) if q.is_required]
        if not required:
            return HUNDRED
        return percentage(sum(1 for q in required if self.is_answered(q)), len(required))

    def completion_stats(self) -> CompletionStats:
        """Progress of the session across visible sections and questions."""
        sections = self.visible_sections()
        questions = self.visible_questions()
        required = [q for q in questions if q.is_required]
        completed_sections = sum(1 for s in sections if self.section_completion_percentage(s) == HUNDRED)
        answered = sum(1 for q in questions if self.is_answered(q))
        answered_required = sum(1 for q in required if self.is_answered(q))
        return CompletionStats(
            sections=CompletionBucket(
                total=len(sections),
                completed=completed_sections,
                percentage=percentage(completed_sections, len(sections)),
            ),
            questions=CompletionBucket(
                total=len(questions), completed=answered, percentage=percentage(answered, len(questions))
            ),
            required_questions=CompletionBucket(
                total=len(required),
                completed=answered_required,
                percentage=percentage(answered_required, len(required)),
            ),
            can_complete=answered_required == len(required),
            is_fully_answered=answered == len(questions),
        )

    def conditional_integrity_errors(self) -> list[str]:
        """Visible conditional items whose trigger question is itself hidden."""
        questions_by_id = {question.pk: question for question in self.questions}
        items: list[tuple[str, ConditionalVisibilityModel, str]] = [
            ("Section", section, section.name) for section in self.visible_sections() if section.is_conditional
        ]
        items += [
            ("Question", question, question.localized_text())
            for question in self.visible_questions()
            if question.is_conditional
        ]

        errors = []
        for kind, item, label in items:
            condition = item.condition
            trigger = questions_by_id.get(condition.trigger_question_id) if condition else None
            if trigger is None or not self.question_visible(trigger):
                errors.append(f"{kind} '{label}' is visible but its trigger question is hidden.")
        return errors
