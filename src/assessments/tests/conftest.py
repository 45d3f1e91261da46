"""conftest.py: Fixtures for the assessments app."""

import typing as t
from decimal import Decimal

import pytest

from accounts.models import User
from assessments.enums import QuestionType
from assessments.models import (
    Assessment,
    MarkingRule,
    MarkingScheme,
    Option,
    Question,
    QuestionResponse,
    ResponseSession,
    Section,
    SelectedOption,
)

GRADE_BOUNDARIES = {"A": 90, "B": 80, "C": 70, "D": 60, "F": 0}


@pytest.fixture
def assessment() -> Assessment:
    """Provides a basic Assessment instance."""
    return Assessment.objects.create(title="Onboarding Survey")


@pytest.fixture
def section(assessment: Assessment) -> Section:
    """Provides the first section of the assessment."""
    return Section.objects.create(assessment=assessment, name="Basics", order=1)


@pytest.fixture
def second_section(assessment: Assessment) -> Section:
    """Provides the second section of the assessment."""
    return Section.objects.create(assessment=assessment, name="Details", order=2)


@pytest.fixture
def radio_question(section: Section) -> Question:
    """A required yes/no radio question, with "Yes" as the correct answer."""
    question = Question.objects.create(
        section=section, type=QuestionType.RADIO, text={"en": "Do you like tea?"}, order=1, is_required=True
    )
    Option.objects.create(question=question, text={"en": "Yes"}, order=1, is_correct_answer=True)
    Option.objects.create(question=question, text={"en": "No"}, order=2)
    return question


@pytest.fixture
def yes_option(radio_question: Question) -> Option:
    return radio_question.options.get(order=1)


@pytest.fixture
def no_option(radio_question: Question) -> Option:
    return radio_question.options.get(order=2)


@pytest.fixture
def checkbox_question(section: Section) -> Question:
    """A multiple choice question with two correct options out of three."""
    question = Question.objects.create(
        section=section, type=QuestionType.MULTIPLE_CHOICE, text={"en": "Pick the primary colors"}, order=2
    )
    Option.objects.create(question=question, text={"en": "Red"}, order=1, is_correct_answer=True, points=Decimal("3"))
    Option.objects.create(question=question, text={"en": "Blue"}, order=2, is_correct_answer=True)
    Option.objects.create(question=question, text={"en": "Green"}, order=3)
    return question


@pytest.fixture
def text_question(section: Section) -> Question:
    return Question.objects.create(
        section=section, type=QuestionType.RICH_TEXT, text={"en": "Favorite color?"}, order=3
    )


@pytest.fixture
def range_question(second_section: Section) -> Question:
    return Question.objects.create(
        section=second_section,
        type=QuestionType.RANGE,
        text={"en": "How satisfied are you?"},
        order=1,
        meta_data={"min_value": 1, "max_value": 10},
    )


@pytest.fixture
def date_question(second_section: Section) -> Question:
    return Question.objects.create(section=second_section, type=QuestionType.DATE, text={"en": "When?"}, order=2)


@pytest.fixture
def file_question(second_section: Section) -> Question:
    return Question.objects.create(
        section=second_section, type=QuestionType.FILE_UPLOAD, text={"en": "Upload your CV"}, order=3
    )


@pytest.fixture
def session(user: User, assessment: Assessment) -> ResponseSession:
    """A draft session of the standard user."""
    return ResponseSession.objects.create(user=user, assessment=assessment)


@pytest.fixture
def marking_scheme(assessment: Assessment) -> MarkingScheme:
    """The active marking scheme with letter grades and a passing score of 60."""
    return MarkingScheme.objects.create(
        assessment=assessment,
        name="Default",
        is_active=True,
        total_possible_score=Decimal("20"),
        settings={
            "passing_score": 60,
            "grade_boundaries": GRADE_BOUNDARIES,
            "feedback_templates": {"A": "Well done %{name}: %{score}/%{max_score} (%{percentage}%), grade %{grade}."},
        },
    )


@pytest.fixture
def make_rule(marking_scheme: MarkingScheme) -> t.Callable[..., MarkingRule]:
    """Create marking rules under the active scheme."""

    def _make(question: Question, rule_type: str, points: int | str = 10, **kwargs: t.Any) -> MarkingRule:
        return MarkingRule.objects.create(
            marking_scheme=marking_scheme,
            question=question,
            rule_type=rule_type,
            points=Decimal(str(points)),
            **kwargs,
        )

    return _make


@pytest.fixture
def respond(session: ResponseSession) -> t.Callable[..., QuestionResponse]:
    """Store an answer directly, bypassing the response service."""

    def _respond(
        question: Question,
        value: t.Any = None,
        options: t.Iterable[Option] = (),
        target: ResponseSession | None = None,
    ) -> QuestionResponse:
        response, _ = QuestionResponse.objects.update_or_create(
            session=target or session, question=question, defaults={"value": value if value is not None else {}}
        )
        response.selected_options.all().delete()
        for option in options:
            SelectedOption.objects.create(response=response, option=option)
        return response

    return _respond
