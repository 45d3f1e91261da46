"""test_response_service.py: Unit tests for recording answers."""

import typing as t
import uuid

import pytest

from accounts.models import User
from assessments.enums import SessionState
from assessments.exceptions import (
    InvalidAnswerError,
    OptionQuestionMismatchError,
    QuestionNotFoundError,
    RejectedTransitionError,
    SessionNotEditableError,
    SessionNotFoundError,
    SingleSelectionError,
)
from assessments.models import Assessment, Option, Question, QuestionResponse, ResponseSession, Section
from assessments.schema import AnswerSchema
from assessments.service.response_service import ResponseService, get_session, start_session

pytestmark = pytest.mark.django_db

DATE_RANGE = {"start_date": "2024-05-01", "end_date": "2024-05-03"}


def _answer(session: ResponseSession, question: Question, **kwargs: t.Any) -> QuestionResponse:
    return ResponseService(session).answer(AnswerSchema(question_id=question.pk, **kwargs))


# ---- Sessions ----


def test_start_session_creates_and_starts(user: User, assessment: Assessment) -> None:
    session = start_session(user, assessment)

    assert session.state == SessionState.STARTED
    assert session.started_at is not None


def test_start_session_resumes_existing_session(user: User, assessment: Assessment) -> None:
    first = start_session(user, assessment)
    ResponseSession.objects.filter(pk=first.pk).update(state=SessionState.IN_PROGRESS)

    second = start_session(user, assessment)

    assert second.pk == first.pk
    assert second.state == SessionState.IN_PROGRESS
    assert ResponseSession.objects.filter(user=user, assessment=assessment).count() == 1


def test_get_session(session: ResponseSession) -> None:
    assert get_session(session.pk) == session
    with pytest.raises(SessionNotFoundError):
        get_session(uuid.uuid4())


# ---- Choice answers ----


def test_first_answer_moves_the_session_in_progress(
    session: ResponseSession, radio_question: Question, yes_option: Option
) -> None:
    response = _answer(session, radio_question, option_ids=[yes_option.pk])

    session.refresh_from_db()
    assert session.state == SessionState.IN_PROGRESS
    assert session.started_at is not None
    assert response.selected_option_ids() == [str(yes_option.pk)]


def test_answer_replaces_previous_selections(
    session: ResponseSession, radio_question: Question, yes_option: Option, no_option: Option
) -> None:
    """Answering again replaces the selection instead of adding to it."""
    _answer(session, radio_question, option_ids=[yes_option.pk])
    response = _answer(session, radio_question, option_ids=[no_option.pk])

    assert response.selected_option_ids() == [str(no_option.pk)]
    assert QuestionResponse.objects.filter(session=session, question=radio_question).count() == 1


def test_multiple_choice_deduplicates_selections(session: ResponseSession, checkbox_question: Question) -> None:
    red, blue, _ = checkbox_question.options.order_by("order")

    response = _answer(session, checkbox_question, option_ids=[red.pk, blue.pk, red.pk])

    assert sorted(response.selected_option_ids()) == sorted([str(red.pk), str(blue.pk)])


def test_empty_selection_clears_the_choice(
    session: ResponseSession, radio_question: Question, yes_option: Option
) -> None:
    _answer(session, radio_question, option_ids=[yes_option.pk])
    response = _answer(session, radio_question, option_ids=[])

    assert response.selected_option_ids() == []
    assert not response.has_valid_response


def test_single_answer_question_rejects_two_options(
    session: ResponseSession, radio_question: Question, yes_option: Option, no_option: Option
) -> None:
    with pytest.raises(SingleSelectionError):
        _answer(session, radio_question, option_ids=[yes_option.pk, no_option.pk])

    assert not QuestionResponse.objects.filter(session=session).exists()


def test_option_of_another_question_is_rejected(
    session: ResponseSession, radio_question: Question, checkbox_question: Question
) -> None:
    foreign = checkbox_question.options.first()
    assert foreign is not None

    with pytest.raises(OptionQuestionMismatchError):
        _answer(session, radio_question, option_ids=[foreign.pk])


def test_options_on_a_text_question_are_rejected(
    session: ResponseSession, text_question: Question, yes_option: Option
) -> None:
    with pytest.raises(InvalidAnswerError):
        _answer(session, text_question, option_ids=[yes_option.pk])


# ---- Value answers ----


@pytest.mark.parametrize(
    "fixture_name,value,stored",
    [
        ("text_question", {"text": "Blue"}, {"text": "Blue"}),
        ("range_question", {"number": 7}, {"number": 7}),
        ("range_question", {"rating": 4}, {"number": 4}),
        ("date_question", {"date": "2024-05-10"}, {"date": "2024-05-10"}),
        ("date_question", DATE_RANGE, DATE_RANGE),
        (
            "file_question",
            {"filename": "cv.pdf", "content_type": "application/pdf", "size": 1200},
            {"filename": "cv.pdf", "content_type": "application/pdf", "size": 1200},
        ),
    ],
)
def test_valid_values_are_stored_normalized(
    request: pytest.FixtureRequest,
    session: ResponseSession,
    fixture_name: str,
    value: dict[str, t.Any],
    stored: dict[str, t.Any],
) -> None:
    question: Question = request.getfixturevalue(fixture_name)

    response = _answer(session, question, value=value)

    response.refresh_from_db()
    assert response.value == stored


@pytest.mark.parametrize(
    "fixture_name,value",
    [
        ("text_question", {"number": 3}),
        ("range_question", {"number": 11}),
        ("range_question", {"number": "plenty"}),
        ("date_question", {"start_date": "2024-05-03", "end_date": "2024-05-01"}),
        ("date_question", {"start_date": "2024-05-03"}),
        ("file_question", {"content_type": "application/pdf", "size": -1}),
    ],
)
def test_invalid_values_are_rejected(
    request: pytest.FixtureRequest, session: ResponseSession, fixture_name: str, value: dict[str, t.Any]
) -> None:
    question: Question = request.getfixturevalue(fixture_name)

    with pytest.raises(InvalidAnswerError):
        _answer(session, question, value=value)

    session.refresh_from_db()
    assert session.state == SessionState.DRAFT


def test_answer_overwrites_the_value(session: ResponseSession, text_question: Question) -> None:
    _answer(session, text_question, value={"text": "Red"})
    response = _answer(session, text_question, value={"text": "Blue"})

    assert response.value == {"text": "Blue"}
    assert session.responses.count() == 1


# ---- Rejections ----


@pytest.mark.parametrize("state", [SessionState.COMPLETED, SessionState.SUBMITTED, SessionState.CANCELLED])
def test_answers_are_rejected_once_the_session_is_closed(
    session: ResponseSession, text_question: Question, state: str
) -> None:
    ResponseSession.objects.filter(pk=session.pk).update(state=state)
    session.refresh_from_db()

    with pytest.raises(SessionNotEditableError) as exc_info:
        _answer(session, text_question, value={"text": "late"})

    assert isinstance(exc_info.value, RejectedTransitionError)
    assert exc_info.value.state == state
    assert not session.responses.exists()


def test_question_of_another_assessment_is_rejected(session: ResponseSession) -> None:
    other_section = Section.objects.create(assessment=Assessment.objects.create(title="Other"), order=1)
    foreign = Question.objects.create(section=other_section, type="rich_text", text={"en": "Elsewhere"}, order=1)

    with pytest.raises(QuestionNotFoundError):
        _answer(session, foreign, value={"text": "hi"})


def test_clear_answer(session: ResponseSession, text_question: Question) -> None:
    _answer(session, text_question, value={"text": "Blue"})

    ResponseService(session).clear_answer(text_question.pk)

    assert not session.responses.exists()


def test_clear_answer_rejected_when_closed(session: ResponseSession, text_question: Question) -> None:
    ResponseSession.objects.filter(pk=session.pk).update(state=SessionState.SUBMITTED)
    session.refresh_from_db()

    with pytest.raises(SessionNotEditableError):
        ResponseService(session).clear_answer(text_question.pk)
