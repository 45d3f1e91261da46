import typing as t
from uuid import UUID

import structlog
from django.db import transaction
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from ..enums import QuestionType, SessionEvent, SessionState
from ..exceptions import (
    InvalidAnswerError,
    OptionQuestionMismatchError,
    QuestionNotFoundError,
    SessionNotEditableError,
    SessionNotFoundError,
    SingleSelectionError,
)
from ..models import Option, Question, QuestionResponse, ResponseSession, SelectedOption, pydantic_error_message
from ..schema import ANSWER_VALUE_MODELS, AnswerSchema, RangeMetaData
from ..state_machine import fire

logger = structlog.get_logger(__name__)


def get_session(session_id: UUID | str) -> ResponseSession:
    """Fetch a session by id.

    Raises:
        SessionNotFoundError: if it does not exist.
    """
    try:
        return ResponseSession.objects.select_related("assessment", "user").get(pk=session_id)
    except ResponseSession.DoesNotExist as e:
        raise SessionNotFoundError(f"Response session {session_id} not found.") from e


@transaction.atomic
def start_session(user: t.Any, assessment: t.Any) -> ResponseSession:
    """Get or create the user's session for the assessment, starting it when it is still a draft."""
    session, created = ResponseSession.objects.get_or_create(user=user, assessment=assessment)
    if session.state == SessionState.DRAFT:
        fire(session, SessionEvent.START)
    logger.info("response_session_started", session_id=str(session.pk), created=created, state=session.state)
    return session


class ResponseService:
    """Records a respondent's answers in a session."""

    def __init__(self, session: ResponseSession) -> None:
        """Initialize the service for a session."""
        self.session = session

    def _get_question(self, question_id: UUID) -> Question:
        try:
            return Question.objects.get(pk=question_id, assessment_id=self.session.assessment_id)
        except Question.DoesNotExist as e:
            raise QuestionNotFoundError(f"Question {question_id} not found in this assessment.") from e

    def _validate_options(self, question: Question, option_ids: list[UUID]) -> list[Option]:
        ids = list(dict.fromkeys(option_ids))
        if not question.is_choice:
            if ids:
                raise InvalidAnswerError({"option_ids": f"{question.get_type_display()} questions have no options."})
            return []
        if len(ids) > 1 and not question.allows_multiple_selections:
            raise SingleSelectionError({"option_ids": "Only one option can be selected for this question."})
        options = {option.pk: option for option in Option.objects.filter(pk__in=ids, question=question)}
        if len(options) != len(ids):
            raise OptionQuestionMismatchError(
                {"option_ids": "One or more selected options do not belong to the answered question."}
            )
        return [options[option_id] for option_id in ids]

    def _validate_value(self, question: Question, value: dict[str, t.Any] | None) -> dict[str, t.Any]:
        if question.is_choice or not value:
            return {}
        model: type[BaseModel] = ANSWER_VALUE_MODELS[question.type]
        try:
            parsed = model.model_validate(value)
        except PydanticValidationError as e:
            raise InvalidAnswerError({"value": pydantic_error_message(e)}) from e

        if question.type == QuestionType.RANGE:
            meta = t.cast(RangeMetaData, question.typed_meta_data)
            number = parsed.number  # type: ignore[attr-defined]
            if not meta.min_value <= number <= meta.max_value:
                raise InvalidAnswerError(
                    {"value": f"The value must be between {meta.min_value} and {meta.max_value}."}
                )
        return parsed.model_dump(mode="json", exclude_none=True)

    @transaction.atomic
    def answer(self, payload: AnswerSchema) -> QuestionResponse:
        """Create or replace the session's answer to a question.

        Choice answers replace all previous selections. The first answer moves a draft or started session to
        ``in_progress``.

        Raises:
            SessionNotEditableError: if the session no longer accepts answers.
            QuestionNotFoundError: if the question is not part of the session's assessment.
            InvalidAnswerError, SingleSelectionError, OptionQuestionMismatchError: if the answer does not fit.
        """
        session = self.session
        if not session.accepts_answers:
            raise SessionNotEditableError("answer", session.state, "the session no longer accepts answers")

        question = self._get_question(payload.question_id)
        options = self._validate_options(question, payload.option_ids)
        value = self._validate_value(question, payload.value)

        if session.state in (SessionState.DRAFT, SessionState.STARTED):
            fire(session, SessionEvent.BEGIN_ANSWERING)

        response, created = QuestionResponse.objects.update_or_create(
            session=session, question=question, defaults={"value": value}
        )
        if question.is_choice:
            response.selected_options.all().delete()
            for option in options:
                SelectedOption.objects.create(response=response, option=option)

        logger.info(
            "question_answered",
            session_id=str(session.pk),
            question_id=str(question.pk),
            created=created,
            selections=len(options),
        )
        return response

    @transaction.atomic
    def clear_answer(self, question_id: UUID) -> None:
        """Remove the session's answer to a question, if any."""
        if not self.session.accepts_answers:
            raise SessionNotEditableError("answer", self.session.state, "the session no longer accepts answers")
        QuestionResponse.objects.filter(session=self.session, question_id=question_id).delete()
