"""Lifecycle of a response session as an explicit transition table.

Each transition names the states it may fire from, the state it leads to, an optional guard returning the
reason it must be rejected (or None), and an optional effect applied to the locked session before it is saved.
"""

import typing as t
from dataclasses import dataclass
from decimal import Decimal

import structlog
from django.db import transaction
from django.utils import timezone

from .enums import SessionEvent, SessionState
from .exceptions import AssessmentException, RejectedTransitionError
from .models import ResponseSession
from .signals import session_transitioned

logger = structlog.get_logger(__name__)

Guard = t.Callable[[ResponseSession, dict[str, t.Any]], str | None]
Effect = t.Callable[[ResponseSession, dict[str, t.Any]], None]

PRE_COMPLETION_STATES = frozenset({SessionState.DRAFT, SessionState.STARTED, SessionState.IN_PROGRESS})


@dataclass(frozen=True)
class Transition:
    event: SessionEvent
    target: SessionState
    sources: frozenset[SessionState] | None = None  # None: any state
    guard: Guard | None = None
    effect: Effect | None = None

    def allowed_from(self, state: str) -> bool:
        """Whether the transition may fire from the state."""
        return self.sources is None or state in self.sources


# ---- Guards ----


def required_questions_answered(session: ResponseSession, context: dict[str, t.Any]) -> str | None:
    """Every currently visible required question needs a valid response."""
    from .visibility import VisibilityResolver

    missing = VisibilityResolver(session).first_unanswered_required_question()
    if missing is None:
        return None
    return f"required question '{missing.localized_text()}' not answered"


def marking_scheme_available(session: ResponseSession, context: dict[str, t.Any]) -> str | None:
    """Marking needs the requested scheme, or an active one."""
    from .service.marking_service import resolve_marking_scheme

    try:
        resolve_marking_scheme(session, context.get("marking_scheme_id"))
    except AssessmentException as e:
        return str(e)
    return None


# ---- Effects ----


def _stamp(field: str) -> Effect:
    def effect(session: ResponseSession, context: dict[str, t.Any]) -> None:
        setattr(session, field, timezone.now())

    return effect


def stamp_started(session: ResponseSession, context: dict[str, t.Any]) -> None:
    """Answering without an explicit start still records when the attempt began."""
    if session.started_at is None:
        session.started_at = timezone.now()


def enqueue_marking(session: ResponseSession, context: dict[str, t.Any]) -> None:
    """Schedule the background marking job once the transition is committed."""
    from .tasks import mark_response_session

    session_id = str(session.pk)
    scheme_id = context.get("marking_scheme_id")
    scheme_id = str(scheme_id) if scheme_id else None
    transaction.on_commit(lambda: mark_response_session.delay(session_id, scheme_id))
    logger.info("session_marking_queued", session_id=session_id, scheme_id=scheme_id)


def mark_session(session: ResponseSession, context: dict[str, t.Any]) -> None:
    """Run the marking aggregation and record when it happened."""
    from .service.marking_service import MarkingService

    MarkingService.for_session(session, context.get("marking_scheme_id")).mark_session(session)
    session.marked_at = timezone.now()
    metadata = dict(session.metadata or {})
    metadata.pop("marking_error", None)
    metadata.pop("marking_failed_at", None)
    session.metadata = metadata


def discard_answers(session: ResponseSession, context: dict[str, t.Any]) -> None:
    """Drop every response (and with them, selections and scores) and clear all progress."""
    session.responses.all().delete()
    session.started_at = session.completed_at = session.submitted_at = session.marked_at = None
    session.total_score = session.max_possible_score = Decimal("0")
    session.grade = ""
    session.feedback = ""
    session.metadata = {}


S = SessionState
E = SessionEvent

TRANSITIONS: dict[str, Transition] = {
    transition.event: transition
    for transition in (
        Transition(E.START, S.STARTED, frozenset({S.DRAFT}), effect=_stamp("started_at")),
        Transition(E.BEGIN_ANSWERING, S.IN_PROGRESS, frozenset({S.DRAFT, S.STARTED}), effect=stamp_started),
        Transition(
            E.COMPLETE,
            S.COMPLETED,
            frozenset({S.STARTED, S.IN_PROGRESS}),
            guard=required_questions_answered,
            effect=_stamp("completed_at"),
        ),
        Transition(E.SUBMIT, S.SUBMITTED, frozenset({S.COMPLETED}), effect=_stamp("submitted_at")),
        Transition(E.SEND_FOR_REVIEW, S.UNDER_REVIEW, frozenset({S.SUBMITTED})),
        Transition(
            E.QUEUE_MARKING, S.UNDER_REVIEW, frozenset({S.SUBMITTED, S.UNDER_REVIEW}), effect=enqueue_marking
        ),
        Transition(
            E.MARK,
            S.MARKED,
            frozenset({S.SUBMITTED, S.UNDER_REVIEW}),
            guard=marking_scheme_available,
            effect=mark_session,
        ),
        Transition(E.PUBLISH_RESULTS, S.PUBLISHED, frozenset({S.MARKED})),
        Transition(E.CANCEL, S.CANCELLED, PRE_COMPLETION_STATES),
        Transition(E.EXPIRE, S.EXPIRED, PRE_COMPLETION_STATES | {S.COMPLETED}),
        Transition(E.REOPEN, S.IN_PROGRESS, frozenset({S.CANCELLED, S.EXPIRED})),
        Transition(E.RESET, S.DRAFT, effect=discard_answers),
    )
}


class SessionStateMachine:
    """Fires lifecycle events on a response session."""

    def __init__(self, session: ResponseSession) -> None:
        """Initialize the machine for a session."""
        self.session = session

    @property
    def state(self) -> str:
        """Current state of the session."""
        return self.session.state

    def available_events(self) -> list[str]:
        """Events whose source states include the current state. Guards are not evaluated."""
        return [str(event) for event, transition in TRANSITIONS.items() if transition.allowed_from(self.state)]

    def can_fire(self, event: str) -> bool:
        """Whether the event is allowed from the current state and its guard passes."""
        transition = TRANSITIONS.get(event)
        if transition is None or not transition.allowed_from(self.state):
            return False
        return transition.guard is None or transition.guard(self.session, {}) is None

    def fire(self, event: str, **context: t.Any) -> ResponseSession:
        """Apply the transition for the event, or raise without touching the session's state.

        Raises:
            RejectedTransitionError: if the event is unknown, not allowed from the current state, or its guard fails.
        """
        session = self.session
        try:
            with transaction.atomic():
                ResponseSession.objects.select_for_update().only("pk").get(pk=session.pk)
                session.refresh_from_db()
                source = session.state
                transition = self._transition_for(event, source)
                if transition.guard and (reason := transition.guard(session, context)):
                    raise RejectedTransitionError(event, source, reason)
                if transition.effect:
                    transition.effect(session, context)
                session.state = transition.target
                session.save()
        except RejectedTransitionError as e:
            logger.warning(
                "session_transition_rejected",
                session_id=str(session.pk),
                session_event=event,
                state=e.state,
                reason=e.reason,
            )
            raise
        except Exception:
            session.refresh_from_db()
            raise

        logger.info(
            "session_transitioned", session_id=str(session.pk), session_event=event, source=source, target=session.state
        )
        session_transitioned.send(
            sender=ResponseSession, session=session, event=event, source=source, target=session.state
        )
        return session

    @staticmethod
    def _transition_for(event: str, state: str) -> Transition:
        transition = TRANSITIONS.get(event)
        if transition is None:
            raise RejectedTransitionError(event, state, "unknown event")
        if not transition.allowed_from(state):
            raise RejectedTransitionError(event, state, f"'{event}' is not allowed from '{state}'")
        return transition


def fire(session: ResponseSession, event: str, **context: t.Any) -> ResponseSession:
    """Fire an event on a session."""
    return SessionStateMachine(session).fire(event, **context)
