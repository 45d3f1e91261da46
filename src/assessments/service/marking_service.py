import typing as t
from decimal import Decimal
from uuid import UUID

import structlog
from django.db import transaction
from django.db.models import Sum

from ..enums import SessionEvent, SessionState
from ..evaluator import RuleEvaluator
from ..exceptions import MarkingSchemeNotFoundError, NoActiveMarkingSchemeError, RejectedTransitionError
from ..models import MarkingRule, MarkingScheme, QuestionResponse, ResponseScore, ResponseSession, percentage
from ..schema import SessionScoreSummary

logger = structlog.get_logger(__name__)

FEEDBACK_PLACEHOLDERS = ("score", "max_score", "percentage", "grade", "name")


def resolve_marking_scheme(session: ResponseSession, marking_scheme_id: UUID | str | None = None) -> MarkingScheme:
    """The explicitly requested scheme of the session's assessment, or its active scheme.

    Raises:
        MarkingSchemeNotFoundError: if the requested scheme does not exist for the assessment.
        NoActiveMarkingSchemeError: if no scheme is requested and the assessment has no active one.
    """
    if marking_scheme_id is not None:
        try:
            return MarkingScheme.objects.get(pk=marking_scheme_id, assessment_id=session.assessment_id)
        except MarkingScheme.DoesNotExist as e:
            raise MarkingSchemeNotFoundError(f"Marking scheme {marking_scheme_id} not found.") from e
    scheme = session.assessment.active_marking_scheme
    if scheme is None:
        raise NoActiveMarkingSchemeError(f"Assessment {session.assessment_id} has no active marking scheme.")
    return scheme


def render_feedback(template: str, context: dict[str, t.Any]) -> str:
    """Substitute ``%{placeholder}`` occurrences in a feedback template."""
    for key in FEEDBACK_PLACEHOLDERS:
        template = template.replace(f"%{{{key}}}", str(context.get(key, "")))
    return template


class MarkingService:
    """Scores responses under one marking scheme and aggregates them per session."""

    def __init__(self, marking_scheme: MarkingScheme) -> None:
        """Initialize the service for a scheme."""
        self.marking_scheme = marking_scheme

    @classmethod
    def for_session(
        cls, session: ResponseSession, marking_scheme_id: UUID | str | None = None
    ) -> "MarkingService":
        """Build the service for the scheme that should mark the session."""
        return cls(resolve_marking_scheme(session, marking_scheme_id))

    def rules_for(self, response: QuestionResponse) -> list[MarkingRule]:
        """Active rules of this scheme for the response's question, in evaluation order."""
        return list(
            MarkingRule.objects.active()
            .filter(marking_scheme=self.marking_scheme, question_id=response.question_id)
            .select_related("question")
            .ordered()
        )

    def grade_response(self, response: QuestionResponse) -> ResponseScore | None:
        """Evaluate every active rule and persist the best one as the response's authoritative score.

        Ties keep the earliest rule. When nothing scores, the first rule is still recorded so the maximum
        is attributable. Responses to questions without rules are skipped.
        """
        rules = self.rules_for(response)
        if not rules:
            logger.info(
                "response_without_marking_rules",
                response_id=str(response.pk),
                question_id=str(response.question_id),
                scheme_id=str(self.marking_scheme.pk),
            )
            ResponseScore.objects.filter(response=response, marking_scheme=self.marking_scheme).delete()
            return None

        best_rule, best_score = rules[0], RuleEvaluator(rules[0]).evaluate(response)
        for rule in rules[1:]:
            score = RuleEvaluator(rule).evaluate(response)
            if score > best_score:
                best_rule, best_score = rule, score

        response_score, _ = ResponseScore.objects.update_or_create(
            response=response,
            marking_scheme=self.marking_scheme,
            defaults={
                "marking_rule": best_rule,
                "score_earned": best_score,
                "max_possible_score": best_rule.points,
                "scoring_details": {
                    "rule_id": str(best_rule.pk),
                    "rule_type": best_rule.rule_type,
                    "criteria_applied": best_rule.criteria,
                },
            },
        )
        return response_score

    def calculate_total_score_for_session(self, session: ResponseSession) -> SessionScoreSummary:
        """Sum the session's authoritative scores under this scheme and derive percentage and grade."""
        scores = ResponseScore.objects.filter(response__session=session, marking_scheme=self.marking_scheme)
        totals = scores.aggregate(earned=Sum("score_earned"), possible=Sum("max_possible_score"))
        earned = totals["earned"] or Decimal("0")
        possible = totals["possible"] or Decimal("0")
        score_percentage = percentage(earned, possible)
        return SessionScoreSummary(
            total_score=earned,
            max_possible_score=possible,
            percentage=score_percentage,
            grade=self.marking_scheme.grade_for(score_percentage),
            responses_graded=scores.count(),
        )

    def feedback_for(self, session: ResponseSession, summary: SessionScoreSummary) -> str:
        """Render the scheme's feedback template for the session's grade, or an empty string."""
        template = self.marking_scheme.feedback_templates.get(summary.grade)
        if not template:
            return ""
        user = session.user
        return render_feedback(
            template,
            {
                "score": summary.total_score,
                "max_score": summary.max_possible_score,
                "percentage": summary.percentage,
                "grade": summary.grade,
                "name": getattr(user, "display_name", None) or str(user),
            },
        )

    @transaction.atomic
    def mark_session(self, session: ResponseSession) -> SessionScoreSummary:
        """Grade every response of the session and store the totals on it.

        Safe to re-run: scores are overwritten in place.
        """
        logger.info("session_marking_started", session_id=str(session.pk), scheme_id=str(self.marking_scheme.pk))
        for response in QuestionResponse.objects.filter(session=session).select_related("question"):
            self.grade_response(response)

        summary = self.calculate_total_score_for_session(session)
        session.total_score = summary.total_score
        session.max_possible_score = summary.max_possible_score
        session.grade = summary.grade
        session.feedback = self.feedback_for(session, summary)
        session.save(update_fields=["total_score", "max_possible_score", "grade", "feedback", "updated_at"])

        logger.info(
            "session_marking_completed",
            session_id=str(session.pk),
            scheme_id=str(self.marking_scheme.pk),
            total_score=str(summary.total_score),
            max_possible_score=str(summary.max_possible_score),
            grade=summary.grade,
            responses_graded=summary.responses_graded,
        )
        return summary


def mark_synchronously(session: ResponseSession, marking_scheme_id: UUID | str | None = None) -> ResponseSession:
    """Mark a session now.

    Submitted or under-review sessions move to ``marked``. Already marked sessions are re-scored in place.

    Raises:
        RejectedTransitionError: if the session is not in a markable state.
    """
    from ..state_machine import fire

    if session.state in (SessionState.SUBMITTED, SessionState.UNDER_REVIEW):
        return fire(session, SessionEvent.MARK, marking_scheme_id=marking_scheme_id)
    if not session.can_be_marked:
        raise RejectedTransitionError(SessionEvent.MARK, session.state, "the session cannot be marked")
    MarkingService.for_session(session, marking_scheme_id).mark_session(session)
    return session


def mark_in_background(session: ResponseSession, marking_scheme_id: UUID | str | None = None) -> None:
    """Enqueue the marking job for a session once the current transaction commits.

    Raises:
        RejectedTransitionError: if the session is not in a markable state.
    """
    from ..tasks import mark_response_session

    if not session.can_be_marked:
        raise RejectedTransitionError(SessionEvent.MARK, session.state, "the session cannot be marked")
    session_id = str(session.pk)
    scheme_id = str(marking_scheme_id) if marking_scheme_id else None
    transaction.on_commit(lambda: mark_response_session.delay(session_id, scheme_id))
    logger.info("session_marking_queued", session_id=session_id, scheme_id=scheme_id)


def bulk_mark_in_background(
    session_ids: t.Iterable[UUID | str], marking_scheme_id: UUID | str | None = None
) -> None:
    """Enqueue marking for many sessions once the current transaction commits."""
    from ..tasks import bulk_mark_sessions

    ids = [str(session_id) for session_id in session_ids]
    scheme_id = str(marking_scheme_id) if marking_scheme_id else None
    transaction.on_commit(lambda: bulk_mark_sessions.delay(ids, scheme_id))
    logger.info("bulk_session_marking_queued", sessions=len(ids), scheme_id=scheme_id)
