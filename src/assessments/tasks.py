import typing as t

import structlog
from celery import group, shared_task
from django.conf import settings
from django.utils import timezone

from .enums import SessionState
from .exceptions import AssessmentObjectNotFoundError, NoActiveMarkingSchemeError, RejectedTransitionError
from .models import ResponseSession
from .service.marking_service import mark_synchronously

logger = structlog.get_logger(__name__)

MARKABLE_STATES = (SessionState.SUBMITTED, SessionState.UNDER_REVIEW, SessionState.MARKED, SessionState.PUBLISHED)


def _record_marking_error(session_id: str, error: Exception) -> None:
    session = ResponseSession.objects.filter(pk=session_id).first()
    if session is None:
        return
    session.metadata = {
        **(session.metadata or {}),
        "marking_error": str(error),
        "marking_failed_at": timezone.now().isoformat(),
    }
    session.save(update_fields=["metadata", "updated_at"])


@shared_task(bind=True)
def mark_response_session(self: t.Any, session_id: str, marking_scheme_id: str | None = None) -> dict[str, t.Any]:
    """Mark a response session in the background.

    Submitted and under-review sessions are moved to ``marked``; marked or published sessions are re-scored
    in place. Running it twice leaves the same scores. Unexpected failures are recorded on the session and
    retried with exponential backoff.

    Args:
        self: Celery task instance (bound task).
        session_id: The UUID of the session to mark.
        marking_scheme_id: Optional scheme to mark with instead of the assessment's active one.

    Returns:
        Dictionary with the marking outcome.
    """
    logger.info("session_marking_task_started", session_id=session_id, scheme_id=marking_scheme_id)
    session = ResponseSession.objects.select_related("assessment", "user").filter(pk=session_id).first()
    if session is None:
        logger.warning("session_marking_task_session_not_found", session_id=session_id)
        return {"status": "not_found", "session_id": session_id}

    if not session.can_be_marked:
        logger.info("session_marking_task_skipped", session_id=session_id, state=session.state)
        return {"status": "skipped", "session_id": session_id, "state": session.state}

    try:
        mark_synchronously(session, marking_scheme_id)
    except (RejectedTransitionError, AssessmentObjectNotFoundError, NoActiveMarkingSchemeError) as e:
        logger.warning("session_marking_task_discarded", session_id=session_id, error=str(e))
        return {"status": "discarded", "session_id": session_id, "error": str(e)}
    except Exception as e:
        logger.error("session_marking_task_failed", session_id=session_id, error=str(e), exc_info=True)
        _record_marking_error(session_id, e)
        raise self.retry(
            exc=e,
            countdown=60 * 2**self.request.retries,
            max_retries=settings.ASSESSMENTS_MARKING_MAX_RETRIES,
        )

    logger.info(
        "session_marking_task_completed",
        session_id=session_id,
        total_score=str(session.total_score),
        grade=session.grade,
    )
    return {
        "status": "marked",
        "session_id": session_id,
        "total_score": str(session.total_score),
        "max_possible_score": str(session.max_possible_score),
        "grade": session.grade,
    }


@shared_task
def bulk_mark_sessions(session_ids: list[str], marking_scheme_id: str | None = None) -> dict[str, int]:
    """Fan out one marking job per markable session."""
    markable = [
        str(pk)
        for pk in ResponseSession.objects.filter(pk__in=session_ids, state__in=MARKABLE_STATES).values_list(
            "pk", flat=True
        )
    ]
    if markable:
        group(mark_response_session.s(session_id, marking_scheme_id) for session_id in markable).apply_async()
    logger.info("bulk_session_marking_dispatched", total=len(session_ids), queued=len(markable))
    return {"total": len(session_ids), "queued": len(markable)}
