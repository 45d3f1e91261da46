"""Custom exceptions for the assessments app."""

from django.core.exceptions import ValidationError


class AssessmentException(Exception):
    """Base exception for the assessments app."""


# ---- Validation errors ----


class CrossAssessmentError(ValidationError):
    """Raised when a catalog entity references an entity of a different assessment."""


class InvalidRuleTypeError(ValidationError):
    """Raised when a marking rule's type is unknown or not applicable to its question type."""


class InvalidCriteriaError(ValidationError):
    """Raised when a marking rule's criteria do not match its rule type."""


class InvalidMetaDataError(ValidationError):
    """Raised when a question's meta data do not match its question type."""


class InvalidVisibilityConditionError(ValidationError):
    """Raised when a conditional section or question has an invalid trigger."""


class InvalidCountryRestrictionError(ValidationError):
    """Raised when restricted countries contain malformed country codes."""


class OptionQuestionMismatchError(ValidationError):
    """Raised when a selected option does not belong to the answered question."""


class SingleSelectionError(ValidationError):
    """Raised when more than one option is selected for a single-answer question."""


class InvalidAnswerError(ValidationError):
    """Raised when an answer value does not match the question type."""


class NonChoiceQuestionOptionError(ValidationError):
    """Raised when options are attached to a question that is not choice-based."""


# ---- State machine ----


class RejectedTransitionError(AssessmentException):
    """Raised when a session transition is not allowed from the current state or its guard fails."""

    def __init__(self, event: str, state: str, reason: str) -> None:
        """Keep the transition context for the caller."""
        self.event = event
        self.state = state
        self.reason = reason
        super().__init__(f"Cannot {event} a session in state '{state}': {reason}")


class SessionNotEditableError(RejectedTransitionError):
    """Raised when answering a session that no longer accepts answers."""


# ---- Not found ----


class AssessmentObjectNotFoundError(AssessmentException):
    """Raised when a referenced assessment object does not exist."""


class SessionNotFoundError(AssessmentObjectNotFoundError):
    """Raised when a response session does not exist."""


class ResponseNotFoundError(AssessmentObjectNotFoundError):
    """Raised when a question response does not exist."""


class MarkingRuleNotFoundError(AssessmentObjectNotFoundError):
    """Raised when a marking rule does not exist."""


class MarkingSchemeNotFoundError(AssessmentObjectNotFoundError):
    """Raised when a marking scheme does not exist."""


class SectionNotFoundError(AssessmentObjectNotFoundError):
    """Raised when a section does not exist."""


class QuestionNotFoundError(AssessmentObjectNotFoundError):
    """Raised when a question does not exist."""


class NoActiveMarkingSchemeError(AssessmentException):
    """Raised when marking is requested but no marking scheme can be resolved."""
