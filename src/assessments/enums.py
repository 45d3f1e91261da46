from django.db import models


class QuestionType(models.TextChoices):
    MULTIPLE_CHOICE = "multiple_choice", "Multiple choice"
    RADIO = "radio", "Radio"
    BOOLEAN = "boolean", "Boolean"
    DATE = "date", "Date"
    RANGE = "range", "Range"
    RICH_TEXT = "rich_text", "Rich text"
    FILE_UPLOAD = "file_upload", "File upload"


CHOICE_QUESTION_TYPES = frozenset({QuestionType.MULTIPLE_CHOICE, QuestionType.RADIO, QuestionType.BOOLEAN})
SINGLE_SELECTION_QUESTION_TYPES = frozenset({QuestionType.RADIO, QuestionType.BOOLEAN})

# The first entry of each tuple is the default.
QUESTION_SUB_TYPES: dict[str, tuple[str, ...]] = {
    QuestionType.MULTIPLE_CHOICE: ("checkboxes", "dropdown", "tags"),
    QuestionType.RADIO: ("radio_buttons", "dropdown", "button_group", "cards", "inline"),
    QuestionType.BOOLEAN: (),
    QuestionType.DATE: ("date", "year", "datetime", "time", "month", "week", "date_range"),
    QuestionType.RANGE: ("slider", "number_input", "rating", "scale", "spinner", "progress", "range"),
    QuestionType.RICH_TEXT: ("short_text", "long_text", "rich_text", "email", "url", "phone"),
    QuestionType.FILE_UPLOAD: ("single", "multiple"),
}


class RuleType(models.TextChoices):
    OPTION_BASED = "option_based", "Option based"
    RANGE_BASED = "range_based", "Range based"
    EXACT_MATCH = "exact_match", "Exact match"
    PARTIAL_MATCH = "partial_match", "Partial match"
    KEYWORD_BASED = "keyword_based", "Keyword based"
    FORMAT_BASED = "format_based", "Format based"
    STEP_BASED = "step_based", "Step based"
    TOLERANCE_BASED = "tolerance_based", "Tolerance based"
    DATE_RANGE_BASED = "date_range_based", "Date range based"
    TIME_BASED = "time_based", "Time based"
    OVERLAP_BASED = "overlap_based", "Overlap based"
    FILE_BASED = "file_based", "File based"
    SIZE_BASED = "size_based", "Size based"
    TYPE_BASED = "type_based", "Type based"
    CONTENT_BASED = "content_based", "Content based"
    STRENGTH_BASED = "strength_based", "Strength based"
    CONTENT_ANALYSIS = "content_analysis", "Content analysis"


class TriggerResponseType(models.TextChoices):
    OPTION_SELECTED = "option_selected", "Option selected"
    VALUE_EQUALS = "value_equals", "Value equals"
    VALUE_RANGE = "value_range", "Value range"


class ConditionOperator(models.TextChoices):
    EQUALS = "equals", "equals"
    NOT_EQUALS = "not_equals", "does not equal"
    CONTAINS = "contains", "contains"
    GREATER_THAN = "greater_than", "is greater than"
    LESS_THAN = "less_than", "is less than"
    BETWEEN = "between", "is between"
    ANY = "any", "includes any of"
    ALL = "all", "includes all of"
    NONE = "none", "does not include any of"


class SessionState(models.TextChoices):
    DRAFT = "draft"
    STARTED = "started"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    SUBMITTED = "submitted"
    UNDER_REVIEW = "under_review"
    MARKED = "marked"
    PUBLISHED = "published"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


class SessionEvent(models.TextChoices):
    START = "start"
    BEGIN_ANSWERING = "begin_answering"
    COMPLETE = "complete"
    SUBMIT = "submit"
    SEND_FOR_REVIEW = "send_for_review"
    QUEUE_MARKING = "queue_marking"
    MARK = "mark"
    PUBLISH_RESULTS = "publish_results"
    CANCEL = "cancel"
    EXPIRE = "expire"
    REOPEN = "reopen"
    RESET = "reset"


class ScoringMethod(models.TextChoices):
    ALL_OR_NOTHING = "all_or_nothing"
    PROPORTIONAL = "proportional"
