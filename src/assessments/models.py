import re
import typing as t
import uuid
from datetime import timedelta
from decimal import ROUND_HALF_UP, Decimal
from functools import cached_property

from django.conf import settings
from django.core.exceptions import ValidationError
from django.core.validators import MinValueValidator
from django.db import models, transaction
from django.db.models import Avg, Count, Q
from django.utils import timezone
from django.utils.translation import get_language
from pydantic import ValidationError as PydanticValidationError

from common.models import TimeStampedModel
from common.utils import next_order

from . import exceptions
from .criteria import DEFAULT_RULE_TYPES, RULE_TYPES, available_rule_types, parse_criteria
from .enums import (
    CHOICE_QUESTION_TYPES,
    QUESTION_SUB_TYPES,
    SINGLE_SELECTION_QUESTION_TYPES,
    ConditionOperator,
    QuestionType,
    RuleType,
    SessionState,
    TriggerResponseType,
)
from .schema import MarkingSettings, VisibilityCondition, parse_meta_data

COUNTRY_CODE_RE = re.compile(r"^[A-Z]{3}$")
TWO_PLACES = Decimal("0.01")


def percentage(part: Decimal | int | float, whole: Decimal | int | float) -> Decimal:
    """part / whole * 100 rounded to two decimals, 0 when whole is 0."""
    whole = Decimal(str(whole))
    if not whole:
        return Decimal("0")
    return (Decimal(str(part)) / whole * 100).quantize(TWO_PLACES, rounding=ROUND_HALF_UP)


def pydantic_error_message(error: PydanticValidationError) -> str:
    return "; ".join(
        f"{'.'.join(str(loc) for loc in err['loc'])}: {err['msg']}" if err["loc"] else err["msg"]
        for err in error.errors()
    )


class LocalizedTextMixin:
    text: dict[str, str]

    def localized_text(self, locale: str | None = None) -> str:
        """Text in the requested (or active) language, falling back to English, then to any translation."""
        text = self.text or {}
        locale = locale or get_language() or settings.LANGUAGE_CODE
        for candidate in (locale, locale.split("-")[0], "en"):
            if text.get(candidate):
                return text[candidate]
        return next((value for value in text.values() if value), "")


# ---- Assessment model ----


class AssessmentQueryset(models.QuerySet["Assessment"]):
    """Assessment queryset."""

    def active(self) -> t.Self:
        """Only active assessments."""
        return self.filter(is_active=True)


class AssessmentManager(models.Manager["Assessment"]):
    def get_queryset(self) -> AssessmentQueryset:
        """Get assessment queryset."""
        return AssessmentQueryset(self.model)

    def active(self) -> AssessmentQueryset:
        """Only active assessments."""
        return self.get_queryset().active()


class Assessment(TimeStampedModel):
    title = models.CharField(max_length=255, db_index=True)
    description = models.TextField(blank=True, default="")
    is_active = models.BooleanField(default=True, db_index=True)

    objects = AssessmentManager()

    class Meta:
        ordering = ["-created_at"]

    def __str__(self) -> str:
        return self.title

    @property
    def active_marking_scheme(self) -> "MarkingScheme | None":
        """The scheme currently authoritative for scoring."""
        return self.marking_schemes.filter(is_active=True).first()


# ---- Visibility and country restrictions ----


class ConditionalVisibilityModel(models.Model):
    """Shared trigger-based visibility and country restriction fields for sections and questions."""

    is_conditional = models.BooleanField(default=False, db_index=True)
    visibility_conditions = models.JSONField(default=dict, blank=True)
    has_country_restrictions = models.BooleanField(default=False, db_index=True)
    restricted_countries = models.JSONField(default=list, blank=True, help_text="ISO alpha-3 country codes.")

    assessment_id: t.Any

    class Meta:
        abstract = True

    @property
    def condition(self) -> VisibilityCondition | None:
        """The parsed visibility condition, or None when unconditional."""
        if not self.is_conditional:
            return None
        return VisibilityCondition.model_validate(self.visibility_conditions)

    def add_option_condition(
        self, trigger_question_id: t.Any, option_ids: t.Iterable[t.Any], operator: str = ConditionOperator.CONTAINS
    ) -> None:
        """Show this item when options of the trigger question are selected."""
        self._set_condition(trigger_question_id, TriggerResponseType.OPTION_SELECTED, option_ids, operator)

    def add_value_condition(
        self, trigger_question_id: t.Any, values: t.Iterable[t.Any] | str, operator: str = ConditionOperator.EQUALS
    ) -> None:
        """Show this item when the trigger question's value matches."""
        if isinstance(values, (str, int, float, Decimal)):
            values = [values]
        self._set_condition(trigger_question_id, TriggerResponseType.VALUE_EQUALS, values, operator)

    def add_range_condition(self, trigger_question_id: t.Any, min_value: t.Any, max_value: t.Any) -> None:
        """Show this item when the trigger question's value is within [min_value, max_value]."""
        self._set_condition(
            trigger_question_id, TriggerResponseType.VALUE_RANGE, [min_value, max_value], ConditionOperator.BETWEEN
        )

    def _set_condition(
        self, trigger_question_id: t.Any, response_type: str, values: t.Iterable[t.Any], operator: str
    ) -> None:
        self.is_conditional = True
        self.visibility_conditions = {
            "trigger_question_id": str(trigger_question_id),
            "trigger_response_type": str(response_type),
            "trigger_values": [str(value) for value in values],
            "operator": str(operator),
        }

    def remove_conditions(self) -> None:
        """Make the item unconditionally visible."""
        self.is_conditional = False
        self.visibility_conditions = {}

    def condition_description(self) -> str:
        """Human-readable description of the visibility condition."""
        if not self.is_conditional:
            return "Always visible"
        try:
            condition = VisibilityCondition.model_validate(self.visibility_conditions)
        except PydanticValidationError:
            return "Invalid condition"
        trigger = Question.objects.filter(pk=condition.trigger_question_id).first()
        if trigger is None:
            return "Invalid condition"

        trigger_text = trigger.localized_text()
        operator_label = ConditionOperator(condition.operator).label
        if condition.trigger_response_type == TriggerResponseType.OPTION_SELECTED:
            options = Option.objects.filter(pk__in=_valid_uuids(condition.trigger_values))
            option_texts = [option.localized_text() for option in options]
            return f"Visible when '{trigger_text}' {operator_label} {', '.join(option_texts)}"
        if condition.trigger_response_type == TriggerResponseType.VALUE_RANGE:
            low, high = condition.trigger_values
            return f"Visible when '{trigger_text}' is between {low} and {high}"
        return f"Visible when '{trigger_text}' {operator_label} {', '.join(condition.trigger_values)}"

    def add_country_restriction(self, country_codes: t.Iterable[str] | str) -> None:
        """Hide the item for respondents from the given countries."""
        codes = [country_codes] if isinstance(country_codes, str) else list(country_codes)
        current = list(self.restricted_countries or [])
        self.restricted_countries = current + [code.upper() for code in codes if code.upper() not in current]
        self.has_country_restrictions = bool(self.restricted_countries)

    def remove_country_restriction(self, country_codes: t.Iterable[str] | str) -> None:
        """Lift the restriction for the given countries."""
        codes = {country_codes.upper()} if isinstance(country_codes, str) else {code.upper() for code in country_codes}
        self.restricted_countries = [code for code in self.restricted_countries or [] if code not in codes]
        self.has_country_restrictions = bool(self.restricted_countries)

    def clear_country_restrictions(self) -> None:
        """Make the item available worldwide."""
        self.restricted_countries = []
        self.has_country_restrictions = False

    def accessible_to_country(self, country_code: str | None) -> bool:
        """Whether respondents from the given country may see the item. Unknown countries always may."""
        if not country_code or not self.has_country_restrictions or not self.restricted_countries:
            return True
        return country_code.upper() not in self.restricted_countries

    def _clean_country_restrictions(self) -> None:
        if not isinstance(self.restricted_countries, list):
            raise exceptions.InvalidCountryRestrictionError(
                {"restricted_countries": "Restricted countries must be a list of country codes."}
            )
        codes = [str(code).strip().upper() for code in self.restricted_countries]
        invalid = [code for code in codes if not COUNTRY_CODE_RE.match(code)]
        if invalid:
            raise exceptions.InvalidCountryRestrictionError(
                {"restricted_countries": f"Invalid country codes: {', '.join(invalid)}."}
            )
        self.restricted_countries = list(dict.fromkeys(codes))
        self.has_country_restrictions = bool(self.restricted_countries)

    def _clean_visibility_conditions(self) -> None:
        if not self.is_conditional:
            return
        try:
            condition = VisibilityCondition.model_validate(self.visibility_conditions or {})
        except PydanticValidationError as e:
            raise exceptions.InvalidVisibilityConditionError(
                {"visibility_conditions": pydantic_error_message(e)}
            ) from e
        self.visibility_conditions = condition.model_dump(mode="json")

        trigger = Question.objects.select_related("section").filter(pk=condition.trigger_question_id).first()
        if trigger is None or trigger.assessment_id != self.assessment_id:
            raise exceptions.InvalidVisibilityConditionError(
                {"visibility_conditions": "The trigger question does not exist in this assessment."}
            )
        if error := self.trigger_precedence_error(trigger):
            raise exceptions.InvalidVisibilityConditionError({"visibility_conditions": error})

    def trigger_precedence_error(self, trigger: "Question") -> str | None:
        """Return why the trigger question cannot drive this item, or None when it can."""
        raise NotImplementedError

    def clean(self) -> None:
        """Validate country restrictions and the visibility condition."""
        super().clean()
        self._clean_country_restrictions()
        self._clean_visibility_conditions()


def _valid_uuids(values: t.Iterable[str]) -> list[str]:
    valid = []
    for value in values:
        try:
            valid.append(str(uuid.UUID(str(value))))
        except ValueError:
            continue
    return valid


# ---- Section model ----


class SectionQueryset(models.QuerySet["Section"]):
    """Section queryset."""

    def conditional(self) -> t.Self:
        """Sections shown only when their trigger matches."""
        return self.filter(is_conditional=True)

    def unconditional(self) -> t.Self:
        """Sections shown regardless of answers."""
        return self.filter(is_conditional=False)


class SectionManager(models.Manager["Section"]):
    def get_queryset(self) -> SectionQueryset:
        """Get section queryset."""
        return SectionQueryset(self.model)


class Section(ConditionalVisibilityModel, TimeStampedModel):
    assessment = models.ForeignKey(Assessment, on_delete=models.CASCADE, related_name="sections")
    name = models.CharField(max_length=255, blank=True)
    order = models.PositiveIntegerField(db_index=True, validators=[MinValueValidator(1)])

    objects = SectionManager()

    class Meta:
        ordering = ["order"]
        constraints = [
            models.UniqueConstraint(fields=["assessment", "order"], name="unique_section_order_per_assessment")
        ]

    def __str__(self) -> str:
        return self.name

    def save(self, *args: t.Any, **kwargs: t.Any) -> None:
        """Auto-assign order and name when absent."""
        if not self.order and self.assessment_id:
            self.order = next_order(Section.objects.filter(assessment_id=self.assessment_id))
        if not self.name:
            self.name = f"Section {self.order}"
        super().save(*args, **kwargs)

    def available_trigger_questions(self) -> "QuestionQueryset":
        """Questions that may drive this section's visibility."""
        return Question.objects.filter(assessment_id=self.assessment_id, section__order__lt=self.order or 0).ordered()

    def trigger_precedence_error(self, trigger: "Question") -> str | None:
        """The trigger question must live in an earlier section."""
        if trigger.section.order >= (self.order or 0):
            return "The trigger question must be in an earlier section."
        return None


# ---- Question model ----


class QuestionQueryset(models.QuerySet["Question"]):
    """Question queryset."""

    def active(self) -> t.Self:
        """Only active questions."""
        return self.filter(active=True)

    def required(self) -> t.Self:
        """Only required questions."""
        return self.filter(is_required=True)

    def ordered(self) -> t.Self:
        """Flattened order: section order, then question order."""
        return self.order_by("section__order", "order")


class QuestionManager(models.Manager["Question"]):
    def get_queryset(self) -> QuestionQueryset:
        """Get question queryset."""
        return QuestionQueryset(self.model)

    def active(self) -> QuestionQueryset:
        """Only active questions."""
        return self.get_queryset().active()


class Question(LocalizedTextMixin, ConditionalVisibilityModel, TimeStampedModel):
    Type = QuestionType

    assessment = models.ForeignKey(Assessment, on_delete=models.CASCADE, related_name="questions")
    section = models.ForeignKey(Section, on_delete=models.CASCADE, related_name="questions")
    type = models.CharField(choices=QuestionType.choices, max_length=20, db_index=True)
    sub_type = models.CharField(max_length=20, blank=True)
    text = models.JSONField(help_text="Localized text as {locale: text}.")
    order = models.PositiveIntegerField(db_index=True, validators=[MinValueValidator(1)])
    is_required = models.BooleanField(default=False, db_index=True)
    active = models.BooleanField(default=True, db_index=True)
    meta_data = models.JSONField(default=dict, blank=True)

    objects = QuestionManager()

    class Meta:
        ordering = ["order"]
        constraints = [models.UniqueConstraint(fields=["section", "order"], name="unique_question_order_per_section")]

    def __str__(self) -> str:
        return self.localized_text()

    def save(self, *args: t.Any, **kwargs: t.Any) -> None:
        """Fill assessment, order and sub type defaults, then create boolean options for new boolean questions."""
        creating = self._state.adding
        if self.section_id and not self.assessment_id:
            self.assessment_id = self.section.assessment_id
        if not self.order and self.section_id:
            self.order = next_order(Question.objects.filter(section_id=self.section_id))
        if not self.sub_type and QUESTION_SUB_TYPES.get(self.type):
            self.sub_type = QUESTION_SUB_TYPES[self.type][0]
        with transaction.atomic():
            super().save(*args, **kwargs)
            if creating and self.type == QuestionType.BOOLEAN and not self.options.exists():
                Option.objects.bulk_create(
                    [
                        Option(question=self, text={"en": "True"}, order=1, is_correct_answer=False),
                        Option(question=self, text={"en": "False"}, order=2, is_correct_answer=False),
                    ]
                )

    @property
    def is_choice(self) -> bool:
        """Whether the question is answered by selecting options."""
        return self.type in CHOICE_QUESTION_TYPES

    @property
    def allows_multiple_selections(self) -> bool:
        """Only multiple choice questions accept more than one option."""
        return self.type not in SINGLE_SELECTION_QUESTION_TYPES

    @cached_property
    def typed_meta_data(self) -> t.Any:
        """Meta data parsed for the question type, with defaults filled in."""
        return parse_meta_data(self.type, self.meta_data)

    def available_marking_rule_types(self) -> list[str]:
        """Rule types that can score this question."""
        return available_rule_types(self.type)

    def default_marking_rule_type(self) -> str:
        """The rule type used when a rule is authored without one."""
        return DEFAULT_RULE_TYPES[self.type]

    def available_trigger_questions(self) -> QuestionQueryset:
        """Questions that may drive this question's visibility."""
        return Question.objects.filter(assessment_id=self.assessment_id).filter(
            Q(section__order__lt=self.section.order) | Q(section_id=self.section_id, order__lt=self.order or 0)
        ).ordered()

    def trigger_precedence_error(self, trigger: "Question") -> str | None:
        """The trigger must come earlier in the same section, or in an earlier section."""
        if trigger.section_id == self.section_id:
            if trigger.order >= (self.order or 0):
                return "The trigger question must come before this question in the same section."
        elif trigger.section.order >= self.section.order:
            return "The trigger question must be in an earlier section."
        return None

    def clean(self) -> None:
        """Ensure section/assessment coherence and type-specific fields."""
        if self.section_id and self.assessment_id and self.section.assessment_id != self.assessment_id:
            raise exceptions.CrossAssessmentError(
                {"section": "The selected section does not belong to the question's assessment."}
            )

        sub_types = QUESTION_SUB_TYPES.get(self.type, ())
        if self.sub_type and self.sub_type not in sub_types:
            raise exceptions.InvalidMetaDataError(
                {"sub_type": f"'{self.sub_type}' is not a valid sub type for {self.type} questions."}
            )

        if self.type in QuestionType.values:
            try:
                self.meta_data = parse_meta_data(self.type, self.meta_data).model_dump(mode="json")
            except PydanticValidationError as e:
                raise exceptions.InvalidMetaDataError({"meta_data": pydantic_error_message(e)}) from e
            self.__dict__.pop("typed_meta_data", None)

        if not isinstance(self.text, dict) or not any(self.text.values()):
            raise ValidationError({"text": "Question text is required."})

        super().clean()


# ---- Option model ----


class OptionQueryset(models.QuerySet["Option"]):
    """Option queryset."""

    def correct(self) -> t.Self:
        """Options flagged as correct answers."""
        return self.filter(is_correct_answer=True)


class OptionManager(models.Manager["Option"]):
    def get_queryset(self) -> OptionQueryset:
        """Get option queryset."""
        return OptionQueryset(self.model)


class Option(LocalizedTextMixin, TimeStampedModel):
    question = models.ForeignKey(Question, on_delete=models.CASCADE, related_name="options")
    text = models.JSONField(help_text="Localized text as {locale: text}.")
    order = models.PositiveIntegerField(db_index=True, validators=[MinValueValidator(1)])
    is_correct_answer = models.BooleanField(default=False)
    points = models.DecimalField(
        max_digits=10,
        decimal_places=2,
        null=True,
        blank=True,
        help_text="Points awarded when selected. Empty means the marking rule's default points.",
    )

    objects = OptionManager()

    class Meta:
        ordering = ["order"]
        constraints = [models.UniqueConstraint(fields=["question", "order"], name="unique_option_order_per_question")]

    def __str__(self) -> str:
        return self.localized_text()

    def save(self, *args: t.Any, **kwargs: t.Any) -> None:
        """Auto-assign order when absent."""
        if not self.order and self.question_id:
            self.order = next_order(Option.objects.filter(question_id=self.question_id))
        super().save(*args, **kwargs)

    @property
    def has_assigned_points(self) -> bool:
        """Explicit, non-zero points."""
        return self.points is not None and self.points != 0

    def clean(self) -> None:
        """Options only belong to choice questions."""
        super().clean()
        if self.question_id and not self.question.is_choice:
            raise exceptions.NonChoiceQuestionOptionError(
                {"question": f"{self.question.get_type_display()} questions do not have options."}
            )
        if not isinstance(self.text, dict) or not any(self.text.values()):
            raise ValidationError({"text": "Option text is required."})


# ---- MarkingScheme model ----


class MarkingSchemeQueryset(models.QuerySet["MarkingScheme"]):
    """MarkingScheme queryset."""

    def active(self) -> t.Self:
        """Only active schemes."""
        return self.filter(is_active=True)


class MarkingSchemeManager(models.Manager["MarkingScheme"]):
    def get_queryset(self) -> MarkingSchemeQueryset:
        """Get MarkingScheme queryset."""
        return MarkingSchemeQueryset(self.model)


class MarkingScheme(TimeStampedModel):
    assessment = models.ForeignKey(Assessment, on_delete=models.CASCADE, related_name="marking_schemes")
    name = models.CharField(max_length=255)
    description = models.TextField(blank=True, default="")
    is_active = models.BooleanField(default=False, db_index=True)
    total_possible_score = models.DecimalField(
        max_digits=10, decimal_places=2, default=Decimal("0"), validators=[MinValueValidator(0)]
    )
    settings = models.JSONField(
        default=dict, blank=True, help_text="passing_score, grade_boundaries and feedback_templates."
    )

    objects = MarkingSchemeManager()

    class Meta:
        ordering = ["-is_active", "name"]
        constraints = [
            models.UniqueConstraint(
                fields=["assessment"], condition=Q(is_active=True), name="unique_active_scheme_per_assessment"
            )
        ]

    def __str__(self) -> str:
        return self.name

    def clean(self) -> None:
        """Validate the settings payload."""
        super().clean()
        try:
            MarkingSettings.model_validate(self.settings or {})
        except PydanticValidationError as e:
            raise ValidationError({"settings": pydantic_error_message(e)}) from e
        self.__dict__.pop("marking_settings", None)

    @cached_property
    def marking_settings(self) -> MarkingSettings:
        """Parsed settings."""
        return MarkingSettings.model_validate(self.settings or {})

    @property
    def passing_score(self) -> Decimal | None:
        """Passing score as configured."""
        return self.marking_settings.passing_score

    @property
    def grade_boundaries(self) -> dict[str, Decimal]:
        """Grade to minimum percentage."""
        return self.marking_settings.grade_boundaries

    @property
    def feedback_templates(self) -> dict[str, str]:
        """Grade to feedback template."""
        return self.marking_settings.feedback_templates

    @property
    def passing_score_percentage(self) -> Decimal:
        """passing_score relative to total_possible_score."""
        if self.passing_score is None:
            return Decimal("0")
        return percentage(self.passing_score, self.total_possible_score)

    def grade_for(self, score_percentage: Decimal) -> str:
        """First grade, highest threshold first, whose threshold the percentage meets."""
        for grade, threshold in self.marking_settings.ordered_boundaries():
            if score_percentage >= threshold:
                return grade
        return t.cast(str, settings.ASSESSMENTS_DEFAULT_GRADE)

    def activate(self) -> None:
        """Make this the authoritative scheme, deactivating its siblings."""
        with transaction.atomic():
            MarkingScheme.objects.filter(assessment_id=self.assessment_id, is_active=True).exclude(
                pk=self.pk
            ).update(is_active=False)
            self.is_active = True
            self.save(update_fields=["is_active", "updated_at"])


# ---- MarkingRule model ----


class MarkingRuleQueryset(models.QuerySet["MarkingRule"]):
    """MarkingRule queryset."""

    def active(self) -> t.Self:
        """Only active rules."""
        return self.filter(is_active=True)

    def ordered(self) -> t.Self:
        """Evaluation order."""
        return self.order_by("order", "created_at")


class MarkingRuleManager(models.Manager["MarkingRule"]):
    def get_queryset(self) -> MarkingRuleQueryset:
        """Get MarkingRule queryset."""
        return MarkingRuleQueryset(self.model)

    def active(self) -> MarkingRuleQueryset:
        """Only active rules."""
        return self.get_queryset().active()


class MarkingRule(TimeStampedModel):
    question = models.ForeignKey(Question, on_delete=models.CASCADE, related_name="marking_rules")
    marking_scheme = models.ForeignKey(MarkingScheme, on_delete=models.CASCADE, related_name="marking_rules")
    rule_type = models.CharField(choices=RuleType.choices, max_length=30, db_index=True)
    points = models.DecimalField(
        max_digits=10, decimal_places=2, default=Decimal("0"), validators=[MinValueValidator(0)]
    )
    is_active = models.BooleanField(default=True, db_index=True)
    order = models.PositiveIntegerField(default=0, db_index=True)
    criteria = models.JSONField(default=dict, blank=True)

    objects = MarkingRuleManager()

    class Meta:
        ordering = ["order", "created_at"]

    def __str__(self) -> str:
        return f"{self.get_rule_type_display()} ({self.points} pts)"

    def save(self, *args: t.Any, **kwargs: t.Any) -> None:
        """Default the rule type from the question type."""
        if not self.rule_type and self.question_id:
            self.rule_type = self.question.default_marking_rule_type()
        super().save(*args, **kwargs)

    def clean(self) -> None:
        """Ensure the rule fits its question and its criteria fit its rule type."""
        super().clean()
        if not (self.question_id and self.marking_scheme_id):
            return
        if self.question.assessment_id != self.marking_scheme.assessment_id:
            raise exceptions.CrossAssessmentError(
                {"marking_scheme": "The marking scheme does not belong to the question's assessment."}
            )
        if self.rule_type not in RULE_TYPES:
            raise exceptions.InvalidRuleTypeError({"rule_type": f"Unknown rule type '{self.rule_type}'."})
        available = self.question.available_marking_rule_types()
        if self.rule_type not in available:
            raise exceptions.InvalidRuleTypeError(
                {
                    "rule_type": f"'{self.rule_type}' is not compatible with {self.question.type} questions. "
                    f"Available types: {', '.join(available)}."
                }
            )
        try:
            parse_criteria(self.rule_type, self.criteria)
        except PydanticValidationError as e:
            raise exceptions.InvalidCriteriaError({"criteria": pydantic_error_message(e)}) from e


# ---- ResponseSession model ----


class ResponseSessionQueryset(models.QuerySet["ResponseSession"]):
    """ResponseSession queryset."""

    def by_state(self, *states: str) -> t.Self:
        """Sessions in any of the given states."""
        return self.filter(state__in=states)

    def for_assessment(self, assessment: Assessment) -> t.Self:
        """Sessions of an assessment."""
        return self.filter(assessment=assessment)


class ResponseSessionManager(models.Manager["ResponseSession"]):
    def get_queryset(self) -> ResponseSessionQueryset:
        """Get ResponseSession queryset."""
        return ResponseSessionQueryset(self.model)

    def stats_for_assessment(self, assessment: Assessment) -> dict[str, t.Any]:
        """Aggregate session statistics for an assessment."""
        sessions = self.get_queryset().for_assessment(assessment)
        by_state = dict(sessions.values_list("state").annotate(count=Count("id")).order_by())
        average_score = sessions.exclude(total_score=0).aggregate(avg=Avg("total_score"))["avg"]

        marked = list(sessions.by_state(SessionState.MARKED, SessionState.PUBLISHED).select_related("assessment"))
        pass_rate = percentage(sum(1 for s in marked if s.passed), len(marked)) if marked else Decimal("0")

        durations = [
            (completed - started).total_seconds()
            for started, completed in sessions.filter(
                started_at__isnull=False, completed_at__isnull=False
            ).values_list("started_at", "completed_at")
        ]
        return {
            "total": sessions.count(),
            "by_state": by_state,
            "average_score": Decimal(str(average_score)).quantize(TWO_PLACES) if average_score else Decimal("0"),
            "pass_rate": pass_rate,
            "average_duration": _format_average_duration(durations),
        }


def _format_average_duration(durations: list[float]) -> str:
    if not durations:
        return "0m"
    average = int(sum(durations) / len(durations))
    hours, minutes = average // 3600, (average % 3600) // 60
    return f"{hours}h {minutes}m" if hours else f"{minutes}m"


class ResponseSession(TimeStampedModel):
    State = SessionState

    user = models.ForeignKey(settings.AUTH_USER_MODEL, on_delete=models.CASCADE, related_name="response_sessions")
    assessment = models.ForeignKey(Assessment, on_delete=models.CASCADE, related_name="response_sessions")
    state = models.CharField(choices=SessionState.choices, max_length=20, default=SessionState.DRAFT, db_index=True)
    started_at = models.DateTimeField(null=True, blank=True)
    completed_at = models.DateTimeField(null=True, blank=True, db_index=True)
    submitted_at = models.DateTimeField(null=True, blank=True)
    marked_at = models.DateTimeField(null=True, blank=True)
    total_score = models.DecimalField(
        max_digits=10, decimal_places=2, default=Decimal("0"), validators=[MinValueValidator(0)]
    )
    max_possible_score = models.DecimalField(
        max_digits=10, decimal_places=2, default=Decimal("0"), validators=[MinValueValidator(0)]
    )
    grade = models.CharField(max_length=20, blank=True)
    feedback = models.TextField(blank=True)
    metadata = models.JSONField(default=dict, blank=True)

    objects = ResponseSessionManager()

    class Meta:
        ordering = ["-created_at"]
        constraints = [
            models.UniqueConstraint(fields=["user", "assessment"], name="unique_session_per_user_assessment")
        ]

    def __str__(self) -> str:
        return f"{self.user} - {self.assessment} ({self.state})"

    @property
    def duration(self) -> timedelta | None:
        """Wall-clock time between start and completion, or now when not completed."""
        if not self.started_at:
            return None
        return (self.completed_at or timezone.now()) - self.started_at

    @property
    def duration_formatted(self) -> str:
        """Duration as e.g. ``1h 2m 3s``."""
        if self.duration is None:
            return "Not started"
        seconds = int(self.duration.total_seconds())
        hours, minutes, seconds = seconds // 3600, (seconds % 3600) // 60, seconds % 60
        if hours:
            return f"{hours}h {minutes}m {seconds}s"
        if minutes:
            return f"{minutes}m {seconds}s"
        return f"{seconds}s"

    @property
    def completion_percentage(self) -> Decimal:
        """Answered required questions over all required questions, regardless of visibility."""
        required = Question.objects.active().required().filter(assessment_id=self.assessment_id)
        total = required.count()
        if not total:
            return Decimal("0")
        answered = sum(1 for response in self.responses.filter(question__in=required) if response.has_valid_response)
        return percentage(answered, total)

    @property
    def score_percentage(self) -> Decimal:
        """total_score over max_possible_score."""
        return percentage(self.total_score, self.max_possible_score)

    @property
    def passed(self) -> bool:
        """Whether a marked session meets the active scheme's passing score."""
        if self.state not in (SessionState.MARKED, SessionState.PUBLISHED):
            return False
        scheme = self.assessment.active_marking_scheme
        if scheme is None or scheme.passing_score is None:
            return False
        return self.score_percentage >= scheme.passing_score

    @property
    def can_be_marked(self) -> bool:
        """Submitted, under review, or already marked (for re-marking)."""
        return self.state in (
            SessionState.SUBMITTED,
            SessionState.UNDER_REVIEW,
            SessionState.MARKED,
            SessionState.PUBLISHED,
        )

    @property
    def accepts_answers(self) -> bool:
        """Answers can only be given before completion."""
        return self.state in (SessionState.DRAFT, SessionState.STARTED, SessionState.IN_PROGRESS)

    @property
    def country_code(self) -> str | None:
        """The respondent's country, used for country restrictions."""
        return getattr(self.user, "country_code", None) or None


# ---- QuestionResponse model ----


class QuestionResponseQueryset(models.QuerySet["QuestionResponse"]):
    """QuestionResponse queryset."""

    def with_selections(self) -> t.Self:
        """Prefetch selected options and the question."""
        return self.select_related("question").prefetch_related("selected_options__option")


class QuestionResponseManager(models.Manager["QuestionResponse"]):
    def get_queryset(self) -> QuestionResponseQueryset:
        """Get QuestionResponse queryset."""
        return QuestionResponseQueryset(self.model)


class QuestionResponse(TimeStampedModel):
    session = models.ForeignKey(ResponseSession, on_delete=models.CASCADE, related_name="responses")
    question = models.ForeignKey(Question, on_delete=models.CASCADE, related_name="responses")
    value = models.JSONField(default=dict, blank=True)

    objects = QuestionResponseManager()

    class Meta:
        ordering = ["created_at"]
        constraints = [
            models.UniqueConstraint(fields=["session", "question"], name="unique_response_per_session_question")
        ]

    def clean(self) -> None:
        """The question must belong to the session's assessment."""
        super().clean()
        if self.session_id and self.question_id and self.question.assessment_id != self.session.assessment_id:
            raise exceptions.CrossAssessmentError(
                {"question": "The question does not belong to the session's assessment."}
            )

    def selected_option_ids(self) -> list[str]:
        """Ids of the selected options as strings."""
        return [str(selected.option_id) for selected in self.selected_options.all()]

    @property
    def has_valid_response(self) -> bool:
        """Selections for choice questions, otherwise a non-empty value."""
        if self.question.is_choice:
            return bool(self.selected_option_ids())
        if not isinstance(self.value, dict):
            return self.value not in (None, "", [])
        return any(item not in (None, "", [], {}) for item in self.value.values())


# ---- SelectedOption model ----


class SelectedOption(TimeStampedModel):
    response = models.ForeignKey(QuestionResponse, on_delete=models.CASCADE, related_name="selected_options")
    option = models.ForeignKey(Option, on_delete=models.CASCADE, related_name="selections")

    class Meta:
        constraints = [models.UniqueConstraint(fields=["response", "option"], name="unique_selection_per_response")]

    def clean(self) -> None:
        """The option must belong to the answered question, and single-answer questions take one option."""
        super().clean()
        if not (self.response_id and self.option_id):
            return
        question = self.response.question
        if self.option.question_id != question.pk:
            raise exceptions.OptionQuestionMismatchError(
                {"option": "The selected option does not belong to the answered question."}
            )
        if not question.allows_multiple_selections:
            others = SelectedOption.objects.filter(response_id=self.response_id).exclude(pk=self.pk)
            if others.exists():
                raise exceptions.SingleSelectionError({"option": "Only one option can be selected for this question."})


# ---- ResponseScore model ----


class ResponseScore(TimeStampedModel):
    response = models.ForeignKey(QuestionResponse, on_delete=models.CASCADE, related_name="scores")
    marking_scheme = models.ForeignKey(MarkingScheme, on_delete=models.CASCADE, related_name="response_scores")
    marking_rule = models.ForeignKey(MarkingRule, on_delete=models.CASCADE, related_name="response_scores")
    score_earned = models.DecimalField(
        max_digits=10, decimal_places=2, default=Decimal("0"), validators=[MinValueValidator(0)]
    )
    max_possible_score = models.DecimalField(
        max_digits=10, decimal_places=2, default=Decimal("0"), validators=[MinValueValidator(0)]
    )
    scoring_details = models.JSONField(default=dict, blank=True)
    feedback = models.TextField(blank=True)

    class Meta:
        constraints = [
            models.UniqueConstraint(fields=["response", "marking_scheme"], name="unique_score_per_response_scheme")
        ]

    @property
    def percentage_score(self) -> Decimal:
        """score_earned over max_possible_score."""
        return percentage(self.score_earned, self.max_possible_score)

    @property
    def passed(self) -> bool:
        """Whether the response reaches the scheme's passing percentage."""
        return self.percentage_score >= self.marking_scheme.passing_score_percentage

    @property
    def grade(self) -> str:
        """Grade of this single response under the scheme's boundaries."""
        return self.marking_scheme.grade_for(self.percentage_score)

    @property
    def feedback_message(self) -> str:
        """Stored feedback, or a default message."""
        if self.feedback:
            return self.feedback
        if self.passed:
            return f"Good work! You scored {self.percentage_score}% on this question."
        return f"You scored {self.percentage_score}% on this question. Review the material and try again."
