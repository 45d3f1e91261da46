import typing as t
from uuid import UUID

import structlog
from django.db import transaction

from common.utils import update_db_instance

from ..enums import QuestionType
from ..exceptions import (
    MarkingRuleNotFoundError,
    MarkingSchemeNotFoundError,
    QuestionNotFoundError,
    SectionNotFoundError,
)
from ..models import Assessment, MarkingRule, MarkingScheme, Option, Question, Section
from ..schema import (
    AssessmentCreateSchema,
    MarkingRuleCreateSchema,
    MarkingRuleUpdateSchema,
    MarkingSchemeCreateSchema,
    OptionCreateSchema,
    OptionUpdateSchema,
    QuestionCreateSchema,
    QuestionUpdateSchema,
    SectionCreateSchema,
    SectionUpdateSchema,
    VisibilityCondition,
)

logger = structlog.get_logger(__name__)


def _apply_visibility(
    item: Section | Question, condition: VisibilityCondition | None, restricted_countries: list[str]
) -> None:
    if condition is None:
        item.remove_conditions()
    else:
        item.is_conditional = True
        item.visibility_conditions = condition.model_dump(mode="json")
    item.restricted_countries = restricted_countries
    item.has_country_restrictions = bool(restricted_countries)


class CatalogService:
    """Authoring operations on an assessment's sections, questions, options and marking configuration.

    Every write goes through the models' ``save()``, which runs ``full_clean()``, so ordering, rule type
    applicability and trigger precedence are validated before anything is persisted.
    """

    def __init__(self, assessment: Assessment) -> None:
        """Initialize the service for an assessment."""
        self.assessment = assessment

    @classmethod
    def create_assessment(cls, payload: AssessmentCreateSchema) -> Assessment:
        """Create an empty assessment."""
        assessment = Assessment.objects.create(**payload.model_dump())
        logger.info("assessment_created", assessment_id=str(assessment.pk))
        return assessment

    # ---- Sections ----

    @transaction.atomic
    def create_section(self, payload: SectionCreateSchema) -> Section:
        """Create a section. Order and name default to the next free position."""
        section = Section(assessment=self.assessment, name=payload.name or "", order=payload.order)
        _apply_visibility(section, payload.visibility_conditions, payload.restricted_countries)
        section.save()
        return section

    def update_section(self, section: Section, payload: SectionUpdateSchema) -> Section:
        """Rename or reorder a section."""
        return update_db_instance(section, payload)

    @transaction.atomic
    def set_section_visibility(
        self, section: Section, condition: VisibilityCondition | None, restricted_countries: list[str] | None = None
    ) -> Section:
        """Replace the section's trigger condition and, when given, its country restrictions."""
        _apply_visibility(
            section, condition, section.restricted_countries if restricted_countries is None else restricted_countries
        )
        section.save()
        return section

    # ---- Questions ----

    def _get_question(self, question_id: UUID) -> Question:
        try:
            return Question.objects.select_related("section").get(pk=question_id, assessment=self.assessment)
        except Question.DoesNotExist as e:
            raise QuestionNotFoundError(f"Question {question_id} not found in this assessment.") from e

    @transaction.atomic
    def create_question(self, payload: QuestionCreateSchema) -> Question:
        """Create a question with its options.

        Boolean questions get "True"/"False" options unless options are supplied.
        """
        try:
            section = Section.objects.get(pk=payload.section_id, assessment=self.assessment)
        except Section.DoesNotExist as e:
            raise SectionNotFoundError(f"Section {payload.section_id} not found in this assessment.") from e

        question = Question(
            assessment=self.assessment,
            section=section,
            type=payload.type,
            sub_type=payload.sub_type or "",
            text=payload.text,
            order=payload.order,
            is_required=payload.is_required,
            active=payload.active,
            meta_data=payload.meta_data,
        )
        _apply_visibility(question, payload.visibility_conditions, payload.restricted_countries)
        question.save()

        if payload.options:
            if question.type == QuestionType.BOOLEAN:
                question.options.all().delete()
            for option_payload in payload.options:
                self.create_option(question, option_payload)

        logger.info("question_created", question_id=str(question.pk), type=question.type)
        return question

    def update_question(self, question: Question, payload: QuestionUpdateSchema) -> Question:
        """Update a question's text, flags, sub type or meta data. Options have their own operations."""
        return update_db_instance(question, payload)

    @transaction.atomic
    def set_question_visibility(
        self, question: Question, condition: VisibilityCondition | None, restricted_countries: list[str] | None = None
    ) -> Question:
        """Replace the question's trigger condition and, when given, its country restrictions."""
        _apply_visibility(
            question,
            condition,
            question.restricted_countries if restricted_countries is None else restricted_countries,
        )
        question.save()
        return question

    # ---- Options ----

    def create_option(self, question: Question, payload: OptionCreateSchema) -> Option:
        """Add an option to a choice question."""
        return Option.objects.create(question=question, **payload.model_dump())

    def update_option(self, option: Option, payload: OptionUpdateSchema) -> Option:
        """Update an option's text, correctness or points."""
        return update_db_instance(option, payload)

    # ---- Marking ----

    def _get_marking_scheme(self, marking_scheme_id: UUID) -> MarkingScheme:
        try:
            return MarkingScheme.objects.get(pk=marking_scheme_id, assessment=self.assessment)
        except MarkingScheme.DoesNotExist as e:
            raise MarkingSchemeNotFoundError(f"Marking scheme {marking_scheme_id} not found.") from e

    @transaction.atomic
    def create_marking_scheme(self, payload: MarkingSchemeCreateSchema) -> MarkingScheme:
        """Create a marking scheme, activating it when requested."""
        data = payload.model_dump(mode="json", exclude={"is_active", "total_possible_score"})
        scheme = MarkingScheme.objects.create(
            assessment=self.assessment, total_possible_score=payload.total_possible_score, **data
        )
        if payload.is_active:
            scheme.activate()
        logger.info("marking_scheme_created", scheme_id=str(scheme.pk), is_active=scheme.is_active)
        return scheme

    def activate_marking_scheme(self, marking_scheme_id: UUID) -> MarkingScheme:
        """Make a scheme the assessment's active one, deactivating the others."""
        scheme = self._get_marking_scheme(marking_scheme_id)
        scheme.activate()
        logger.info("marking_scheme_activated", scheme_id=str(scheme.pk), assessment_id=str(self.assessment.pk))
        return scheme

    def create_marking_rule(self, marking_scheme: MarkingScheme, payload: MarkingRuleCreateSchema) -> MarkingRule:
        """Create a rule for a question. The rule type defaults from the question type."""
        question = self._get_question(payload.question_id)
        data: dict[str, t.Any] = payload.model_dump(exclude={"question_id", "rule_type"})
        return MarkingRule.objects.create(
            marking_scheme=marking_scheme, question=question, rule_type=payload.rule_type or "", **data
        )

    def update_marking_rule(self, rule: MarkingRule, payload: MarkingRuleUpdateSchema) -> MarkingRule:
        """Update a rule's points, activity, order or criteria."""
        if rule.marking_scheme.assessment_id != self.assessment.pk:
            raise MarkingRuleNotFoundError(f"Marking rule {rule.pk} not found.")
        return update_db_instance(rule, payload)
