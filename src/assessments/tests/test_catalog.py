"""test_catalog.py: Unit tests for catalog models and authoring operations."""

import typing as t
from datetime import timedelta
from decimal import Decimal

import pytest
from django.core.exceptions import ValidationError
from django.utils import timezone
from django.utils.translation import override

from accounts.models import User
from assessments import exceptions
from assessments.enums import ConditionOperator, QuestionType, RuleType, SessionState, TriggerResponseType
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
from assessments.schema import (
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
from assessments.service.catalog_service import CatalogService

pytestmark = pytest.mark.django_db

Respond = t.Callable[..., QuestionResponse]


@pytest.fixture
def catalog(assessment: Assessment) -> CatalogService:
    return CatalogService(assessment)


@pytest.fixture
def other_assessment() -> Assessment:
    return Assessment.objects.create(title="Exit Survey")


# ---- Assessments and sections ----


def test_create_assessment() -> None:
    assessment = CatalogService.create_assessment(AssessmentCreateSchema(title="Quiz", description="Friday quiz"))

    assert assessment.title == "Quiz"
    assert assessment.is_active
    assert Assessment.objects.active().count() == 1


def test_sections_get_the_next_free_order(catalog: CatalogService) -> None:
    first = catalog.create_section(SectionCreateSchema(name="Intro"))
    second = catalog.create_section(SectionCreateSchema())

    assert (first.order, first.name) == (1, "Intro")
    assert (second.order, second.name) == (2, "Section 2")


def test_section_order_is_unique_per_assessment(catalog: CatalogService, section: Section) -> None:
    with pytest.raises(ValidationError):
        catalog.create_section(SectionCreateSchema(name="Clash", order=section.order))


def test_update_section(catalog: CatalogService, section: Section) -> None:
    updated = catalog.update_section(section, SectionUpdateSchema(name="Warm-up"))

    assert updated.name == "Warm-up"
    assert updated.order == 1


# ---- Questions and options ----


def test_create_question_fills_defaults(catalog: CatalogService, section: Section, radio_question: Question) -> None:
    question = catalog.create_question(
        QuestionCreateSchema(
            section_id=section.pk, type=QuestionType.RANGE, text="How likely?"  # type: ignore[arg-type]
        )
    )

    assert question.order == radio_question.order + 1
    assert question.assessment_id == section.assessment_id
    assert question.sub_type == "slider"
    assert question.meta_data == {"min_value": 1, "max_value": 10, "step_value": 1}
    assert question.text == {"en": "How likely?"}


def test_create_question_with_options(catalog: CatalogService, section: Section) -> None:
    question = catalog.create_question(
        QuestionCreateSchema(
            section_id=section.pk,
            type=QuestionType.MULTIPLE_CHOICE,
            text={"en": "Languages you speak"},
            options=[
                OptionCreateSchema(text={"en": "English"}, is_correct_answer=True),
                OptionCreateSchema(text={"en": "German"}, points=Decimal("2")),
            ],
        )
    )

    options = list(question.options.order_by("order"))
    assert [option.localized_text() for option in options] == ["English", "German"]
    assert [option.order for option in options] == [1, 2]
    assert options[1].has_assigned_points


def test_boolean_questions_get_default_options(catalog: CatalogService, section: Section) -> None:
    question = catalog.create_question(
        QuestionCreateSchema(section_id=section.pk, type=QuestionType.BOOLEAN, text={"en": "Vegetarian?"})
    )

    assert [option.localized_text() for option in question.options.order_by("order")] == ["True", "False"]


def test_boolean_question_with_supplied_options(catalog: CatalogService, section: Section) -> None:
    question = catalog.create_question(
        QuestionCreateSchema(
            section_id=section.pk,
            type=QuestionType.BOOLEAN,
            text={"en": "Vegetarian?"},
            options=[OptionCreateSchema(text={"en": "Yes"}), OptionCreateSchema(text={"en": "No"})],
        )
    )

    assert [option.localized_text() for option in question.options.order_by("order")] == ["Yes", "No"]


def test_create_question_in_a_foreign_section(
    catalog: CatalogService, other_assessment: Assessment
) -> None:
    foreign = Section.objects.create(assessment=other_assessment, order=1)

    with pytest.raises(exceptions.SectionNotFoundError):
        catalog.create_question(
            QuestionCreateSchema(section_id=foreign.pk, type=QuestionType.RICH_TEXT, text={"en": "Hi"})
        )


def test_question_section_must_share_the_assessment(assessment: Assessment, other_assessment: Assessment) -> None:
    foreign = Section.objects.create(assessment=other_assessment, order=1)

    with pytest.raises(ValidationError, match="does not belong to the question's assessment"):
        Question.objects.create(assessment=assessment, section=foreign, type=QuestionType.RICH_TEXT, text={"en": "?"})


@pytest.mark.parametrize(
    "question_type,sub_type,meta_data",
    [
        (QuestionType.RANGE, "", {"min_value": 10, "max_value": 1}),
        (QuestionType.RANGE, "", {"step_value": 0}),
        (QuestionType.FILE_UPLOAD, "", {"allowed_data_types": ["pdf"]}),
        (QuestionType.FILE_UPLOAD, "", {"max_file_size": 10}),
        (QuestionType.RICH_TEXT, "slider", {}),
    ],
)
def test_invalid_question_meta_data(
    section: Section, question_type: str, sub_type: str, meta_data: dict[str, t.Any]
) -> None:
    with pytest.raises(ValidationError) as exc_info:
        Question.objects.create(
            section=section, type=question_type, sub_type=sub_type, text={"en": "?"}, meta_data=meta_data
        )
    assert {"meta_data", "sub_type"} & set(exc_info.value.message_dict)


def test_question_text_is_required(section: Section) -> None:
    with pytest.raises(ValidationError):
        Question.objects.create(section=section, type=QuestionType.RICH_TEXT, text={"en": ""})


def test_update_question(catalog: CatalogService, text_question: Question) -> None:
    updated = catalog.update_question(text_question, QuestionUpdateSchema(is_required=True, sub_type="email"))

    assert updated.is_required
    assert updated.sub_type == "email"
    assert updated.text == {"en": "Favorite color?"}


def test_options_only_belong_to_choice_questions(catalog: CatalogService, text_question: Question) -> None:
    with pytest.raises(ValidationError, match="do not have options"):
        catalog.create_option(text_question, OptionCreateSchema(text={"en": "Nope"}))


def test_update_option(catalog: CatalogService, no_option: Option) -> None:
    updated = catalog.update_option(no_option, OptionUpdateSchema(is_correct_answer=True, points=Decimal("1.5")))

    assert updated.is_correct_answer
    assert updated.points == Decimal("1.5")
    assert updated.text == {"en": "No"}


def test_localized_text_falls_back_to_english(section: Section) -> None:
    question = Question.objects.create(
        section=section, type=QuestionType.RICH_TEXT, text={"en": "Hello", "de": "Hallo"}
    )

    with override("de"):
        assert question.localized_text() == "Hallo"
    with override("fr"):
        assert question.localized_text() == "Hello"
    assert question.localized_text("de-at") == "Hallo"


# ---- Visibility conditions ----


def test_trigger_must_precede_the_question(radio_question: Question, text_question: Question) -> None:
    radio_question.add_value_condition(text_question.pk, "blue")

    with pytest.raises(ValidationError, match="must come before this question"):
        radio_question.save()


def test_section_trigger_must_be_in_an_earlier_section(
    section: Section, second_section: Section, radio_question: Question, range_question: Question
) -> None:
    section.add_value_condition(radio_question.pk, "x")
    with pytest.raises(ValidationError, match="earlier section"):
        section.save()

    second_section.add_value_condition(range_question.pk, "x")
    with pytest.raises(ValidationError, match="earlier section"):
        second_section.save()


def test_trigger_must_belong_to_the_assessment(text_question: Question, other_assessment: Assessment) -> None:
    foreign_section = Section.objects.create(assessment=other_assessment, order=1)
    foreign = Question.objects.create(section=foreign_section, type=QuestionType.RICH_TEXT, text={"en": "?"})
    text_question.add_value_condition(foreign.pk, "x")

    with pytest.raises(ValidationError, match="does not exist in this assessment"):
        text_question.save()


@pytest.mark.parametrize(
    "conditions",
    [
        {"trigger_response_type": "bogus", "trigger_values": ["x"]},
        {"trigger_question_id": "not-a-uuid", "trigger_response_type": "value_equals", "trigger_values": ["x"]},
        {"trigger_response_type": "value_range", "trigger_values": ["1"]},
        {"trigger_response_type": "value_equals", "trigger_values": ["x"], "operator": "greater_than"},
        {"trigger_response_type": "value_equals", "trigger_values": []},
    ],
)
def test_malformed_visibility_conditions(
    radio_question: Question, text_question: Question, conditions: dict[str, t.Any]
) -> None:
    text_question.is_conditional = True
    text_question.visibility_conditions = {"trigger_question_id": str(radio_question.pk), **conditions}

    with pytest.raises(ValidationError) as exc_info:
        text_question.save()
    assert "visibility_conditions" in exc_info.value.message_dict


def test_set_question_visibility(
    catalog: CatalogService, radio_question: Question, yes_option: Option, text_question: Question
) -> None:
    condition = VisibilityCondition(
        trigger_question_id=radio_question.pk,
        trigger_response_type=TriggerResponseType.OPTION_SELECTED,
        trigger_values=[str(yes_option.pk)],
    )

    question = catalog.set_question_visibility(text_question, condition, ["deu"])

    question.refresh_from_db()
    assert question.is_conditional
    assert question.condition is not None
    assert question.condition.operator == ConditionOperator.CONTAINS
    assert question.restricted_countries == ["DEU"]
    assert question.condition_description() == "Visible when 'Do you like tea?' contains Yes"

    question = catalog.set_question_visibility(question, None)

    assert not question.is_conditional
    assert question.condition_description() == "Always visible"
    assert question.restricted_countries == ["DEU"]


def test_available_trigger_questions(
    radio_question: Question, checkbox_question: Question, text_question: Question, range_question: Question
) -> None:
    assert list(text_question.available_trigger_questions()) == [radio_question, checkbox_question]
    assert list(range_question.section.available_trigger_questions()) == [
        radio_question,
        checkbox_question,
        text_question,
    ]


def test_question_triggers_come_from_earlier_sections_or_earlier_in_the_section(
    section: Section,
    second_section: Section,
    radio_question: Question,
    text_question: Question,
    range_question: Question,
    date_question: Question,
    file_question: Question,
) -> None:
    later = Question.objects.create(
        section=section, type=QuestionType.RICH_TEXT, text={"en": "Anything else?"}, order=4
    )

    assert list(date_question.available_trigger_questions()) == [radio_question, text_question, later, range_question]
    assert list(range_question.available_trigger_questions()) == [radio_question, text_question, later]
    assert list(radio_question.available_trigger_questions()) == []
    assert date_question.trigger_precedence_error(range_question) is None
    assert date_question.trigger_precedence_error(later) is None
    assert "same section" in (date_question.trigger_precedence_error(file_question) or "")
    assert "same section" in (text_question.trigger_precedence_error(later) or "")
    assert "earlier section" in (text_question.trigger_precedence_error(range_question) or "")


def test_section_triggers_come_from_earlier_sections(
    section: Section,
    second_section: Section,
    radio_question: Question,
    text_question: Question,
    range_question: Question,
) -> None:
    third_section = Section.objects.create(assessment=section.assessment, order=3)

    assert list(section.available_trigger_questions()) == []
    assert list(second_section.available_trigger_questions()) == [radio_question, text_question]
    assert list(third_section.available_trigger_questions()) == [radio_question, text_question, range_question]
    assert second_section.trigger_precedence_error(text_question) is None
    assert third_section.trigger_precedence_error(range_question) is None
    assert "earlier section" in (second_section.trigger_precedence_error(range_question) or "")
    assert "earlier section" in (section.trigger_precedence_error(radio_question) or "")


def test_range_condition_description(range_question: Question, second_section: Section) -> None:
    question = Question(section=second_section, type=QuestionType.RICH_TEXT, text={"en": "Why?"}, order=4)
    question.add_range_condition(range_question.pk, 1, 4)
    question.save()

    assert question.condition_description() == "Visible when 'How satisfied are you?' is between 1 and 4"


# ---- Country restrictions ----


def test_country_restrictions_are_normalized(text_question: Question) -> None:
    text_question.restricted_countries = [" aut", "AUT", "deu"]
    text_question.save()

    assert text_question.restricted_countries == ["AUT", "DEU"]
    assert text_question.has_country_restrictions
    assert not text_question.accessible_to_country("aut")
    assert text_question.accessible_to_country("ITA")
    assert text_question.accessible_to_country(None)


@pytest.mark.parametrize("codes", [["AT"], ["AUSTRIA"], ["A1B"], "AUT"])
def test_invalid_country_codes(text_question: Question, codes: t.Any) -> None:
    text_question.restricted_countries = codes

    with pytest.raises(ValidationError) as exc_info:
        text_question.save()
    assert "restricted_countries" in exc_info.value.message_dict


def test_add_and_remove_country_restrictions(section: Section) -> None:
    section.add_country_restriction(["aut", "deu"])
    section.remove_country_restriction("AUT")
    section.save()
    assert section.restricted_countries == ["DEU"]

    section.clear_country_restrictions()
    section.save()
    assert not section.has_country_restrictions


# ---- Marking configuration ----


def test_marking_rule_type_defaults_from_question(
    catalog: CatalogService, marking_scheme: MarkingScheme, range_question: Question
) -> None:
    rule = catalog.create_marking_rule(
        marking_scheme, MarkingRuleCreateSchema(question_id=range_question.pk, points=Decimal("5"))
    )

    assert rule.rule_type == RuleType.RANGE_BASED
    assert range_question.available_marking_rule_types() == [
        RuleType.RANGE_BASED,
        RuleType.STEP_BASED,
        RuleType.TOLERANCE_BASED,
    ]


def test_marking_rule_type_must_fit_the_question(
    catalog: CatalogService, marking_scheme: MarkingScheme, range_question: Question
) -> None:
    with pytest.raises(ValidationError, match="not compatible with range questions"):
        catalog.create_marking_rule(
            marking_scheme, MarkingRuleCreateSchema(question_id=range_question.pk, rule_type=RuleType.EXACT_MATCH)
        )
    with pytest.raises(ValidationError):
        catalog.create_marking_rule(
            marking_scheme, MarkingRuleCreateSchema(question_id=range_question.pk, rule_type="telepathy")
        )


@pytest.mark.parametrize(
    "rule_type,criteria",
    [
        (RuleType.RANGE_BASED, {"min": 5, "max": 1}),
        (RuleType.TOLERANCE_BASED, {"expected_value": 5, "tolerance": -1}),
        (RuleType.STEP_BASED, {"step_intervals": [{"min": 1}]}),
    ],
)
def test_marking_rule_criteria_must_fit_the_rule_type(
    marking_scheme: MarkingScheme, range_question: Question, rule_type: str, criteria: dict[str, t.Any]
) -> None:
    with pytest.raises(ValidationError) as exc_info:
        MarkingRule.objects.create(
            marking_scheme=marking_scheme, question=range_question, rule_type=rule_type, criteria=criteria
        )
    assert "criteria" in exc_info.value.message_dict


def test_marking_rule_scheme_must_share_the_assessment(
    other_assessment: Assessment, range_question: Question
) -> None:
    foreign_scheme = MarkingScheme.objects.create(assessment=other_assessment, name="Foreign")

    with pytest.raises(ValidationError) as exc_info:
        MarkingRule.objects.create(marking_scheme=foreign_scheme, question=range_question)
    assert "marking_scheme" in exc_info.value.message_dict


def test_update_marking_rule(
    catalog: CatalogService, marking_scheme: MarkingScheme, range_question: Question, other_assessment: Assessment
) -> None:
    rule = MarkingRule.objects.create(marking_scheme=marking_scheme, question=range_question, points=Decimal("1"))

    payload = MarkingRuleUpdateSchema(points=Decimal("4"), criteria={"min": 1, "max": 3})
    updated = catalog.update_marking_rule(rule, payload)
    assert updated.points == Decimal("4")
    assert updated.criteria == {"min": 1, "max": 3}

    with pytest.raises(exceptions.MarkingRuleNotFoundError):
        CatalogService(other_assessment).update_marking_rule(rule, MarkingRuleUpdateSchema(points=Decimal("2")))


def test_only_one_active_marking_scheme(catalog: CatalogService, marking_scheme: MarkingScheme) -> None:
    replacement = catalog.create_marking_scheme(
        MarkingSchemeCreateSchema(name="Strict", total_possible_score=Decimal("50"), is_active=True)
    )

    marking_scheme.refresh_from_db()
    assert replacement.is_active
    assert not marking_scheme.is_active
    assert catalog.assessment.active_marking_scheme == replacement

    catalog.activate_marking_scheme(marking_scheme.pk)
    replacement.refresh_from_db()
    assert not replacement.is_active
    assert catalog.assessment.active_marking_scheme == marking_scheme


def test_activate_unknown_marking_scheme(catalog: CatalogService, other_assessment: Assessment) -> None:
    foreign = MarkingScheme.objects.create(assessment=other_assessment, name="Foreign")

    with pytest.raises(exceptions.MarkingSchemeNotFoundError):
        catalog.activate_marking_scheme(foreign.pk)


def test_create_marking_scheme_stores_settings(catalog: CatalogService) -> None:
    scheme = catalog.create_marking_scheme(
        MarkingSchemeCreateSchema(
            name="Graded",
            total_possible_score=Decimal("40"),
            settings={"passing_score": "20", "grade_boundaries": {"Pass": 50}},  # type: ignore[arg-type]
        )
    )

    assert not scheme.is_active
    assert scheme.passing_score == Decimal("20")
    assert scheme.passing_score_percentage == Decimal("50.00")
    assert scheme.grade_boundaries == {"Pass": Decimal("50")}


def test_marking_scheme_settings_are_validated(assessment: Assessment) -> None:
    with pytest.raises(ValidationError):
        MarkingScheme.objects.create(assessment=assessment, name="Broken", settings={"passing_score": -5})


# ---- Sessions and responses ----


def test_one_session_per_user_and_assessment(session: ResponseSession, user: User, assessment: Assessment) -> None:
    with pytest.raises(ValidationError):
        ResponseSession.objects.create(user=user, assessment=assessment)


def test_response_question_must_share_the_assessment(
    session: ResponseSession, other_assessment: Assessment
) -> None:
    foreign_section = Section.objects.create(assessment=other_assessment, order=1)
    foreign = Question.objects.create(section=foreign_section, type=QuestionType.RICH_TEXT, text={"en": "?"})

    with pytest.raises(ValidationError, match="does not belong to the session's assessment"):
        QuestionResponse.objects.create(session=session, question=foreign, value={"text": "hi"})


def test_selected_option_integrity(
    session: ResponseSession,
    radio_question: Question,
    yes_option: Option,
    no_option: Option,
    checkbox_question: Question,
    respond: Respond,
) -> None:
    response = respond(radio_question, options=[yes_option])

    with pytest.raises(ValidationError, match="Only one option"):
        SelectedOption.objects.create(response=response, option=no_option)
    with pytest.raises(ValidationError, match="does not belong to the answered question"):
        SelectedOption.objects.create(response=response, option=checkbox_question.options.first())


def test_completion_percentage_ignores_visibility(
    session: ResponseSession,
    radio_question: Question,
    no_option: Option,
    text_question: Question,
    respond: Respond,
) -> None:
    text_question.is_required = True
    text_question.add_option_condition(radio_question.pk, [no_option.pk])
    text_question.save()

    assert session.completion_percentage == Decimal("0")

    respond(radio_question, options=[radio_question.options.get(order=1)])
    assert session.completion_percentage == Decimal("50.00")


def test_session_duration(session: ResponseSession) -> None:
    assert session.duration is None
    assert session.duration_formatted == "Not started"

    now = timezone.now()
    session.started_at = now - timedelta(hours=1, minutes=2, seconds=3)
    session.completed_at = now
    assert session.duration_formatted == "1h 2m 3s"

    session.started_at = now - timedelta(seconds=42)
    assert session.duration_formatted == "42s"


def test_stats_for_assessment(
    assessment: Assessment, marking_scheme: MarkingScheme, user_factory: t.Any
) -> None:
    now = timezone.now()
    ResponseSession.objects.create(
        user=user_factory(),
        assessment=assessment,
        state=SessionState.MARKED,
        total_score=Decimal("15"),
        max_possible_score=Decimal("20"),
        started_at=now - timedelta(minutes=30),
        completed_at=now,
    )
    ResponseSession.objects.create(
        user=user_factory(),
        assessment=assessment,
        state=SessionState.MARKED,
        total_score=Decimal("5"),
        max_possible_score=Decimal("20"),
    )
    ResponseSession.objects.create(user=user_factory(), assessment=assessment)

    stats = ResponseSession.objects.stats_for_assessment(assessment)

    assert stats["total"] == 3
    assert stats["by_state"] == {SessionState.MARKED: 2, SessionState.DRAFT: 1}
    assert stats["average_score"] == Decimal("10.00")
    assert stats["pass_rate"] == Decimal("50.00")
    assert stats["average_duration"] == "30m"


def test_stats_for_assessment_across_marked_and_unmarked_sessions(
    assessment: Assessment, marking_scheme: MarkingScheme, user_factory: t.Any
) -> None:
    now = timezone.now()

    def create(state: str, total: str = "0", minutes: int | None = None) -> ResponseSession:
        return ResponseSession.objects.create(
            user=user_factory(),
            assessment=assessment,
            state=state,
            total_score=Decimal(total),
            max_possible_score=Decimal("20"),
            started_at=now - timedelta(minutes=minutes) if minutes is not None else None,
            completed_at=now if minutes is not None else None,
        )

    create(SessionState.MARKED, "15", minutes=30)
    create(SessionState.PUBLISHED, "18", minutes=94)
    create(SessionState.MARKED, "5")
    create(SessionState.SUBMITTED, minutes=10)
    create(SessionState.DRAFT)

    stats = ResponseSession.objects.stats_for_assessment(assessment)

    assert stats["total"] == 5
    assert stats["by_state"] == {
        SessionState.MARKED: 2,
        SessionState.PUBLISHED: 1,
        SessionState.SUBMITTED: 1,
        SessionState.DRAFT: 1,
    }
    assert stats["average_score"] == Decimal("12.67")
    assert stats["pass_rate"] == Decimal("66.67")
    assert stats["average_duration"] == "44m"


def test_stats_for_an_assessment_without_sessions(assessment: Assessment) -> None:
    stats = ResponseSession.objects.stats_for_assessment(assessment)

    assert stats["total"] == 0
    assert stats["by_state"] == {}
    assert stats["average_score"] == Decimal("0")
    assert stats["pass_rate"] == Decimal("0")
    assert stats["average_duration"] == "0m"
