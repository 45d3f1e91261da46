import uuid
from decimal import Decimal

import django.core.validators
import django.db.models.deletion
from django.conf import settings
from django.db import migrations, models


def _timestamps() -> list[tuple[str, models.Field]]:
    return [
        ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
        ("created_at", models.DateTimeField(auto_now_add=True, db_index=True)),
        ("updated_at", models.DateTimeField(auto_now=True, db_index=True)),
    ]


def _visibility() -> list[tuple[str, models.Field]]:
    return [
        ("is_conditional", models.BooleanField(db_index=True, default=False)),
        ("visibility_conditions", models.JSONField(blank=True, default=dict)),
        ("has_country_restrictions", models.BooleanField(db_index=True, default=False)),
        ("restricted_countries", models.JSONField(blank=True, default=list, help_text="ISO alpha-3 country codes.")),
    ]


def _score() -> models.DecimalField:
    return models.DecimalField(
        decimal_places=2,
        default=Decimal("0"),
        max_digits=10,
        validators=[django.core.validators.MinValueValidator(0)],
    )


def _order() -> models.PositiveIntegerField:
    return models.PositiveIntegerField(db_index=True, validators=[django.core.validators.MinValueValidator(1)])


class Migration(migrations.Migration):
    initial = True

    dependencies = [
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name="Assessment",
            fields=[
                *_timestamps(),
                ("title", models.CharField(db_index=True, max_length=255)),
                ("description", models.TextField(blank=True, default="")),
                ("is_active", models.BooleanField(db_index=True, default=True)),
            ],
            options={"ordering": ["-created_at"]},
        ),
        migrations.CreateModel(
            name="Section",
            fields=[
                *_visibility(),
                *_timestamps(),
                ("name", models.CharField(blank=True, max_length=255)),
                ("order", _order()),
                (
                    "assessment",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="sections",
                        to="assessments.assessment",
                    ),
                ),
            ],
            options={"ordering": ["order"]},
        ),
        migrations.CreateModel(
            name="Question",
            fields=[
                *_visibility(),
                *_timestamps(),
                (
                    "type",
                    models.CharField(
                        choices=[
                            ("multiple_choice", "Multiple choice"),
                            ("radio", "Radio"),
                            ("boolean", "Boolean"),
                            ("date", "Date"),
                            ("range", "Range"),
                            ("rich_text", "Rich text"),
                            ("file_upload", "File upload"),
                        ],
                        db_index=True,
                        max_length=20,
                    ),
                ),
                ("sub_type", models.CharField(blank=True, max_length=20)),
                ("text", models.JSONField(help_text="Localized text as {locale: text}.")),
                ("order", _order()),
                ("is_required", models.BooleanField(db_index=True, default=False)),
                ("active", models.BooleanField(db_index=True, default=True)),
                ("meta_data", models.JSONField(blank=True, default=dict)),
                (
                    "assessment",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="questions",
                        to="assessments.assessment",
                    ),
                ),
                (
                    "section",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="questions",
                        to="assessments.section",
                    ),
                ),
            ],
            options={"ordering": ["order"]},
        ),
        migrations.CreateModel(
            name="Option",
            fields=[
                *_timestamps(),
                ("text", models.JSONField(help_text="Localized text as {locale: text}.")),
                ("order", _order()),
                ("is_correct_answer", models.BooleanField(default=False)),
                (
                    "points",
                    models.DecimalField(
                        blank=True,
                        decimal_places=2,
                        help_text="Points awarded when selected. Empty means the marking rule's default points.",
                        max_digits=10,
                        null=True,
                    ),
                ),
                (
                    "question",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="options",
                        to="assessments.question",
                    ),
                ),
            ],
            options={"ordering": ["order"]},
        ),
        migrations.CreateModel(
            name="MarkingScheme",
            fields=[
                *_timestamps(),
                ("name", models.CharField(max_length=255)),
                ("description", models.TextField(blank=True, default="")),
                ("is_active", models.BooleanField(db_index=True, default=False)),
                ("total_possible_score", _score()),
                (
                    "settings",
                    models.JSONField(
                        blank=True, default=dict, help_text="passing_score, grade_boundaries and feedback_templates."
                    ),
                ),
                (
                    "assessment",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="marking_schemes",
                        to="assessments.assessment",
                    ),
                ),
            ],
            options={"ordering": ["-is_active", "name"]},
        ),
        migrations.CreateModel(
            name="MarkingRule",
            fields=[
                *_timestamps(),
                (
                    "rule_type",
                    models.CharField(
                        choices=[
                            ("option_based", "Option based"),
                            ("range_based", "Range based"),
                            ("exact_match", "Exact match"),
                            ("partial_match", "Partial match"),
                            ("keyword_based", "Keyword based"),
                            ("format_based", "Format based"),
                            ("step_based", "Step based"),
                            ("tolerance_based", "Tolerance based"),
                            ("date_range_based", "Date range based"),
                            ("time_based", "Time based"),
                            ("overlap_based", "Overlap based"),
                            ("file_based", "File based"),
                            ("size_based", "Size based"),
                            ("type_based", "Type based"),
                            ("content_based", "Content based"),
                            ("strength_based", "Strength based"),
                            ("content_analysis", "Content analysis"),
                        ],
                        db_index=True,
                        max_length=30,
                    ),
                ),
                ("points", _score()),
                ("is_active", models.BooleanField(db_index=True, default=True)),
                ("order", models.PositiveIntegerField(db_index=True, default=0)),
                ("criteria", models.JSONField(blank=True, default=dict)),
                (
                    "marking_scheme",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="marking_rules",
                        to="assessments.markingscheme",
                    ),
                ),
                (
                    "question",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="marking_rules",
                        to="assessments.question",
                    ),
                ),
            ],
            options={"ordering": ["order", "created_at"]},
        ),
        migrations.CreateModel(
            name="ResponseSession",
            fields=[
                *_timestamps(),
                (
                    "state",
                    models.CharField(
                        choices=[
                            ("draft", "Draft"),
                            ("started", "Started"),
                            ("in_progress", "In Progress"),
                            ("completed", "Completed"),
                            ("submitted", "Submitted"),
                            ("under_review", "Under Review"),
                            ("marked", "Marked"),
                            ("published", "Published"),
                            ("cancelled", "Cancelled"),
                            ("expired", "Expired"),
                        ],
                        db_index=True,
                        default="draft",
                        max_length=20,
                    ),
                ),
                ("started_at", models.DateTimeField(blank=True, null=True)),
                ("completed_at", models.DateTimeField(blank=True, db_index=True, null=True)),
                ("submitted_at", models.DateTimeField(blank=True, null=True)),
                ("marked_at", models.DateTimeField(blank=True, null=True)),
                ("total_score", _score()),
                ("max_possible_score", _score()),
                ("grade", models.CharField(blank=True, max_length=20)),
                ("feedback", models.TextField(blank=True)),
                ("metadata", models.JSONField(blank=True, default=dict)),
                (
                    "assessment",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="response_sessions",
                        to="assessments.assessment",
                    ),
                ),
                (
                    "user",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="response_sessions",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
            ],
            options={"ordering": ["-created_at"]},
        ),
        migrations.CreateModel(
            name="QuestionResponse",
            fields=[
                *_timestamps(),
                ("value", models.JSONField(blank=True, default=dict)),
                (
                    "question",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="responses",
                        to="assessments.question",
                    ),
                ),
                (
                    "session",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="responses",
                        to="assessments.responsesession",
                    ),
                ),
            ],
            options={"ordering": ["created_at"]},
        ),
        migrations.CreateModel(
            name="SelectedOption",
            fields=[
                *_timestamps(),
                (
                    "option",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="selections",
                        to="assessments.option",
                    ),
                ),
                (
                    "response",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="selected_options",
                        to="assessments.questionresponse",
                    ),
                ),
            ],
        ),
        migrations.CreateModel(
            name="ResponseScore",
            fields=[
                *_timestamps(),
                ("score_earned", _score()),
                ("max_possible_score", _score()),
                ("scoring_details", models.JSONField(blank=True, default=dict)),
                ("feedback", models.TextField(blank=True)),
                (
                    "marking_rule",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="response_scores",
                        to="assessments.markingrule",
                    ),
                ),
                (
                    "marking_scheme",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="response_scores",
                        to="assessments.markingscheme",
                    ),
                ),
                (
                    "response",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="scores",
                        to="assessments.questionresponse",
                    ),
                ),
            ],
        ),
        migrations.AddConstraint(
            model_name="section",
            constraint=models.UniqueConstraint(
                fields=("assessment", "order"), name="unique_section_order_per_assessment"
            ),
        ),
        migrations.AddConstraint(
            model_name="question",
            constraint=models.UniqueConstraint(fields=("section", "order"), name="unique_question_order_per_section"),
        ),
        migrations.AddConstraint(
            model_name="option",
            constraint=models.UniqueConstraint(fields=("question", "order"), name="unique_option_order_per_question"),
        ),
        migrations.AddConstraint(
            model_name="markingscheme",
            constraint=models.UniqueConstraint(
                condition=models.Q(("is_active", True)),
                fields=("assessment",),
                name="unique_active_scheme_per_assessment",
            ),
        ),
        migrations.AddConstraint(
            model_name="responsesession",
            constraint=models.UniqueConstraint(
                fields=("user", "assessment"), name="unique_session_per_user_assessment"
            ),
        ),
        migrations.AddConstraint(
            model_name="questionresponse",
            constraint=models.UniqueConstraint(
                fields=("session", "question"), name="unique_response_per_session_question"
            ),
        ),
        migrations.AddConstraint(
            model_name="selectedoption",
            constraint=models.UniqueConstraint(fields=("response", "option"), name="unique_selection_per_response"),
        ),
        migrations.AddConstraint(
            model_name="responsescore",
            constraint=models.UniqueConstraint(
                fields=("response", "marking_scheme"), name="unique_score_per_response_scheme"
            ),
        ),
    ]
