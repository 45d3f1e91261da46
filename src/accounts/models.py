import re
import typing as t
import uuid

from django.conf import settings
from django.contrib.auth.models import AbstractUser, UserManager
from django.db import models

from accounts.validators import normalize_country_code, validate_country_code


class UserQueryset(models.QuerySet["User"]):
    """Queryset for User."""

    def from_country(self, country_code: str) -> t.Self:
        """Users whose country is the given alpha-3 code."""
        return self.filter(country_code=normalize_country_code(country_code))


class AccountManager(UserManager["User"]):
    def get_queryset(self) -> UserQueryset:
        """Get queryset for User."""
        return UserQueryset(self.model)

    def from_country(self, country_code: str) -> UserQueryset:
        """Users whose country is the given alpha-3 code."""
        return self.get_queryset().from_country(country_code)


class User(AbstractUser):
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    preferred_name = models.CharField(db_index=True, max_length=255, blank=True, help_text="Preferred name")
    country_code = models.CharField(
        max_length=3,
        blank=True,
        db_index=True,
        validators=[validate_country_code],
        help_text="ISO 3166-1 alpha-3 country code, used for country restricted content.",
    )
    language = models.CharField(
        max_length=7,
        choices=settings.LANGUAGES,
        default=settings.LANGUAGE_CODE,
        help_text="User's preferred language",
    )

    objects = AccountManager()  # type: ignore[misc]

    class Meta:
        ordering = ["username"]

    def save(self, *args: t.Any, **kwargs: t.Any) -> None:
        """Normalize the country code before saving."""
        if self.country_code:
            self.country_code = normalize_country_code(self.country_code)
        super().save(*args, **kwargs)

    @property
    def display_name(self) -> str:
        """Display name."""
        return self.get_display_name()

    def get_display_name(self) -> str:
        """Returns the user's preferred name, or their full name as a fallback."""
        return (
            self.preferred_name or self.get_full_name() or re.sub(r"(\W|_)+", " ", self.username.split("@")[0]).title()
        )
