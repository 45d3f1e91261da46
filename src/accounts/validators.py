import re

from django.core.exceptions import ValidationError
from django.utils.translation import gettext_lazy as _

COUNTRY_CODE_REGEX = re.compile(r"^[A-Z]{3}$")  # ISO 3166-1 alpha-3


def validate_country_code(value: str | None) -> None:
    """Validate country code.

    Args:
        value (str): ISO alpha-3 country code.
    """
    if not value:
        return None
    if not isinstance(value, str):
        raise ValidationError(_("Country code must be a string."))

    if not COUNTRY_CODE_REGEX.fullmatch(normalize_country_code(value)):
        raise ValidationError(_("Country code must be a three-letter ISO code."))
    return None


def normalize_country_code(value: str) -> str:
    """Normalize country code.

    Args:
        value (str): country code.

    Returns:
        str: upper-cased code without surrounding whitespace.
    """
    return value.strip().upper()
