"""test_models.py: Unit tests for the accounts models."""

import pytest

from accounts.models import User, UserQueryset

pytestmark = pytest.mark.django_db


def test_user_manager_get_queryset() -> None:
    """Test that AccountManager.get_queryset() returns a UserQueryset."""
    assert isinstance(User.objects.get_queryset(), UserQueryset)


def test_user_creation_with_default_values() -> None:
    user = User.objects.create_user(username="test_user", password="password")
    assert user.country_code == ""
    assert user.language == "en"


def test_from_country_normalizes_the_lookup() -> None:
    """Test that from_country() matches regardless of the code's case."""
    austrian = User.objects.create_user(username="austrian", country_code="AUT")
    User.objects.create_user(username="german", country_code="DEU")
    User.objects.create_user(username="nowhere")

    assert list(User.objects.from_country("aut")) == [austrian]


def test_get_display_name_with_preferred_name() -> None:
    user = User(username="jdoe@example.com", first_name="Jane", last_name="Doe", preferred_name="JD")
    assert user.get_display_name() == "JD"
    assert user.display_name == "JD"


def test_get_display_name_falls_back_to_full_name() -> None:
    user = User(username="jdoe@example.com", first_name="Jane", last_name="Doe")
    assert user.get_display_name() == "Jane Doe"


def test_get_display_name_falls_back_to_username() -> None:
    """Test that the local part of the username is title-cased when no name is set."""
    user = User(username="jane_doe@example.com")
    assert user.get_display_name() == "Jane Doe"
