import sys
import os

sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))
import pytest

from storefront.backend import Identity, InMemoryBackend
from storefront.errors import InvalidProfile, PersistenceUnavailable, Unauthenticated
from storefront.profile import ProfileService, validate_profile

FORM = {"name": "Asha", "email": "asha@example.com", "mobile": "+91 98765 43210", "address": "Pune"}


@pytest.fixture
def backend():
    return InMemoryBackend()


@pytest.fixture
def profiles(backend):
    return ProfileService(backend, Identity("u1"))


def test_validate_profile():
    """Пустые поля допустимы, заполненные email и телефон проверяются"""
    assert validate_profile({}).value == {"name": "", "email": "", "mobile": "", "address": ""}
    assert validate_profile({**FORM, "name": "  Asha "}).value["name"] == "Asha"
    assert validate_profile({**FORM, "email": "asha"}).error == InvalidProfile("email is not valid")
    assert validate_profile({**FORM, "mobile": "call me"}).error == InvalidProfile("mobile is not valid")


@pytest.mark.asyncio
async def test_profile_missing_then_saved(profiles, backend):
    assert (await profiles.fetch_profile()).value.is_none()

    saved = (await profiles.update_profile(FORM)).value
    assert saved.id == "u1"
    assert saved.email == "asha@example.com"

    await profiles.update_profile({**FORM, "address": "Mumbai"})
    assert len(backend.rows("profiles")) == 1
    assert (await profiles.fetch_profile()).value.value.address == "Mumbai"


@pytest.mark.asyncio
async def test_invalid_profile_not_written(profiles, backend):
    result = await profiles.update_profile({**FORM, "email": "nope"})
    assert result.is_left
    assert backend.calls == []


@pytest.mark.asyncio
async def test_profile_requires_user(backend):
    anonymous = ProfileService(backend, Identity())
    assert (await anonymous.fetch_profile()).error == Unauthenticated()
    assert (await anonymous.update_profile(FORM)).error == Unauthenticated()


@pytest.mark.asyncio
async def test_profile_save_failure(profiles, backend):
    backend.fail_next("upsert", "profiles")
    result = await profiles.update_profile(FORM)
    assert isinstance(result.error, PersistenceUnavailable)
    assert profiles.profile is None
