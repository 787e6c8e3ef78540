import logging
import re
from typing import Mapping, Optional

from .backend import Backend, Identity
from .domain import UserProfile
from .errors import CartError, InvalidProfile, Unauthenticated
from .ftypes import Either, Maybe, attempt
from .transforms import user_profile_from_row

logger = logging.getLogger("shop.profile")

PROFILE_FIELDS = ("name", "email", "mobile", "address")
EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
MOBILE_RE = re.compile(r"^\+?[0-9][0-9 \-]{5,}$")


def validate_profile(data: Mapping) -> Either[CartError, dict]:
    """Все поля необязательны; заполненные email и телефон проверяются"""
    form = {k: str(data.get(k) or "").strip() for k in PROFILE_FIELDS}
    if form["email"] and not EMAIL_RE.match(form["email"]):
        return Either.left(InvalidProfile("email is not valid"))
    if form["mobile"] and not MOBILE_RE.match(form["mobile"]):
        return Either.left(InvalidProfile("mobile is not valid"))
    return Either.right(form)


class ProfileService:
    """Профиль покупателя (имя, email, телефон, адрес доставки)"""

    def __init__(self, backend: Backend, identity: Identity):
        self._backend = backend
        self._identity = identity
        self.profile: Optional[UserProfile] = None

    async def fetch_profile(self) -> Either[CartError, Maybe[UserProfile]]:
        user_id = self._identity.current_user_id()
        if not user_id:
            self.profile = None
            return Either.left(Unauthenticated())
        row = await attempt("load profile", lambda: self._backend.get("profiles", user_id))
        if row.is_left:
            return row
        self.profile = user_profile_from_row(row.value) if row.value else None
        return Either.right(Maybe.of(self.profile))

    async def update_profile(self, data: Mapping) -> Either[CartError, UserProfile]:
        user_id = self._identity.current_user_id()
        if not user_id:
            return Either.left(Unauthenticated())
        form = validate_profile(data)
        if form.is_left:
            return form
        saved = await attempt(
            "update profile",
            lambda: self._backend.upsert("profiles", {"id": user_id, **form.value}, on_conflict=("id",)),
        )
        if saved.is_left:
            logger.error("profile %s not saved: %s", user_id, saved.error.reason)
            return saved
        self.profile = user_profile_from_row(saved.value)
        return Either.right(self.profile)
