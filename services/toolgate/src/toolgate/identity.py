from __future__ import annotations

from pydantic import ValidationError

from .logging import get_logger
from .models import Actor
from .store import DataStore

__all__ = ["IdentityProvider", "demo_actor"]

logger = get_logger("toolgate.identity")

PROFILE_FIELDS = ("role", "email", "license_number", "specialty", "department")


def demo_actor(user_id: str, email: str) -> Actor:
    return Actor(id=user_id, role="admin", email=email, active=True, license_number="admin")


class IdentityProvider:
    """
    Resolves a user id to an authenticated Actor.

    Profiles come from `user_profiles`; the configured demo actor is served
    when no profile exists for its id.  Unknown ids resolve to None.
    """

    def __init__(self, store: DataStore, demo: Actor | None = None) -> None:
        self._store = store
        self._demo = demo

    def get_actor(self, user_id: str) -> Actor | None:
        row = self._store.fetch_one("user_profiles", {"id": user_id})
        if row is None:
            if self._demo is not None and user_id == self._demo.id:
                return self._demo
            return None
        try:
            return Actor(
                id=user_id,
                active=row.get("is_active", row.get("active", True)) is not False,
                **{k: row.get(k) for k in PROFILE_FIELDS},
            )
        except ValidationError:
            logger.warning("user_profile_invalid", user_id=user_id)
            return None
