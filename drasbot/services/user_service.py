from datetime import datetime
from typing import Iterable

from drasbot.logging_config import get_logger
from drasbot.services.domain import User
from drasbot.services.errors import NotFoundError
from drasbot.services.permissions import PermissionLevel
from drasbot.services.ports import PersistencePort

logger = get_logger("user_service")


def normalize_identity(value: str) -> str:
    """Bare channel address: strip whitespace and any ``@server`` suffix."""
    value = (value or "").strip()
    if "@" in value:
        value = value.split("@", 1)[0]
    if ":" in value:
        # device suffix, e.g. 34600111222:12
        value = value.split(":", 1)[0]
    return value


class UserDirectory:
    """Resolves identities to User records, creating them on first contact."""

    def __init__(
        self,
        persistence: PersistencePort,
        default_level: PermissionLevel = PermissionLevel.USER,
        super_admins: Iterable[str] = (),
        allow_new_users: bool = True,
    ):
        self.persistence = persistence
        self.default_level = default_level
        self.super_admins = {normalize_identity(identity) for identity in super_admins}
        self.allow_new_users = allow_new_users

    async def resolve(self, identity: str, now: datetime) -> User:
        """Load or build the user and stamp this interaction. Nothing is written here."""
        user = await self.persistence.get_user(identity)
        if user is None:
            user = self.build_new(identity, now)
        user.message_count += 1
        user.last_seen_at = now
        return user

    def build_new(self, identity: str, now: datetime) -> User:
        if identity in self.super_admins:
            level = PermissionLevel.SUPER_ADMIN
        elif self.allow_new_users:
            level = self.default_level
        else:
            raise NotFoundError(f"unknown user {identity}", template_key="errors.unknown_user")
        logger.info("New user", extra={"context": {"identity": identity, "level": level.label}})
        return User(identity=identity, level=level, created_at=now)
