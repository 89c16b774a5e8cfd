from dataclasses import dataclass
from enum import IntEnum
from typing import Optional


class PermissionLevel(IntEnum):
    GUEST = 0
    USER = 1
    PREMIUM = 2
    ADMIN = 3
    SUPER_ADMIN = 4

    @property
    def label(self) -> str:
        return self.name.lower()

    @classmethod
    def parse(cls, value) -> "PermissionLevel":
        """Accept a member, its number, or its lower-case name."""
        if isinstance(value, PermissionLevel):
            return value
        if isinstance(value, int):
            return cls(value)
        if isinstance(value, str):
            key = value.strip().upper()
            if key in cls.__members__:
                return cls[key]
            if key.isdigit():
                return cls(int(key))
        raise ValueError(f"Unknown permission level: {value!r}")


@dataclass(frozen=True)
class RateLimitPolicy:
    # None means unlimited
    commands_per_minute: Optional[int]
    messages_per_hour: Optional[int]


DEFAULT_RATE_POLICIES = {
    PermissionLevel.GUEST: RateLimitPolicy(commands_per_minute=3, messages_per_hour=30),
    PermissionLevel.USER: RateLimitPolicy(commands_per_minute=10, messages_per_hour=200),
    PermissionLevel.PREMIUM: RateLimitPolicy(commands_per_minute=30, messages_per_hour=600),
    PermissionLevel.ADMIN: RateLimitPolicy(commands_per_minute=60, messages_per_hour=2000),
    PermissionLevel.SUPER_ADMIN: RateLimitPolicy(commands_per_minute=None, messages_per_hour=None),
}


def has_level(actual: PermissionLevel, required: PermissionLevel) -> bool:
    return int(actual) >= int(required)
