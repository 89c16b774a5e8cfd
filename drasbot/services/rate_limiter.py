import math
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from drasbot.services.domain import User
from drasbot.services.permissions import DEFAULT_RATE_POLICIES, PermissionLevel, RateLimitPolicy

MINUTE = 60.0
HOUR = 3600.0


@dataclass(frozen=True)
class RateDecision:
    allowed: bool
    notify: bool = False
    retry_after_seconds: int = 0
    scope: Optional[str] = None  # messages, commands


class RateLimiter:
    """Sliding-window quotas per permission level.

    Counters live on the User so they persist with it. Only the first
    over-limit message in a window gets a notice; the rest are dropped silently.
    """

    def __init__(self, policies: Optional[dict[PermissionLevel, RateLimitPolicy]] = None, enabled: bool = True):
        self.policies = dict(DEFAULT_RATE_POLICIES)
        if policies:
            self.policies.update(policies)
        self.enabled = enabled

    def policy_for(self, user: User) -> RateLimitPolicy:
        return self.policies.get(user.level, DEFAULT_RATE_POLICIES[PermissionLevel.USER])

    def check(self, user: User, now: datetime, is_command: bool) -> RateDecision:
        """Count this message against the user's windows. Mutates ``user.rate``."""
        if not self.enabled:
            return RateDecision(allowed=True)
        ts = now.timestamp()
        counters = user.rate
        counters.message_hits = [hit for hit in counters.message_hits if ts - hit < HOUR]
        counters.command_hits = [hit for hit in counters.command_hits if ts - hit < MINUTE]
        policy = self.policy_for(user)

        retry_after = None
        scope = None
        if policy.messages_per_hour is not None and len(counters.message_hits) >= policy.messages_per_hour:
            retry_after = counters.message_hits[0] + HOUR - ts
            scope = "messages"
        elif (
            is_command
            and policy.commands_per_minute is not None
            and len(counters.command_hits) >= policy.commands_per_minute
        ):
            retry_after = counters.command_hits[0] + MINUTE - ts
            scope = "commands"

        if retry_after is not None:
            notify = counters.notified_until is None or ts >= counters.notified_until
            if notify:
                counters.notified_until = ts + retry_after
            return RateDecision(
                allowed=False,
                notify=notify,
                retry_after_seconds=max(1, math.ceil(retry_after)),
                scope=scope,
            )

        counters.message_hits.append(ts)
        if is_command:
            counters.command_hits.append(ts)
        counters.notified_until = None
        return RateDecision(allowed=True)
