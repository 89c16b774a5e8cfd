"""Priority-ordered detectors that classify messages outside any context.

Predicates are pure functions of ``(message, user)``. The active set is
immutable; reconfiguration builds a new ``DetectorSet`` and swaps it in whole.
"""

import re
from dataclasses import dataclass, field
from typing import Callable, Iterable, Optional, Union

from drasbot.services.domain import Handler, InboundMessage, User
from drasbot.services.errors import RegistryConflictError
from drasbot.services.permissions import PermissionLevel, has_level

Predicate = Callable[[InboundMessage, User], bool]


@dataclass(frozen=True)
class StartContextRoute:
    context_type: str
    payload: dict = field(default_factory=dict)


@dataclass(frozen=True)
class HandlerRoute:
    name: str
    handler: Handler


@dataclass(frozen=True)
class CommandRoute:
    command: str
    pass_words_as_args: bool = False


DetectorRoute = Union[StartContextRoute, HandlerRoute, CommandRoute]


@dataclass(frozen=True)
class Detector:
    name: str
    priority: int
    predicate: Predicate
    route: DetectorRoute


def _fold(value: str) -> str:
    return " ".join(value.split()).casefold()


def keywords(*words: str) -> Predicate:
    """Whole message equals one of ``words`` (trimmed, case-insensitive)."""
    vocabulary = frozenset(_fold(word) for word in words if word.strip())

    def predicate(message: InboundMessage, user: User) -> bool:
        return message.normalized_text in vocabulary

    return predicate


def contains_phrase(*phrases: str) -> Predicate:
    """Any of ``phrases`` appears as whole words anywhere in the message."""
    patterns = [re.compile(r"(?<!\w)" + re.escape(_fold(p)) + r"(?!\w)") for p in phrases if p.strip()]

    def predicate(message: InboundMessage, user: User) -> bool:
        text = message.normalized_text
        return any(pattern.search(text) for pattern in patterns)

    return predicate


def matches(pattern: str, flags: int = re.IGNORECASE) -> Predicate:
    compiled = re.compile(pattern, flags)

    def predicate(message: InboundMessage, user: User) -> bool:
        return compiled.search(message.text) is not None

    return predicate


def min_level(level: PermissionLevel) -> Predicate:
    def predicate(message: InboundMessage, user: User) -> bool:
        return has_level(user.level, level)

    return predicate


def command_prefix(prefix: str, names: Optional[Iterable[str]] = None) -> Predicate:
    """Message starts with ``prefix``; optionally only for the given command names."""
    wanted = frozenset(name.casefold() for name in names) if names else None

    def predicate(message: InboundMessage, user: User) -> bool:
        text = message.text.strip()
        if not text.startswith(prefix):
            return False
        if wanted is None:
            return True
        token = text[len(prefix):].split(maxsplit=1)
        return bool(token) and token[0].casefold() in wanted

    return predicate


def recently_completed(context_type: str, grace_seconds: int) -> Predicate:
    """User finished ``context_type`` no more than ``grace_seconds`` before this message."""

    def predicate(message: InboundMessage, user: User) -> bool:
        if user.last_completed_context != context_type or user.last_completed_at is None:
            return False
        # A message queued behind the completing run arrived before it finished.
        elapsed = max(0.0, (message.timestamp - user.last_completed_at).total_seconds())
        return elapsed <= grace_seconds

    return predicate


def all_of(*predicates: Predicate) -> Predicate:
    def predicate(message: InboundMessage, user: User) -> bool:
        return all(p(message, user) for p in predicates)

    return predicate


def any_of(*predicates: Predicate) -> Predicate:
    def predicate(message: InboundMessage, user: User) -> bool:
        return any(p(message, user) for p in predicates)

    return predicate


class DetectorSet:
    """Detectors sorted by descending priority; equal priorities keep registration order."""

    def __init__(self, detectors: Iterable[Detector] = ()):
        detectors = list(detectors)
        seen: set[str] = set()
        for detector in detectors:
            if detector.name in seen:
                raise RegistryConflictError(f"Duplicate detector name: {detector.name}")
            seen.add(detector.name)
        # sorted() is stable, so registration order breaks ties.
        self._detectors = tuple(sorted(detectors, key=lambda d: -d.priority))

    def __iter__(self):
        return iter(self._detectors)

    def __len__(self) -> int:
        return len(self._detectors)

    @property
    def names(self) -> list[str]:
        return [d.name for d in self._detectors]

    def evaluate(self, message: InboundMessage, user: User) -> Optional[Detector]:
        for detector in self._detectors:
            if detector.predicate(message, user):
                return detector
        return None


class DetectorRegistry:
    """Holds the live DetectorSet. In-flight runs keep the set they read."""

    def __init__(self, detectors: Optional[DetectorSet] = None):
        self._current = detectors or DetectorSet()

    @property
    def current(self) -> DetectorSet:
        return self._current

    def swap(self, detectors: DetectorSet) -> DetectorSet:
        previous, self._current = self._current, detectors
        return previous
