from datetime import datetime, timedelta, timezone

import pytest

from drasbot.services.detectors import (
    CommandRoute,
    Detector,
    DetectorRegistry,
    DetectorSet,
    HandlerRoute,
    StartContextRoute,
    all_of,
    any_of,
    command_prefix,
    contains_phrase,
    keywords,
    matches,
    min_level,
    recently_completed,
)
from drasbot.services.domain import HandlerReply, InboundMessage, User
from drasbot.services.errors import RegistryConflictError
from drasbot.services.permissions import PermissionLevel

T0 = datetime(2026, 1, 5, 12, 0, 0, tzinfo=timezone.utc)


def _message(text: str, at=T0) -> InboundMessage:
    return InboundMessage(identity="34600111222", text=text, timestamp=at)


def _user(level=PermissionLevel.USER, **kwargs) -> User:
    return User(identity="34600111222", level=level, **kwargs)


async def _noop(call):
    return HandlerReply(text="noop")


class TestPredicates:
    def test_keywords_trim_and_case(self):
        predicate = keywords("Hola", "buenos dias")
        assert predicate(_message("  HOLA  "), _user()) is True
        assert predicate(_message("buenos   DIAS"), _user()) is True
        assert predicate(_message("hola amigo"), _user()) is False

    def test_contains_phrase_whole_words(self):
        predicate = contains_phrase("registrarme")
        assert predicate(_message("Quiero registrarme ya"), _user()) is True
        assert predicate(_message("registrarmexx"), _user()) is False

    def test_matches_regex(self):
        predicate = matches(r"^\d{4}$")
        assert predicate(_message("1234"), _user()) is True
        assert predicate(_message("12345"), _user()) is False

    def test_min_level(self):
        predicate = min_level(PermissionLevel.ADMIN)
        assert predicate(_message("x"), _user(PermissionLevel.ADMIN)) is True
        assert predicate(_message("x"), _user(PermissionLevel.SUPER_ADMIN)) is True
        assert predicate(_message("x"), _user(PermissionLevel.PREMIUM)) is False

    def test_command_prefix(self):
        assert command_prefix("!")(_message("!anything"), _user()) is True
        assert command_prefix("!", ["help"])(_message("!HELP me"), _user()) is True
        assert command_prefix("!", ["help"])(_message("!status"), _user()) is False
        assert command_prefix("!")(_message("help"), _user()) is False

    def test_recently_completed_inside_grace(self):
        predicate = recently_completed("registration", 60)
        user = _user(last_completed_context="registration", last_completed_at=T0)
        assert predicate(_message("x", at=T0 + timedelta(seconds=60)), user) is True
        assert predicate(_message("x", at=T0 + timedelta(seconds=61)), user) is False

    def test_recently_completed_message_queued_behind_completion(self):
        predicate = recently_completed("registration", 60)
        user = _user(last_completed_context="registration", last_completed_at=T0 + timedelta(seconds=2))
        assert predicate(_message("x", at=T0), user) is True

    def test_recently_completed_other_type(self):
        predicate = recently_completed("registration", 60)
        user = _user(last_completed_context="survey", last_completed_at=T0)
        assert predicate(_message("x", at=T0), user) is False

    def test_combinators(self):
        both = all_of(keywords("hola"), min_level(PermissionLevel.ADMIN))
        either = any_of(keywords("hola"), min_level(PermissionLevel.ADMIN))
        assert both(_message("hola"), _user()) is False
        assert either(_message("hola"), _user()) is True


class TestDetectorSet:
    def test_higher_priority_wins(self):
        low = Detector("low", 1, keywords("hola"), HandlerRoute("low", _noop))
        high = Detector("high", 5, keywords("hola"), StartContextRoute("registration"))
        detectors = DetectorSet([low, high])
        assert detectors.evaluate(_message("hola"), _user()) is high

    def test_tie_goes_to_first_registered(self):
        first = Detector("first", 10, keywords("hola"), HandlerRoute("first", _noop))
        second = Detector("second", 10, keywords("hola"), HandlerRoute("second", _noop))
        assert DetectorSet([first, second]).evaluate(_message("hola"), _user()) is first
        assert DetectorSet([second, first]).evaluate(_message("hola"), _user()) is second

    def test_no_match_returns_none(self):
        detectors = DetectorSet([Detector("greet", 1, keywords("hola"), HandlerRoute("g", _noop))])
        assert detectors.evaluate(_message("adios"), _user()) is None

    def test_evaluation_is_repeatable(self):
        detectors = DetectorSet(
            [
                Detector("a", 3, contains_phrase("ayuda"), CommandRoute("help")),
                Detector("b", 3, keywords("ayuda"), HandlerRoute("b", _noop)),
            ]
        )
        message, user = _message("ayuda"), _user()
        assert detectors.evaluate(message, user) is detectors.evaluate(message, user)

    def test_duplicate_names_rejected(self):
        detector = Detector("same", 1, keywords("x"), CommandRoute("help"))
        with pytest.raises(RegistryConflictError):
            DetectorSet([detector, Detector("same", 2, keywords("y"), CommandRoute("help"))])

    def test_names_in_evaluation_order(self):
        detectors = DetectorSet(
            [
                Detector("a", 1, keywords("x"), CommandRoute("help")),
                Detector("b", 9, keywords("x"), CommandRoute("help")),
                Detector("c", 1, keywords("x"), CommandRoute("help")),
            ]
        )
        assert detectors.names == ["b", "a", "c"]


class TestDetectorRegistry:
    def test_swap_replaces_whole_set(self):
        old = DetectorSet([Detector("old", 1, keywords("hola"), CommandRoute("help"))])
        new = DetectorSet([Detector("new", 1, keywords("hola"), CommandRoute("status"))])
        registry = DetectorRegistry(old)
        snapshot = registry.current

        previous = registry.swap(new)

        assert previous is old
        assert registry.current is new
        assert snapshot.evaluate(_message("hola"), _user()).name == "old"
