import pytest

from drasbot.services.state_machine import (
    ContextState,
    InvalidTransitionError,
    advance,
    can_transition,
    cancel,
    complete,
    discard,
    expire,
    start,
    transition,
)


class TestValidTransitions:
    def test_none_to_active(self):
        assert transition(ContextState.NONE, ContextState.ACTIVE) == ContextState.ACTIVE

    def test_active_to_active(self):
        assert transition(ContextState.ACTIVE, ContextState.ACTIVE) == ContextState.ACTIVE

    def test_active_to_none(self):
        assert transition(ContextState.ACTIVE, ContextState.NONE) == ContextState.NONE

    def test_active_to_expired(self):
        assert transition(ContextState.ACTIVE, ContextState.EXPIRED) == ContextState.EXPIRED

    def test_expired_to_none(self):
        assert transition(ContextState.EXPIRED, ContextState.NONE) == ContextState.NONE


class TestInvalidTransitions:
    def test_none_to_none(self):
        with pytest.raises(InvalidTransitionError):
            transition(ContextState.NONE, ContextState.NONE)

    def test_expired_to_active(self):
        with pytest.raises(InvalidTransitionError):
            transition(ContextState.EXPIRED, ContextState.ACTIVE)

    def test_error_carries_states(self):
        with pytest.raises(InvalidTransitionError) as exc_info:
            transition(ContextState.NONE, ContextState.EXPIRED)
        assert exc_info.value.from_state == ContextState.NONE
        assert exc_info.value.to_state == ContextState.EXPIRED
        assert "none -> expired" in str(exc_info.value)


class TestHelperFunctions:
    def test_start(self):
        assert start(ContextState.NONE) == ContextState.ACTIVE

    def test_start_while_active_fails(self):
        with pytest.raises(InvalidTransitionError):
            start(ContextState.ACTIVE)

    def test_advance(self):
        assert advance(ContextState.ACTIVE) == ContextState.ACTIVE

    def test_advance_expired_fails(self):
        with pytest.raises(InvalidTransitionError):
            advance(ContextState.EXPIRED)

    def test_complete(self):
        assert complete(ContextState.ACTIVE) == ContextState.NONE

    def test_cancel_without_context_fails(self):
        with pytest.raises(InvalidTransitionError):
            cancel(ContextState.NONE)

    def test_expire_then_discard(self):
        assert discard(expire(ContextState.ACTIVE)) == ContextState.NONE


class TestCanTransition:
    def test_valid_returns_true(self):
        assert can_transition(ContextState.NONE, ContextState.ACTIVE) is True

    def test_invalid_returns_false(self):
        assert can_transition(ContextState.EXPIRED, ContextState.ACTIVE) is False
