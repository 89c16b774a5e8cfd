from enum import Enum


class ContextState(str, Enum):
    NONE = "none"
    ACTIVE = "active"
    # Never stored: derived when now - last_touched_at > ttl.
    EXPIRED = "expired"


VALID_TRANSITIONS = {
    ContextState.NONE: [ContextState.ACTIVE],
    ContextState.ACTIVE: [ContextState.ACTIVE, ContextState.NONE, ContextState.EXPIRED],
    ContextState.EXPIRED: [ContextState.NONE],
}


class InvalidTransitionError(Exception):
    def __init__(self, from_state: ContextState, to_state: ContextState):
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(f"Invalid transition: {from_state.value} -> {to_state.value}")


def can_transition(from_state: ContextState, to_state: ContextState) -> bool:
    """Check if transition is valid."""
    allowed = VALID_TRANSITIONS.get(from_state, [])
    return to_state in allowed


def transition(from_state: ContextState, to_state: ContextState) -> ContextState:
    """Perform state transition. Raises InvalidTransitionError if not allowed."""
    if not can_transition(from_state, to_state):
        raise InvalidTransitionError(from_state, to_state)
    return to_state


def start(current_state: ContextState) -> ContextState:
    """Bind a new context to a user with none. ACTIVE -> ACTIVE is for advancing only."""
    if current_state != ContextState.NONE:
        raise InvalidTransitionError(current_state, ContextState.ACTIVE)
    return transition(current_state, ContextState.ACTIVE)


def advance(current_state: ContextState) -> ContextState:
    """Owning handler moved the context forward."""
    return transition(current_state, ContextState.ACTIVE)


def complete(current_state: ContextState) -> ContextState:
    """Handler finished the flow."""
    return transition(current_state, ContextState.NONE)


def cancel(current_state: ContextState) -> ContextState:
    """User sent the cancellation token."""
    return transition(current_state, ContextState.NONE)


def expire(current_state: ContextState) -> ContextState:
    """TTL elapsed, found lazily or by the sweep."""
    return transition(current_state, ContextState.EXPIRED)


def discard(current_state: ContextState) -> ContextState:
    """Drop an expired context from the store."""
    return transition(current_state, ContextState.NONE)
