from enum import Enum


class OwnershipState(str, Enum):
    """Who currently answers the customer on a conversation."""

    BOT_ACTIVE = "bot_active"
    PENDING = "pending"  # transferred, waiting for an agent
    AGENT_ACTIVE = "agent_active"


class ConversationStatus(str, Enum):
    ACTIVE = "active"
    IN_PROGRESS = "in_progress"
    FINISHED = "finished"


# The bot never takes a conversation back once it has been transferred.
VALID_TRANSITIONS = {
    OwnershipState.BOT_ACTIVE: [OwnershipState.PENDING],
    OwnershipState.PENDING: [OwnershipState.AGENT_ACTIVE],
    OwnershipState.AGENT_ACTIVE: [OwnershipState.PENDING],
}

HUMAN_OWNED_STATES = {OwnershipState.PENDING, OwnershipState.AGENT_ACTIVE}


class InvalidTransitionError(Exception):
    def __init__(self, from_state: OwnershipState, to_state: OwnershipState):
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(f"Invalid transition: {from_state.value} -> {to_state.value}")


def can_transition(from_state: OwnershipState, to_state: OwnershipState) -> bool:
    """Check if transition is valid."""
    allowed = VALID_TRANSITIONS.get(from_state, [])
    return to_state in allowed


def transition(from_state: OwnershipState, to_state: OwnershipState) -> OwnershipState:
    """Perform state transition. Raises InvalidTransitionError if not allowed."""
    if not can_transition(from_state, to_state):
        raise InvalidTransitionError(from_state, to_state)
    return to_state


def transfer_to_humans(current_state: OwnershipState) -> OwnershipState:
    """Bot hands the conversation over; it waits for an agent."""
    return transition(current_state, OwnershipState.PENDING)


def agent_take(current_state: OwnershipState) -> OwnershipState:
    return transition(current_state, OwnershipState.AGENT_ACTIVE)


def agent_release(current_state: OwnershipState) -> OwnershipState:
    """Agent puts the conversation back in the waiting queue."""
    return transition(current_state, OwnershipState.PENDING)


def is_human_owned(state: str | None) -> bool:
    if not state:
        return False
    try:
        return OwnershipState(state) in HUMAN_OWNED_STATES
    except ValueError:
        return False
