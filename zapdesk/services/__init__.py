from zapdesk.services.conversation_service import (
    get_or_create_contact,
    get_or_create_conversation,
    save_message,
)
from zapdesk.services.state_machine import (
    ConversationStatus,
    InvalidTransitionError,
    OwnershipState,
    agent_release,
    agent_take,
    can_transition,
    transfer_to_humans,
    transition,
)
