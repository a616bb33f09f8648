from zapdesk.models.automation_trigger import AutomationTrigger
from zapdesk.models.chatbot_flow import ChatbotFlow
from zapdesk.models.chatbot_log import ChatbotLog
from zapdesk.models.chatbot_state import ChatbotState
from zapdesk.models.company import Company
from zapdesk.models.contact import Contact
from zapdesk.models.conversation import Conversation
from zapdesk.models.failed_message import FailedMessage
from zapdesk.models.message import Message
from zapdesk.models.nlp_intent import NlpIntent
from zapdesk.models.queued_message import QueuedMessage
from zapdesk.models.trigger_activation import TriggerActivation

__all__ = [
    "Company",
    "Contact",
    "Conversation",
    "Message",
    "ChatbotState",
    "ChatbotFlow",
    "ChatbotLog",
    "NlpIntent",
    "AutomationTrigger",
    "TriggerActivation",
    "QueuedMessage",
    "FailedMessage",
]
