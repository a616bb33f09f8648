from zapdesk.services.chatbot.context import ChatContext
from zapdesk.services.chatbot.stages import STAGE_HANDLERS, StageResult, TransferDecision, TurnInput, get_stage_handler

__all__ = ["ChatContext", "STAGE_HANDLERS", "StageResult", "TransferDecision", "TurnInput", "get_stage_handler"]
