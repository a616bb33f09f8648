from zapdesk.services.llm.base import LLMError, LLMProvider, LLMResponse
from zapdesk.services.llm.openai_provider import OpenAIProvider

__all__ = ["LLMError", "LLMProvider", "LLMResponse", "OpenAIProvider"]
