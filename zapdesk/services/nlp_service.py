"""Best-effort intent classification for inbound customer text.

Two sources are combined:
- configured intents (per-tenant training phrases, word-overlap score)
- an optional LLM classification over a fixed vocabulary

Nothing here may block a conversation: every failure degrades to "no signal".
"""

import json
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Iterable, Optional

from sqlalchemy.orm import Session

from zapdesk.config import settings
from zapdesk.logging_config import get_logger
from zapdesk.models import NlpIntent
from zapdesk.services.llm import LLMProvider, OpenAIProvider

logger = get_logger("nlp_service")

OVERRIDE_CONFIDENCE = 0.7  # configured match forces the flow at or above this
LLM_MIN_CONFIDENCE = 0.7  # LLM result is used only above this
MIN_WORD_LENGTH = 3


class Intent(str, Enum):
    PRODUCT_INQUIRY = "product_inquiry"
    SUPPORT_REQUEST = "support_request"
    COMPLAINT = "complaint"
    GREETING = "greeting"
    APPOINTMENT = "appointment"
    PAYMENT = "payment"
    OTHER = "other"


LLM_INTENTS = {intent.value for intent in Intent}

CLASSIFY_PROMPT = """Você é um classificador de intenções para atendimento ao cliente via WhatsApp.
Analise a mensagem do cliente e responda APENAS com um objeto JSON no formato:
{{"intent": "<intenção>", "confidence": <0 a 1>, "parameters": {{"product_mentioned": "<produto ou null>", "urgency_level": "<low|medium|high>", "emotion": "<positive|neutral|negative>"}}}}

Intenções possíveis: product_inquiry, support_request, complaint, greeting, appointment, payment, other.

Estágio atual da conversa: {stage}
Mensagem: {message}"""


@dataclass
class NLPResult:
    intent: Optional[str] = None
    confidence: float = 0.0
    parameters: dict[str, Any] = field(default_factory=dict)
    target_stage: Optional[str] = None
    should_override_flow: bool = False
    source: Optional[str] = None  # configured, llm

    @classmethod
    def no_signal(cls) -> "NLPResult":
        return cls()

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def _words(text: str) -> list[str]:
    return [word for word in (text or "").lower().split() if len(word) >= MIN_WORD_LENGTH]


def calculate_similarity(text1: str, text2: str) -> float:
    """Share of words (3+ chars) of the longer text that appear in both."""
    words1 = _words(text1)
    words2 = _words(text2)
    if not words1 or not words2:
        return 0.0
    common = [word for word in words1 if word in words2]
    return len(common) / max(len(words1), len(words2))


def match_configured_intents(message: str, intents: Iterable[Any]) -> Optional[NLPResult]:
    """Best configured intent whose phrase score reaches its own threshold."""
    best: Optional[NLPResult] = None
    for intent in intents:
        threshold = float(intent.confidence_threshold or 0)
        for phrase in intent.training_phrases or []:
            score = calculate_similarity(message, phrase)
            if score >= threshold and (best is None or score > best.confidence):
                best = NLPResult(
                    intent=intent.intent_name,
                    confidence=score,
                    parameters=dict(intent.parameters or {}),
                    target_stage=intent.target_stage,
                    source="configured",
                )
    return best


def load_configured_intents(db: Session, company_id) -> list[NlpIntent]:
    if company_id is None:
        return []
    return (
        db.query(NlpIntent)
        .filter(NlpIntent.company_id == company_id, NlpIntent.active.is_(True))
        .all()
    )


def get_llm_provider() -> Optional[LLMProvider]:
    """LLM provider, or None when no API key is configured."""
    if not settings.openai_api_key:
        return None
    return OpenAIProvider(
        api_key=settings.openai_api_key,
        default_model=settings.openai_model,
        base_url=settings.openai_base_url,
    )


def parse_llm_classification(content: str) -> NLPResult:
    data = json.loads(content)
    if not isinstance(data, dict):
        raise ValueError("classification is not a JSON object")

    intent = str(data.get("intent") or Intent.OTHER.value).strip().lower()
    if intent not in LLM_INTENTS:
        intent = Intent.OTHER.value

    confidence = float(data.get("confidence") or 0)
    confidence = min(max(confidence, 0.0), 1.0)

    parameters = data.get("parameters")
    if not isinstance(parameters, dict):
        parameters = {}

    return NLPResult(intent=intent, confidence=confidence, parameters=parameters, source="llm")


def classify_with_llm(provider: LLMProvider, message: str, stage: Optional[str] = None) -> NLPResult:
    prompt = CLASSIFY_PROMPT.format(message=message, stage=stage or "start")
    response = provider.generate(
        [{"role": "user", "content": prompt}],
        temperature=0.3,
        max_tokens=200,
        json_output=True,
    )
    return parse_llm_classification(response.content)


def combine_results(configured: Optional[NLPResult], llm: Optional[NLPResult]) -> NLPResult:
    llm_confidence = llm.confidence if llm else 0.0

    if configured and configured.confidence > llm_confidence:
        configured.should_override_flow = configured.confidence >= OVERRIDE_CONFIDENCE
        return configured

    if llm and llm.confidence > LLM_MIN_CONFIDENCE:
        llm.should_override_flow = True
        return llm

    return NLPResult.no_signal()


def analyze_message(
    db: Session,
    message: str,
    *,
    company_id=None,
    stage: Optional[str] = None,
    provider: Optional[LLMProvider] = None,
) -> NLPResult:
    """Classify a customer message. Never raises."""
    configured = None
    try:
        configured = match_configured_intents(message, load_configured_intents(db, company_id))
    except Exception as e:
        logger.warning(f"Configured intent matching failed: {e}", extra={"context": {"company_id": str(company_id)}})

    llm_result = None
    try:
        provider = provider or get_llm_provider()
        if provider is not None:
            llm_result = classify_with_llm(provider, message, stage)
    except Exception as e:
        logger.warning(f"LLM intent classification failed: {e}")

    result = combine_results(configured, llm_result)
    logger.debug(
        "NLP analysis",
        extra={
            "context": {
                "intent": result.intent,
                "confidence": result.confidence,
                "source": result.source,
                "override": result.should_override_flow,
            }
        },
    )
    return result
