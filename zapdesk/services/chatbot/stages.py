"""Stage handlers of the scripted chatbot.

Each handler is ``handle(turn, context) -> StageResult`` and never touches the database;
the engine persists whatever the handler decides.
"""

from dataclasses import dataclass, field
from typing import Callable, Optional

from zapdesk.schemas.outbound import OutboundMessage
from zapdesk.services.chatbot.context import ChatContext
from zapdesk.services.nlp_service import Intent, NLPResult

STAGE_START = "start"
STAGE_AWAITING_OPTION = "awaiting_option"
STAGE_COLLECTING_NAME_PRODUCTS = "collecting_name_products"
STAGE_COLLECTING_NAME_SUPPORT = "collecting_name_support"
STAGE_COLLECTING_PRODUCT_INTEREST = "collecting_product_interest"
STAGE_COLLECTING_SUPPORT_ISSUE = "collecting_support_issue"
STAGE_AFTER_HOURS_INFO = "after_hours_info"
STAGE_COMPLETED = "completed"

MAX_INVALID_ATTEMPTS = 3
MENU_NLP_CONFIDENCE = 0.5
FALLBACK_NLP_CONFIDENCE = 0.6

MENU_OPTIONS = (
    "1️⃣ Informações sobre produtos\n"
    "2️⃣ Suporte técnico\n"
    "3️⃣ Falar com atendente\n"
    "4️⃣ Horário de funcionamento"
)

MSG_GREETING_MENU = (
    "Olá {name}! 👋 Que bom te ver por aqui!\n\n"
    "Sou o assistente virtual e estou aqui para ajudá-lo. Como posso te ajudar hoje?\n\n"
    f"{MENU_OPTIONS}\n\nDigite o número da opção desejada:"
)
MSG_WELCOME_MENU = (
    "Olá {name}! 👋\n\n"
    "Sou o assistente virtual da nossa empresa. Como posso ajudá-lo hoje?\n\n"
    f"{MENU_OPTIONS}\n\nDigite o número da opção desejada:"
)
MSG_MENU = f"Como posso ajudá-lo hoje?\n\n{MENU_OPTIONS}\n\nDigite o número da opção desejada:"
MSG_START_PRODUCTS = "Olá {name}! 👋 Vejo que você tem interesse em nossos produtos!\n\nPara te ajudar melhor, qual é o seu nome completo?"
MSG_START_SUPPORT = "Olá {name}! 👋 Entendi que você precisa de suporte.\n\nPara melhor atendê-lo, qual é o seu nome completo?"
MSG_ASK_NAME_PRODUCTS = (
    "📋 Ótimo! Temos diversos produtos disponíveis.\n\n"
    "Poderia me informar seu nome completo para um atendimento mais personalizado?"
)
MSG_ASK_NAME_SUPPORT = (
    "🛠️ Entendi que você precisa de suporte técnico.\n\n"
    "Para melhor ajudá-lo, preciso de algumas informações. Qual é o seu nome completo?"
)
MSG_NLP_ASK_NAME_PRODUCTS = "📋 Entendi que você tem interesse em nossos produtos! Qual é o seu nome completo?"
MSG_NLP_ASK_NAME_SUPPORT = "🛠️ Vou ajudá-lo com o suporte. Primeiro, qual é o seu nome completo?"
MSG_TRANSFER_DIRECT = "👨‍💼 Perfeito! Vou conectá-lo com um de nossos atendentes.\n\nPor favor, aguarde um momento..."
MSG_TRANSFER_UNCLEAR = "🤔 Entendi. Vou conectá-lo com um atendente para melhor ajudá-lo."
MSG_TRANSFER_REPEATED_INVALID = "🤔 Parece que não estou conseguindo entender. Vou conectá-lo com um atendente."
MSG_BUSINESS_HOURS = (
    "🕐 Nosso horário de funcionamento:\n\n"
    "📅 Segunda a Sexta: 8h às 18h\n"
    "📅 Sábado: 8h às 12h\n"
    "📅 Domingo: Fechado\n\n"
    "Posso ajudá-lo com mais alguma coisa?\n\n"
    "1️⃣ Voltar ao menu principal\n"
    "2️⃣ Falar com atendente"
)
MSG_INVALID_OPTION = f"❌ Opção inválida. Por favor, digite apenas o número da opção desejada:\n\n{MENU_OPTIONS}"
MSG_INVALID_AFTER_HOURS = "❌ Opção inválida. Digite:\n\n1️⃣ Voltar ao menu principal\n2️⃣ Falar com atendente"
MSG_NAME_PRODUCTS = "Prazer em conhecê-lo, {name}! 😊\n\n{interest}Agora me conte, qual tipo de produto você gostaria de conhecer melhor?\n\n🔍 Digite sua dúvida ou interesse específico:"
MSG_NAME_SUPPORT_URGENT = (
    "Olá {name}! 👋\n\n"
    "Percebo que sua situação requer atenção urgente. Vou conectá-lo imediatamente com nossa equipe de suporte especializada.\n\n"
    "Aguarde um momento..."
)
MSG_NAME_SUPPORT = (
    "Olá {name}! 👋\n\n"
    "Para oferecer o melhor suporte, preciso entender melhor sua situação.\n\n"
    "📝 Descreva brevemente o problema que está enfrentando:"
)
MSG_PRODUCT_INTEREST = (
    'Entendi seu interesse em "{text}". 📋\n\n'
    "Vou conectá-lo com nosso especialista em produtos para que ele possa fornecer informações "
    "detalhadas e personalizadas sobre exatamente o que você precisa.\n\n"
    "Aguarde um momento, por favor..."
)
MSG_SUPPORT_ISSUE = (
    "Obrigado pelas informações, {name}. 🛠️\n\n"
    "Vou transferir você para nossa equipe de suporte técnico especializada que tem experiência com esse tipo de situação.\n\n"
    'Eles terão acesso ao seu problema: "{text}"\n\n'
    "Aguarde um momento..."
)
MSG_AFTER_HOURS_TRANSFER = "👨‍💼 Vou conectá-lo com um atendente. Aguarde um momento..."
MSG_FALLBACK_WITH_INTENT = (
    "Entendi que você precisa de ajuda com: {intent}. Vou conectá-lo com um atendente especializado para melhor atendê-lo."
)
MSG_FALLBACK = (
    "🤔 Parece que algo deu errado ou não consegui entender completamente. "
    "Vou conectá-lo com um atendente para melhor ajudá-lo."
)


@dataclass
class TurnInput:
    text: str
    phone: str
    user_name: str = "Cliente"
    nlp: NLPResult = field(default_factory=NLPResult)

    @property
    def option(self) -> str:
        return (self.text or "").strip()


@dataclass
class TransferDecision:
    reason: str
    department: Optional[str] = None


@dataclass
class StageResult:
    next_stage: str
    context: ChatContext
    outbound: list[OutboundMessage] = field(default_factory=list)
    transfer: Optional[TransferDecision] = None


StageHandler = Callable[[TurnInput, ChatContext], StageResult]


def _reply(turn: TurnInput, text: str) -> OutboundMessage:
    return OutboundMessage(type="text", phone=turn.phone, data={"message": text})


def _advance(turn: TurnInput, context: ChatContext, next_stage: str, text: str) -> StageResult:
    context.invalid_attempts = 0
    return StageResult(next_stage=next_stage, context=context, outbound=[_reply(turn, text)])


def _transfer(
    turn: TurnInput,
    context: ChatContext,
    text: str,
    reason: str,
    department: Optional[str] = None,
) -> StageResult:
    context.transfer_reason = reason
    if department:
        context.department = department
    return StageResult(
        next_stage=STAGE_COMPLETED,
        context=context,
        outbound=[_reply(turn, text)],
        transfer=TransferDecision(reason=reason, department=department),
    )


def _reprompt(turn: TurnInput, context: ChatContext, stage: str, text: str) -> StageResult:
    context.invalid_attempts += 1
    if context.invalid_attempts >= MAX_INVALID_ATTEMPTS:
        return _transfer(turn, context, MSG_TRANSFER_REPEATED_INVALID, "Opção inválida repetida")
    return StageResult(next_stage=stage, context=context, outbound=[_reply(turn, text)])


def handle_start(turn: TurnInput, context: ChatContext) -> StageResult:
    name = context.name or turn.user_name
    intent = turn.nlp.intent

    if intent == Intent.GREETING.value:
        return _advance(turn, context, STAGE_AWAITING_OPTION, MSG_GREETING_MENU.format(name=name))
    if intent == Intent.PRODUCT_INQUIRY.value:
        return _advance(turn, context, STAGE_COLLECTING_NAME_PRODUCTS, MSG_START_PRODUCTS.format(name=name))
    if intent == Intent.SUPPORT_REQUEST.value:
        return _advance(turn, context, STAGE_COLLECTING_NAME_SUPPORT, MSG_START_SUPPORT.format(name=name))
    return _advance(turn, context, STAGE_AWAITING_OPTION, MSG_WELCOME_MENU.format(name=name))


def handle_awaiting_option(turn: TurnInput, context: ChatContext) -> StageResult:
    option = turn.option
    nlp = turn.nlp

    if option == "1" or nlp.intent == Intent.PRODUCT_INQUIRY.value:
        return _advance(turn, context, STAGE_COLLECTING_NAME_PRODUCTS, MSG_ASK_NAME_PRODUCTS)
    if option == "2" or nlp.intent == Intent.SUPPORT_REQUEST.value:
        return _advance(turn, context, STAGE_COLLECTING_NAME_SUPPORT, MSG_ASK_NAME_SUPPORT)
    if option == "3":
        return _transfer(turn, context, MSG_TRANSFER_DIRECT, "Solicitação direta do cliente")
    if option == "4":
        return _advance(turn, context, STAGE_AFTER_HOURS_INFO, MSG_BUSINESS_HOURS)

    if nlp.confidence > MENU_NLP_CONFIDENCE:
        if nlp.intent == Intent.PRODUCT_INQUIRY.value:
            return _advance(turn, context, STAGE_COLLECTING_NAME_PRODUCTS, MSG_NLP_ASK_NAME_PRODUCTS)
        if nlp.intent == Intent.SUPPORT_REQUEST.value:
            return _advance(turn, context, STAGE_COLLECTING_NAME_SUPPORT, MSG_NLP_ASK_NAME_SUPPORT)
        return _transfer(
            turn, context, MSG_TRANSFER_UNCLEAR, "NLP não conseguiu interpretar claramente a solicitação"
        )

    return _reprompt(turn, context, STAGE_AWAITING_OPTION, MSG_INVALID_OPTION)


def handle_collecting_name_products(turn: TurnInput, context: ChatContext) -> StageResult:
    context.name = turn.option
    context.product_interest = turn.nlp.parameters.get("product_mentioned") or "Geral"
    interest = ""
    if context.product_interest != "Geral":
        interest = f"Vejo que você tem interesse especial em: {context.product_interest}\n\n"
    return _advance(
        turn,
        context,
        STAGE_COLLECTING_PRODUCT_INTEREST,
        MSG_NAME_PRODUCTS.format(name=context.name, interest=interest),
    )


def handle_collecting_name_support(turn: TurnInput, context: ChatContext) -> StageResult:
    context.name = turn.option
    if turn.nlp.parameters.get("urgency_level") == "high":
        return _transfer(
            turn,
            context,
            MSG_NAME_SUPPORT_URGENT.format(name=context.name),
            "Suporte técnico de alta urgência",
            "Suporte Urgente",
        )
    return _advance(turn, context, STAGE_COLLECTING_SUPPORT_ISSUE, MSG_NAME_SUPPORT.format(name=context.name))


def handle_collecting_product_interest(turn: TurnInput, context: ChatContext) -> StageResult:
    context.product_details = turn.option
    return _transfer(
        turn,
        context,
        MSG_PRODUCT_INTEREST.format(text=turn.option),
        "Interesse em produtos",
        "Vendas",
    )


def handle_collecting_support_issue(turn: TurnInput, context: ChatContext) -> StageResult:
    context.support_issue = turn.option
    return _transfer(
        turn,
        context,
        MSG_SUPPORT_ISSUE.format(name=context.name or turn.user_name, text=turn.option),
        "Suporte técnico",
        "Suporte",
    )


def handle_after_hours_info(turn: TurnInput, context: ChatContext) -> StageResult:
    if turn.option == "1":
        return _advance(turn, context, STAGE_AWAITING_OPTION, MSG_MENU)
    if turn.option == "2":
        return _transfer(turn, context, MSG_AFTER_HOURS_TRANSFER, "Solicitação após informações de horário")
    return _reprompt(turn, context, STAGE_AFTER_HOURS_INFO, MSG_INVALID_AFTER_HOURS)


def handle_unknown_stage(turn: TurnInput, context: ChatContext) -> StageResult:
    if turn.nlp.intent and turn.nlp.confidence > FALLBACK_NLP_CONFIDENCE:
        text = MSG_FALLBACK_WITH_INTENT.format(intent=turn.nlp.intent)
    else:
        text = MSG_FALLBACK
    return _transfer(turn, context, text, "Erro no fluxo do chatbot ou intenção não clara")


STAGE_HANDLERS: dict[str, StageHandler] = {
    STAGE_START: handle_start,
    STAGE_AWAITING_OPTION: handle_awaiting_option,
    STAGE_COLLECTING_NAME_PRODUCTS: handle_collecting_name_products,
    STAGE_COLLECTING_NAME_SUPPORT: handle_collecting_name_support,
    STAGE_COLLECTING_PRODUCT_INTEREST: handle_collecting_product_interest,
    STAGE_COLLECTING_SUPPORT_ISSUE: handle_collecting_support_issue,
    STAGE_AFTER_HOURS_INFO: handle_after_hours_info,
}


def get_stage_handler(stage: Optional[str]) -> StageHandler:
    """Handler for a stage; anything unknown (including completed) hands off to a human."""
    return STAGE_HANDLERS.get(stage or "", handle_unknown_stage)
