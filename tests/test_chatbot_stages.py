from zapdesk.services.chatbot.context import ChatContext
from zapdesk.services.chatbot.stages import (
    MAX_INVALID_ATTEMPTS,
    STAGE_AFTER_HOURS_INFO,
    STAGE_AWAITING_OPTION,
    STAGE_COLLECTING_NAME_PRODUCTS,
    STAGE_COLLECTING_NAME_SUPPORT,
    STAGE_COLLECTING_PRODUCT_INTEREST,
    STAGE_COLLECTING_SUPPORT_ISSUE,
    STAGE_COMPLETED,
    STAGE_START,
    TurnInput,
    get_stage_handler,
)
from zapdesk.services.nlp_service import NLPResult

PHONE = "5511999999999"


def run(stage, text, context=None, nlp=None):
    turn = TurnInput(text=text, phone=PHONE, user_name="Maria", nlp=nlp or NLPResult())
    return get_stage_handler(stage)(turn, context or ChatContext(name="Maria", phone=PHONE))


class TestStartStage:
    def test_no_intent_shows_welcome_menu(self):
        result = run(STAGE_START, "oi")
        assert result.next_stage == STAGE_AWAITING_OPTION
        assert len(result.outbound) == 1
        assert "Maria" in result.outbound[0].data["message"]
        assert result.transfer is None

    def test_greeting_intent_shows_greeting_menu(self):
        result = run(STAGE_START, "bom dia", nlp=NLPResult(intent="greeting", confidence=0.9))
        assert result.next_stage == STAGE_AWAITING_OPTION
        assert "Que bom te ver" in result.outbound[0].data["message"]

    def test_product_intent_skips_menu(self):
        result = run(STAGE_START, "quero comprar", nlp=NLPResult(intent="product_inquiry", confidence=0.9))
        assert result.next_stage == STAGE_COLLECTING_NAME_PRODUCTS

    def test_support_intent_skips_menu(self):
        result = run(STAGE_START, "não funciona", nlp=NLPResult(intent="support_request", confidence=0.9))
        assert result.next_stage == STAGE_COLLECTING_NAME_SUPPORT


class TestAwaitingOption:
    def test_option_one_goes_to_products(self):
        result = run(STAGE_AWAITING_OPTION, "1")
        assert result.next_stage == STAGE_COLLECTING_NAME_PRODUCTS

    def test_option_two_goes_to_support_with_one_text(self):
        result = run(STAGE_AWAITING_OPTION, "2")
        assert result.next_stage == STAGE_COLLECTING_NAME_SUPPORT
        assert len(result.outbound) == 1
        assert result.outbound[0].type == "text"
        assert result.outbound[0].phone == PHONE
        assert result.transfer is None

    def test_option_three_transfers(self):
        result = run(STAGE_AWAITING_OPTION, "3")
        assert result.transfer is not None
        assert result.transfer.reason == "Solicitação direta do cliente"
        assert result.next_stage == STAGE_COMPLETED

    def test_option_four_shows_business_hours(self):
        result = run(STAGE_AWAITING_OPTION, " 4 ")
        assert result.next_stage == STAGE_AFTER_HOURS_INFO
        assert "horário de funcionamento" in result.outbound[0].data["message"]

    def test_confident_unrelated_intent_transfers(self):
        result = run(STAGE_AWAITING_OPTION, "quero pagar", nlp=NLPResult(intent="payment", confidence=0.8))
        assert result.transfer.reason == "NLP não conseguiu interpretar claramente a solicitação"

    def test_invalid_option_reprompts(self):
        context = ChatContext(name="Maria")
        result = run(STAGE_AWAITING_OPTION, "banana", context=context)
        assert result.next_stage == STAGE_AWAITING_OPTION
        assert result.transfer is None
        assert result.context.invalid_attempts == 1
        assert "Opção inválida" in result.outbound[0].data["message"]

    def test_repeated_invalid_option_transfers(self):
        context = ChatContext(name="Maria", invalid_attempts=MAX_INVALID_ATTEMPTS - 1)
        result = run(STAGE_AWAITING_OPTION, "banana", context=context)
        assert result.transfer is not None
        assert result.transfer.reason == "Opção inválida repetida"

    def test_valid_option_resets_invalid_counter(self):
        context = ChatContext(name="Maria", invalid_attempts=2)
        result = run(STAGE_AWAITING_OPTION, "1", context=context)
        assert result.context.invalid_attempts == 0


class TestCollectingStages:
    def test_name_for_products_stores_interest(self):
        nlp = NLPResult(intent="product_inquiry", confidence=0.8, parameters={"product_mentioned": "notebook"})
        result = run(STAGE_COLLECTING_NAME_PRODUCTS, "João Silva", nlp=nlp)
        assert result.next_stage == STAGE_COLLECTING_PRODUCT_INTEREST
        assert result.context.name == "João Silva"
        assert result.context.product_interest == "notebook"
        assert "notebook" in result.outbound[0].data["message"]

    def test_name_for_products_defaults_interest(self):
        result = run(STAGE_COLLECTING_NAME_PRODUCTS, "João Silva")
        assert result.context.product_interest == "Geral"

    def test_high_urgency_support_transfers_to_urgent(self):
        nlp = NLPResult(intent="support_request", confidence=0.9, parameters={"urgency_level": "high"})
        result = run(STAGE_COLLECTING_NAME_SUPPORT, "Ana", nlp=nlp)
        assert result.transfer is not None
        assert result.transfer.department == "Suporte Urgente"
        assert result.transfer.reason == "Suporte técnico de alta urgência"

    def test_support_name_asks_for_issue(self):
        result = run(STAGE_COLLECTING_NAME_SUPPORT, "Ana")
        assert result.next_stage == STAGE_COLLECTING_SUPPORT_ISSUE
        assert result.transfer is None

    def test_product_interest_transfers_to_sales(self):
        result = run(STAGE_COLLECTING_PRODUCT_INTEREST, "impressoras")
        assert result.transfer.department == "Vendas"
        assert result.context.product_details == "impressoras"

    def test_support_issue_transfers_to_support(self):
        result = run(STAGE_COLLECTING_SUPPORT_ISSUE, "sistema fora do ar")
        assert result.transfer.department == "Suporte"
        assert result.context.support_issue == "sistema fora do ar"
        assert "sistema fora do ar" in result.outbound[0].data["message"]


class TestAfterHoursInfo:
    def test_back_to_menu(self):
        result = run(STAGE_AFTER_HOURS_INFO, "1")
        assert result.next_stage == STAGE_AWAITING_OPTION

    def test_talk_to_agent(self):
        result = run(STAGE_AFTER_HOURS_INFO, "2")
        assert result.transfer.reason == "Solicitação após informações de horário"

    def test_invalid_reprompts(self):
        result = run(STAGE_AFTER_HOURS_INFO, "9")
        assert result.next_stage == STAGE_AFTER_HOURS_INFO
        assert result.transfer is None


class TestUnknownStage:
    def test_completed_stage_transfers(self):
        result = run(STAGE_COMPLETED, "olá")
        assert result.transfer.reason == "Erro no fluxo do chatbot ou intenção não clara"

    def test_unknown_stage_names_confident_intent(self):
        result = run("does_not_exist", "pagamento", nlp=NLPResult(intent="payment", confidence=0.9))
        assert "payment" in result.outbound[0].data["message"]


class TestChatContext:
    def test_unknown_keys_are_kept_in_extra(self):
        context = ChatContext.from_stored({"name": "Maria", "utm_source": "instagram"})
        assert context.name == "Maria"
        assert context.extra == {"utm_source": "instagram"}
        assert context.to_stored() == {"name": "Maria", "invalid_attempts": 0, "extra": {"utm_source": "instagram"}}

    def test_empty_context(self):
        context = ChatContext.from_stored(None)
        assert context.name is None
        assert context.to_stored() == {"invalid_attempts": 0}
