import json
from types import SimpleNamespace
from unittest.mock import Mock, patch

import pytest

from zapdesk.services.llm import LLMError, LLMResponse
from zapdesk.services.nlp_service import (
    NLPResult,
    analyze_message,
    calculate_similarity,
    combine_results,
    match_configured_intents,
    parse_llm_classification,
)


def make_intent(name, phrases, threshold=0.5, target_stage=None, parameters=None):
    return SimpleNamespace(
        intent_name=name,
        training_phrases=phrases,
        confidence_threshold=threshold,
        target_stage=target_stage,
        parameters=parameters or {},
    )


def llm_provider(payload):
    provider = Mock()
    provider.generate.return_value = LLMResponse(content=json.dumps(payload), model="gpt-4o-mini")
    return provider


class TestSimilarity:
    def test_identical_phrases(self):
        assert calculate_similarity("quero comprar notebook", "quero comprar notebook") == 1.0

    def test_short_words_are_ignored(self):
        assert calculate_similarity("eu vi o", "eu vi o") == 0.0

    def test_partial_overlap_uses_longer_phrase(self):
        assert calculate_similarity("quero comprar", "quero comprar notebook novo") == pytest.approx(0.5)

    def test_case_insensitive(self):
        assert calculate_similarity("PREÇO Produto", "preço produto") == 1.0


class TestConfiguredIntents:
    def test_best_match_wins(self):
        intents = [
            make_intent("sales", ["quero comprar notebook"], target_stage="collecting_name_products"),
            make_intent("support", ["meu notebook quebrou"]),
        ]
        result = match_configured_intents("quero comprar notebook", intents)
        assert result.intent == "sales"
        assert result.confidence == 1.0
        assert result.target_stage == "collecting_name_products"
        assert result.source == "configured"

    def test_below_threshold_does_not_match(self):
        intents = [make_intent("sales", ["quero comprar notebook gamer barato"], threshold=0.9)]
        assert match_configured_intents("quero comprar", intents) is None


class TestParseLlmClassification:
    def test_valid_payload(self):
        result = parse_llm_classification(
            '{"intent": "support_request", "confidence": 0.92, "parameters": {"urgency_level": "high"}}'
        )
        assert result.intent == "support_request"
        assert result.confidence == 0.92
        assert result.parameters == {"urgency_level": "high"}
        assert result.source == "llm"

    def test_unknown_intent_maps_to_other(self):
        assert parse_llm_classification('{"intent": "weather", "confidence": 0.8}').intent == "other"

    def test_confidence_is_clamped(self):
        assert parse_llm_classification('{"intent": "greeting", "confidence": 7}').confidence == 1.0
        assert parse_llm_classification('{"intent": "greeting", "confidence": -1}').confidence == 0.0

    def test_invalid_json_raises(self):
        with pytest.raises(ValueError):
            parse_llm_classification("not json")


class TestCombineResults:
    def test_configured_beats_weaker_llm_and_overrides(self):
        configured = NLPResult(intent="sales", confidence=0.8, target_stage="collecting_name_products")
        llm = NLPResult(intent="other", confidence=0.6)
        result = combine_results(configured, llm)
        assert result.intent == "sales"
        assert result.should_override_flow is True

    def test_configured_below_override_does_not_force_flow(self):
        result = combine_results(NLPResult(intent="sales", confidence=0.6), None)
        assert result.intent == "sales"
        assert result.should_override_flow is False

    def test_confident_llm_is_used(self):
        result = combine_results(None, NLPResult(intent="greeting", confidence=0.9))
        assert result.intent == "greeting"
        assert result.should_override_flow is True
        assert result.target_stage is None

    def test_no_signal(self):
        result = combine_results(None, NLPResult(intent="greeting", confidence=0.7))
        assert result.intent is None
        assert result.confidence == 0.0
        assert result.should_override_flow is False


class TestAnalyzeMessage:
    def test_llm_result_used_without_configured_intents(self, db_session):
        provider = llm_provider({"intent": "product_inquiry", "confidence": 0.95, "parameters": {}})
        result = analyze_message(db_session, "quanto custa o notebook?", company_id=None, provider=provider)
        assert result.intent == "product_inquiry"
        provider.generate.assert_called_once()
        assert provider.generate.call_args.kwargs["json_output"] is True
        assert provider.generate.call_args.kwargs["temperature"] == 0.3

    def test_llm_error_is_absorbed(self, db_session):
        provider = Mock()
        provider.generate.side_effect = LLMError("OpenAI API error: 500")
        result = analyze_message(db_session, "oi", provider=provider)
        assert result.intent is None

    def test_configured_lookup_error_is_absorbed(self, db_session):
        db_session.query.side_effect = RuntimeError("db down")
        with patch("zapdesk.services.nlp_service.get_llm_provider", return_value=None):
            result = analyze_message(db_session, "oi", company_id="c1")
        assert result.intent is None

    def test_no_api_key_skips_llm(self, db_session):
        with patch("zapdesk.services.nlp_service.settings") as mock_settings:
            mock_settings.openai_api_key = None
            result = analyze_message(db_session, "oi")
        assert result == NLPResult()
