from types import SimpleNamespace
from unittest.mock import Mock, patch
from uuid import uuid4

from zapdesk.services.handoff_service import (
    TRANSFER_HEADER,
    build_transfer_summary,
    finish_conversation,
    release_conversation,
    take_conversation,
    transfer_to_human,
)

PHONE = "5511999999999"


def make_conversation(state="bot_active", status="active"):
    return SimpleNamespace(
        id=uuid4(),
        state=state,
        status=status,
        department=None,
        transfer_reason=None,
        transferred_at=None,
        assigned_agent_id=None,
        finished_at=None,
    )


class TestTransferSummary:
    def test_summary_lists_client_reason_and_nlp(self):
        summary = build_transfer_summary(
            client_name="Maria",
            phone=PHONE,
            reason="Suporte técnico",
            department="Suporte",
            context={"support_issue": "sem internet"},
            nlp={"intent": "support_request", "confidence": 0.9, "parameters": {"urgency_level": "high"}},
        )
        assert summary.startswith(TRANSFER_HEADER)
        assert "Maria" in summary
        assert "Suporte técnico" in summary
        assert "sem internet" in summary
        assert "support_request" in summary

    def test_summary_without_nlp(self):
        summary = build_transfer_summary(
            client_name="Cliente", phone=PHONE, reason="Fluxo do chatbot", department="Geral", context={}
        )
        assert "Não identificada" in summary


class TestTransferToHuman:
    def test_transfer_deletes_state_and_appends_system_message(self, db_session):
        state = Mock()
        conversation = make_conversation()
        db_session.query.return_value.filter.return_value.first.return_value = state

        with patch("zapdesk.services.handoff_service.get_or_create_contact"), patch(
            "zapdesk.services.handoff_service.get_or_create_conversation", return_value=conversation
        ), patch("zapdesk.services.handoff_service.save_message") as mock_save:
            result = transfer_to_human(
                db_session,
                company_id=None,
                phone=PHONE,
                reason="Suporte técnico de alta urgência",
                department="Suporte Urgente",
                context={"name": "Ana"},
            )

        assert result.ok is True
        db_session.delete.assert_called_once_with(state)
        assert conversation.state == "pending"
        assert conversation.department == "Suporte Urgente"
        assert conversation.transfer_reason == "Suporte técnico de alta urgência"
        assert conversation.transferred_at is not None

        args = mock_save.call_args.args
        assert args[2] == "system"
        assert "Suporte técnico de alta urgência" in args[3]
        assert mock_save.call_args.kwargs["payload"]["kind"] == "transfer"

    def test_defaults_department_and_reason(self, db_session):
        conversation = make_conversation()
        db_session.query.return_value.filter.return_value.first.return_value = None

        with patch("zapdesk.services.handoff_service.get_or_create_contact"), patch(
            "zapdesk.services.handoff_service.get_or_create_conversation", return_value=conversation
        ), patch("zapdesk.services.handoff_service.save_message"):
            result = transfer_to_human(db_session, company_id=None, phone=PHONE)

        assert result.ok is True
        assert conversation.department == "Geral"
        assert conversation.transfer_reason == "Fluxo do chatbot"
        db_session.delete.assert_not_called()

    def test_already_pending_stays_pending(self, db_session):
        conversation = make_conversation(state="pending")
        db_session.query.return_value.filter.return_value.first.return_value = None

        with patch("zapdesk.services.handoff_service.get_or_create_contact"), patch(
            "zapdesk.services.handoff_service.get_or_create_conversation", return_value=conversation
        ), patch("zapdesk.services.handoff_service.save_message"):
            result = transfer_to_human(db_session, company_id=None, phone=PHONE, reason="Segundo gatilho")

        assert result.ok is True
        assert conversation.state == "pending"


class TestAgentActions:
    def test_take_pending(self, db_session):
        conversation = make_conversation(state="pending")
        agent_id = uuid4()

        result = take_conversation(db_session, conversation, agent_id)

        assert result.ok is True
        assert conversation.state == "agent_active"
        assert conversation.status == "in_progress"
        assert conversation.assigned_agent_id == agent_id

    def test_take_bot_owned_fails(self, db_session):
        result = take_conversation(db_session, make_conversation(state="bot_active"), uuid4())
        assert result.ok is False
        assert result.error_code == "invalid_state"

    def test_take_finished_fails(self, db_session):
        result = take_conversation(db_session, make_conversation(state="pending", status="finished"), uuid4())
        assert result.error_code == "finished"

    def test_release_returns_to_pending(self, db_session):
        conversation = make_conversation(state="agent_active", status="in_progress")
        conversation.assigned_agent_id = uuid4()

        result = release_conversation(db_session, conversation)

        assert result.ok is True
        assert conversation.state == "pending"
        assert conversation.assigned_agent_id is None

    def test_finish(self, db_session):
        conversation = make_conversation(state="agent_active", status="in_progress")

        result = finish_conversation(db_session, conversation)

        assert result.ok is True
        assert conversation.status == "finished"
        assert conversation.finished_at is not None

    def test_finish_twice_fails(self, db_session):
        result = finish_conversation(db_session, make_conversation(status="finished"))
        assert result.ok is False
