from types import SimpleNamespace
from unittest.mock import patch
from uuid import uuid4

import pytest
from sqlalchemy.orm.exc import StaleDataError

from zapdesk.schemas.outbound import OutboundMessage
from zapdesk.services.queue_processor import (
    SOURCE_ROUTER,
    SOURCE_SCHEDULER,
    batch_size_for,
    process_queue_batch,
    process_row,
)
from zapdesk.services.queue_service import MESSAGE_TYPE_CHATBOT, STATUS_FAILED, STATUS_RETRYING
from zapdesk.services.sender_service import GatewayError

PHONE = "5511999999999"


def make_row(retry_count=0, max_retries=3, message_type=MESSAGE_TYPE_CHATBOT, message=None):
    return {
        "id": uuid4(),
        "correlation_id": "corr-1",
        "message_type": message_type,
        "retry_count": retry_count,
        "max_retries": max_retries,
        "payload": {
            "message": message
            if message is not None
            else {
                "event": "message-received",
                "instanceId": "loja-1",
                "data": {
                    "messageId": "MSG-1",
                    "from": PHONE,
                    "to": "5511888888888",
                    "text": {"message": "2"},
                    "timestamp": 1700000000,
                    "fromMe": False,
                    "senderName": "Maria",
                },
            },
            "company_id": None,
            "contact_phone": PHONE,
        },
    }


def make_outcome(outbound=None):
    return SimpleNamespace(stage="collecting_name_support", outbound=outbound or [], transfer=None, skipped=False)


@pytest.fixture
def queue_ops():
    with patch("zapdesk.services.queue_processor.mark_completed") as mock_completed, patch(
        "zapdesk.services.queue_processor.mark_failed", return_value=STATUS_RETRYING
    ) as mock_failed:
        yield SimpleNamespace(completed=mock_completed, failed=mock_failed)


class TestProcessRow:
    def test_successful_turn_sends_and_completes(self, db_session, queue_ops):
        reply = OutboundMessage(type="text", phone=PHONE, data={"message": "Qual é o seu nome?"})
        row = make_row()

        with patch("zapdesk.services.queue_processor.run_turn", return_value=make_outcome([reply])) as mock_turn, patch(
            "zapdesk.services.queue_processor.send_or_raise"
        ) as mock_send:
            outcome = process_row(db_session, row)

        assert outcome == "completed"
        assert mock_turn.call_args.kwargs["text"] == "2"
        assert mock_turn.call_args.kwargs["user_name"] == "Maria"
        assert mock_turn.call_args.kwargs["correlation_id"] == "corr-1"
        mock_send.assert_called_once_with(reply)
        db_session.commit.assert_called_once()
        queue_ops.completed.assert_called_once_with(db_session, row["id"])

    def test_gateway_error_schedules_retry(self, db_session, queue_ops):
        reply = OutboundMessage(type="text", phone=PHONE, data={"message": "Olá"})

        with patch("zapdesk.services.queue_processor.run_turn", return_value=make_outcome([reply])), patch(
            "zapdesk.services.queue_processor.send_or_raise", side_effect=GatewayError("Evolution API error: 503")
        ):
            outcome = process_row(db_session, make_row())

        assert outcome == "retry_scheduled"
        db_session.rollback.assert_called_once()
        db_session.commit.assert_not_called()
        assert queue_ops.failed.call_args.kwargs["should_retry"] is True
        queue_ops.completed.assert_not_called()

    def test_stale_state_is_replayed(self, db_session, queue_ops):
        with patch("zapdesk.services.queue_processor.run_turn", side_effect=StaleDataError("version mismatch")):
            outcome = process_row(db_session, make_row())

        assert outcome == "retry_scheduled"
        assert queue_ops.failed.call_args.kwargs["should_retry"] is True

    def test_exhausted_retries_fail(self, db_session, queue_ops):
        queue_ops.failed.return_value = STATUS_FAILED

        with patch("zapdesk.services.queue_processor.run_turn", side_effect=RuntimeError("db down")):
            outcome = process_row(db_session, make_row(retry_count=3, max_retries=3))

        assert outcome == "failed"
        assert queue_ops.failed.call_args.kwargs["should_retry"] is False

    def test_invalid_payload_is_permanent(self, db_session, queue_ops):
        queue_ops.failed.return_value = STATUS_FAILED

        with patch("zapdesk.services.queue_processor.run_turn") as mock_turn:
            outcome = process_row(db_session, make_row(message={"event": "message-received"}))

        assert outcome == "failed"
        mock_turn.assert_not_called()
        assert queue_ops.failed.call_args.kwargs["should_retry"] is False
        assert "invalid_payload" in queue_ops.failed.call_args.kwargs["error"]

    def test_unknown_message_type_is_permanent(self, db_session, queue_ops):
        queue_ops.failed.return_value = STATUS_FAILED

        outcome = process_row(db_session, make_row(message_type="newsletter"))

        assert outcome == "failed"
        assert queue_ops.failed.call_args.kwargs["should_retry"] is False


class TestProcessQueueBatch:
    def test_batch_sizes(self):
        assert batch_size_for(SOURCE_ROUTER) == 10
        assert batch_size_for(SOURCE_SCHEDULER) == 5

    def test_counts_outcomes(self, db_session):
        rows = [make_row(), make_row(), make_row()]
        with patch("zapdesk.services.queue_processor.release_stale_processing", return_value=1), patch(
            "zapdesk.services.queue_processor.dequeue_batch", return_value=rows
        ) as mock_dequeue, patch(
            "zapdesk.services.queue_processor.process_row",
            side_effect=["completed", "retry_scheduled", "failed"],
        ):
            results = process_queue_batch(db_session, source=SOURCE_SCHEDULER)

        assert mock_dequeue.call_args.kwargs["limit"] == 5
        assert results == {"claimed": 3, "completed": 1, "retry_scheduled": 1, "failed": 1, "released_stale": 1}

    def test_empty_queue(self, db_session):
        with patch("zapdesk.services.queue_processor.release_stale_processing", return_value=0), patch(
            "zapdesk.services.queue_processor.dequeue_batch", return_value=[]
        ):
            results = process_queue_batch(db_session, limit=7)

        assert results["claimed"] == 0
