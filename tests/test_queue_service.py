from datetime import datetime, timezone
from types import SimpleNamespace
from unittest.mock import patch
from uuid import uuid4

from sqlalchemy.dialects import postgresql

from zapdesk.services.queue_service import (
    MESSAGE_TYPE_CHATBOT,
    STATUS_FAILED,
    STATUS_RETRYING,
    build_dedup_key,
    dequeue,
    dequeue_batch,
    enqueue,
    get_queue_stats,
    mark_failed,
    release_stale_processing,
)


def make_queued(retry_count=0, max_retries=3):
    return SimpleNamespace(
        id=uuid4(),
        correlation_id="corr-1",
        message_type=MESSAGE_TYPE_CHATBOT,
        payload={"contact_phone": "5511999999999"},
        status="processing",
        retry_count=retry_count,
        max_retries=max_retries,
        scheduled_at=None,
        error_message=None,
        locked_at=datetime.now(timezone.utc),
        processed_at=None,
        updated_at=None,
        message_metadata={"phone": "5511999999999"},
    )


def locked_query_returns(db_session, message):
    db_session.query.return_value.filter.return_value.with_for_update.return_value.first.return_value = message


class TestDedupKey:
    def test_combines_instance_and_message(self):
        assert build_dedup_key("loja-1", "MSG-1") == "loja-1:MSG-1"

    def test_missing_message_id(self):
        assert build_dedup_key("loja-1", None) is None


class TestEnqueue:
    def test_returns_new_id(self, db_session):
        new_id = uuid4()
        db_session.execute.return_value.scalar_one_or_none.return_value = new_id

        queue_id = enqueue(
            db_session,
            message_type=MESSAGE_TYPE_CHATBOT,
            payload={"message": {}},
            correlation_id="corr-1",
            priority=1,
            dedup_key="loja-1:MSG-1",
        )

        assert queue_id == new_id
        params = db_session.execute.call_args.args[0].compile(dialect=postgresql.dialect()).params
        assert params["status"] == "pending"
        assert params["priority"] == 1
        assert params["retry_count"] == 0
        assert params["dedup_key"] == "loja-1:MSG-1"
        db_session.commit.assert_not_called()

    def test_duplicate_returns_none(self, db_session):
        db_session.execute.return_value.scalar_one_or_none.return_value = None

        queue_id = enqueue(
            db_session,
            message_type=MESSAGE_TYPE_CHATBOT,
            payload={},
            correlation_id="corr-1",
            dedup_key="loja-1:MSG-1",
        )

        assert queue_id is None


class TestDequeue:
    def test_claims_row_and_commits(self, db_session):
        # Statement shape only; concurrent claims run in test_queue_postgres.py
        row = {"id": uuid4(), "message_type": MESSAGE_TYPE_CHATBOT, "retry_count": 0}
        db_session.execute.return_value.mappings.return_value.first.return_value = row

        claimed = dequeue(db_session)

        assert claimed == row
        sql = str(db_session.execute.call_args.args[0])
        assert "FOR UPDATE SKIP LOCKED" in sql
        assert "ORDER BY priority DESC, created_at ASC" in sql
        db_session.commit.assert_called_once()

    def test_empty_queue(self, db_session):
        db_session.execute.return_value.mappings.return_value.first.return_value = None
        assert dequeue(db_session) is None

    def test_batch_stops_when_empty(self, db_session):
        rows = [{"id": 1}, {"id": 2}, None]
        with patch("zapdesk.services.queue_service.dequeue", side_effect=rows) as mock_dequeue:
            claimed = dequeue_batch(db_session, limit=10)
        assert claimed == [{"id": 1}, {"id": 2}]
        assert mock_dequeue.call_count == 3


class TestMarkFailed:
    def test_schedules_retry_with_delay(self, db_session):
        message = make_queued(retry_count=0)
        locked_query_returns(db_session, message)

        status = mark_failed(db_session, message.id, error="gateway down", should_retry=True, retry_delay_seconds=60)

        assert status == STATUS_RETRYING
        assert message.status == "retrying"
        assert message.retry_count == 1
        assert message.locked_at is None
        delay = (message.scheduled_at - message.updated_at).total_seconds()
        assert delay == 60
        db_session.execute.assert_not_called()
        db_session.commit.assert_called_once()

    def test_exhausted_retries_go_to_dead_letter(self, db_session):
        message = make_queued(retry_count=3, max_retries=3)
        locked_query_returns(db_session, message)

        status = mark_failed(db_session, message.id, error="gateway down", should_retry=True)

        assert status == STATUS_FAILED
        assert message.status == "failed"
        assert message.retry_count == 3
        params = db_session.execute.call_args.args[0].compile(dialect=postgresql.dialect()).params
        assert params["original_message_id"] == message.id
        assert params["failure_count"] == 4
        assert params["error_message"] == "gateway down"

    def test_permanent_failure_skips_retry(self, db_session):
        message = make_queued(retry_count=0)
        locked_query_returns(db_session, message)

        status = mark_failed(db_session, message.id, error="invalid_payload", should_retry=False)

        assert status == STATUS_FAILED
        assert message.retry_count == 0

    def test_missing_message(self, db_session):
        locked_query_returns(db_session, None)
        assert mark_failed(db_session, uuid4(), error="x", should_retry=True) == STATUS_FAILED
        db_session.commit.assert_not_called()


class TestMaintenance:
    def test_release_stale_processing(self, db_session):
        db_session.execute.return_value.rowcount = 2
        assert release_stale_processing(db_session, stale_seconds=300) == 2
        assert db_session.execute.call_args.args[1] == {"stale_seconds": 300}

    def test_release_disabled(self, db_session):
        assert release_stale_processing(db_session, stale_seconds=0) == 0
        db_session.execute.assert_not_called()

    def test_queue_stats(self, db_session):
        db_session.query.return_value.group_by.return_value.all.return_value = [("pending", 4), ("failed", 1)]
        db_session.query.return_value.scalar.return_value = 1

        stats = get_queue_stats(db_session)

        assert stats["pending"] == 4
        assert stats["failed"] == 1
        assert stats["completed"] == 0
        assert stats["dead_letter"] == 1
