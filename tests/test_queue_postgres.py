"""Queue claiming against a real Postgres.

Opt-in: set TEST_DATABASE_URL to a disposable database. The rest of the suite mocks the
session, so this is the only place concurrent claims are exercised for real.
"""

import os
import threading

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from zapdesk.database import Base
from zapdesk.models import FailedMessage, QueuedMessage
from zapdesk.services.queue_service import MESSAGE_TYPE_CHATBOT, STATUS_PROCESSING, dequeue, enqueue

TEST_DATABASE_URL = os.environ.get("TEST_DATABASE_URL")

pytestmark = [
    pytest.mark.postgres,
    pytest.mark.skipif(not TEST_DATABASE_URL, reason="TEST_DATABASE_URL not set"),
]


@pytest.fixture
def session_factory():
    engine = create_engine(TEST_DATABASE_URL, pool_size=8)
    tables = [QueuedMessage.__table__, FailedMessage.__table__]
    Base.metadata.create_all(engine, tables=tables)
    factory = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    with factory() as db:
        db.query(FailedMessage).delete()
        db.query(QueuedMessage).delete()
        db.commit()
    yield factory
    with factory() as db:
        db.query(FailedMessage).delete()
        db.query(QueuedMessage).delete()
        db.commit()
    engine.dispose()


class TestConcurrentDequeue:
    def test_each_row_is_claimed_once(self, session_factory):
        with session_factory() as db:
            for i in range(20):
                enqueue(
                    db,
                    message_type=MESSAGE_TYPE_CHATBOT,
                    payload={"n": i},
                    correlation_id=f"corr-{i}",
                    dedup_key=f"loja-1:MSG-{i}",
                )
            db.commit()

        claimed = []
        lock = threading.Lock()
        start = threading.Barrier(4)

        def worker():
            start.wait()
            with session_factory() as db:
                while True:
                    row = dequeue(db)
                    if row is None:
                        break
                    with lock:
                        claimed.append(row["id"])

        threads = [threading.Thread(target=worker) for _ in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=30)

        assert len(claimed) == 20
        assert len(set(claimed)) == 20
        with session_factory() as db:
            statuses = {status for (status,) in db.query(QueuedMessage.status).all()}
        assert statuses == {STATUS_PROCESSING}

    def test_higher_priority_is_claimed_first(self, session_factory):
        with session_factory() as db:
            enqueue(db, message_type=MESSAGE_TYPE_CHATBOT, payload={"n": "low"}, correlation_id="low", priority=0)
            enqueue(db, message_type=MESSAGE_TYPE_CHATBOT, payload={"n": "high"}, correlation_id="high", priority=5)
            db.commit()

            first = dequeue(db)

        assert first["correlation_id"] == "high"
