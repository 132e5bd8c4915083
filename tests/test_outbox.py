"""Tests for the transactional outbox."""

from __future__ import annotations

import asyncio
from datetime import timedelta
from unittest.mock import MagicMock

import pytest

from database import LocalStore, now_utc
from jobqueue import NOTIFICATION_QUEUE, ORDER_QUEUE, JobQueue
from outbox import OUTBOX, Outbox


class TestOutbox:
    def test_record_discarded_with_its_transaction(self, store: LocalStore, outbox: Outbox) -> None:
        def txn(session):
            outbox.add(session, NOTIFICATION_QUEUE, "push-user", {"recipientId": "u1"})
            raise RuntimeError("business rule failed")

        with pytest.raises(RuntimeError):
            store.transaction(txn)
        assert outbox.pending() == []

    def test_flush_moves_each_record_once(self, store: LocalStore, outbox: Outbox, queue: JobQueue) -> None:
        store.transaction(lambda session: [
            outbox.add(session, NOTIFICATION_QUEUE, "push-user", {"recipientId": "u1"}),
            outbox.add(session, NOTIFICATION_QUEUE, "notify-roles", {"roles": ["admin"]}),
        ])

        assert outbox.flush() == 2
        assert outbox.flush() == 0

        jobs = queue.list_jobs(NOTIFICATION_QUEUE)
        assert sorted(j.name for j in jobs) == ["notify-roles", "push-user"]
        records = store.find(OUTBOX, {})
        assert all(r["dispatched"] and r["job_id"] for r in records)
        assert {r["job_id"] for r in records} == {j.id for j in jobs}

    def test_delay_counts_from_record_creation(self, store: LocalStore, outbox: Outbox, queue: JobQueue) -> None:
        created = now_utc() - timedelta(seconds=10)
        store.transaction(lambda session: outbox.add(
            session, ORDER_QUEUE, "process-order", {"orderId": "ORD-1", "userId": "u1"},
            delay_ms=5000, now=created,
        ))

        outbox.flush()

        [job] = queue.list_jobs(ORDER_QUEUE)
        assert job.available_at == created + timedelta(milliseconds=5000)
        assert queue.claim(ORDER_QUEUE) is not None

    def test_failed_enqueue_leaves_record_pending(self, store: LocalStore) -> None:
        broken = MagicMock(spec=JobQueue)
        broken.enqueue.side_effect = ConnectionError("queue down")
        outbox = Outbox(store, broken)
        store.transaction(lambda session: outbox.add(session, NOTIFICATION_QUEUE, "push-user", {}))

        outbox.flush_quietly()

        [record] = outbox.pending()
        assert record["dispatched"] is False

    def test_dispatcher_loop(self, store: LocalStore, outbox: Outbox, queue: JobQueue) -> None:
        store.transaction(lambda session: outbox.add(session, NOTIFICATION_QUEUE, "push-user", {}))

        async def scenario() -> None:
            shutdown = asyncio.Event()
            task = asyncio.create_task(outbox.run(shutdown, poll_interval=0.01))
            for _ in range(200):
                if not outbox.pending():
                    break
                await asyncio.sleep(0.01)
            shutdown.set()
            await asyncio.wait_for(task, timeout=5)

        asyncio.run(scenario())

        assert outbox.pending() == []
        assert queue.counts(NOTIFICATION_QUEUE)["waiting"] == 1
