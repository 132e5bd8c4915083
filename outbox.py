"""
Transactional outbox.

Follow-up jobs of a business transaction (notifications, delayed order
advancement) are written as outbox records inside that same transaction.
A dispatcher later moves each record into the job queue, marking it
dispatched in the same transaction as the enqueue, so a crash between the
order commit and the enqueue can no longer drop the follow-up work.
"""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from database import DocumentStore, new_id, now_utc
from jobqueue import Job, JobQueue

logger = logging.getLogger(__name__)

OUTBOX = "outbox"


class Outbox:
    def __init__(self, store: DocumentStore, queue: JobQueue):
        self.store = store
        self.queue = queue

    def add(self, session, queue_name: str, job_type: str, payload: Dict[str, Any], delay_ms: int = 0,
            now: Optional[datetime] = None) -> str:
        """Record a job to enqueue once the surrounding transaction commits."""
        return self.store.insert_one(OUTBOX, {
            "_id": new_id(),
            "queue": queue_name,
            "name": job_type,
            "payload": payload,
            "delay_ms": delay_ms,
            "created_at": now or now_utc(),
            "dispatched": False,
            "dispatched_at": None,
            "job_id": None,
        }, session=session)

    def pending(self, limit: int = 100) -> List[dict]:
        return self.store.find(OUTBOX, {"dispatched": False}, sort=[("created_at", 1)], limit=limit)

    def flush(self, limit: int = 100) -> int:
        """Enqueue undispatched records; returns how many this call moved."""
        moved = 0
        for record in self.pending(limit):
            if self._dispatch(record) is not None:
                moved += 1
        if moved:
            logger.debug("Outbox dispatched %d record(s)", moved)
        return moved

    def flush_quietly(self) -> None:
        """Post-commit fast path; the dispatcher loop picks up whatever this misses."""
        try:
            self.flush()
        except Exception:
            logger.warning("Outbox flush failed, leaving records for the dispatcher", exc_info=True)

    def _dispatch(self, record: dict) -> Optional[Job]:
        def txn(session):
            claimed = self.store.update_one(
                OUTBOX,
                {"_id": record["_id"], "dispatched": False},
                {"$set": {"dispatched": True, "dispatched_at": now_utc()}},
                session=session,
            )
            if not claimed:
                return None
            # Delay counts from the business commit, not from dispatch time
            job = self.queue.enqueue(
                record["queue"], record["name"], record["payload"],
                delay_ms=record.get("delay_ms", 0), session=session, now=record["created_at"],
            )
            self.store.update_one(OUTBOX, {"_id": record["_id"]}, {"$set": {"job_id": job.id}}, session=session)
            return job

        return self.store.transaction(txn)

    async def run(self, shutdown_event: asyncio.Event, poll_interval: float = 1.0) -> None:
        logger.info("Outbox dispatcher started")
        while not shutdown_event.is_set():
            try:
                moved = await asyncio.to_thread(self.flush)
            except Exception:
                logger.exception("Outbox dispatch failed")
                moved = 0
            if not moved:
                try:
                    await asyncio.wait_for(shutdown_event.wait(), timeout=poll_interval)
                except asyncio.TimeoutError:
                    pass
        logger.info("Outbox dispatcher stopped")
