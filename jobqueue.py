"""
Durable job queue stored in the document database.

Jobs are documents in the ``jobs`` collection. A consumer claims the oldest
visible job with an atomic find_one_and_update, which also stamps a lock
token and a visibility deadline. A job whose consumer dies is redelivered
once the deadline passes, so delivery is at-least-once and handlers must be
idempotent.

    ┌──────────────────┐     ┌─────────────────┐     ┌─────────────────┐
    │  API / Outbox    │────→│  jobs (MongoDB) │────→│  Worker loops   │
    │  (enqueue)       │     │  waiting/active │     │  (claim, ack)   │
    └──────────────────┘     └─────────────────┘     └─────────────────┘
                                      ↑                        │
                                      └──── retry / failed ────┘

Completion and failure are conditional on the claim's lock token: a consumer
that lost its claim to a redelivery cannot overwrite the new owner's state.
"""
from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional

from database import DocumentStore, new_id, now_utc

logger = logging.getLogger(__name__)

JOBS = "jobs"

MEDIA_QUEUE = "media-processing"
NOTIFICATION_QUEUE = "notification-queue"
ORDER_QUEUE = "order-processing-queue"
ALL_QUEUES = (MEDIA_QUEUE, NOTIFICATION_QUEUE, ORDER_QUEUE)

DEFAULT_ATTEMPTS = 3
DEFAULT_BACKOFF_MS = 1000
DEFAULT_VISIBILITY_TIMEOUT = 300.0


class JobStatus(Enum):
    WAITING = "waiting"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class Job:
    """
    A queued unit of work.

    Attributes:
        id: Unique job identifier.
        queue: Logical queue name.
        name: Job type, used to pick a handler.
        payload: JSON-serializable job data.
        status: Current lifecycle state.
        attempts: Maximum number of deliveries.
        attempts_made: Deliveries so far.
        backoff_ms: Base delay of the exponential retry backoff.
        delay_ms: Delay requested at enqueue time.
        available_at: Earliest time the job may be claimed.
        locked_until: Visibility deadline of the current claim.
        lock_token: Identifies the current claim.
        last_error: Message of the most recent failure.
    """

    id: str
    queue: str
    name: str
    payload: Dict[str, Any] = field(default_factory=dict)
    status: JobStatus = JobStatus.WAITING
    attempts: int = DEFAULT_ATTEMPTS
    attempts_made: int = 0
    backoff_ms: int = DEFAULT_BACKOFF_MS
    delay_ms: int = 0
    available_at: datetime = field(default_factory=now_utc)
    locked_until: Optional[datetime] = None
    lock_token: Optional[str] = None
    last_error: Optional[str] = None
    result: Optional[Any] = None
    created_at: datetime = field(default_factory=now_utc)
    finished_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "_id": self.id,
            "queue": self.queue,
            "name": self.name,
            "payload": self.payload,
            "status": self.status.value,
            "attempts": self.attempts,
            "attempts_made": self.attempts_made,
            "backoff_ms": self.backoff_ms,
            "delay_ms": self.delay_ms,
            "available_at": self.available_at,
            "locked_until": self.locked_until,
            "lock_token": self.lock_token,
            "last_error": self.last_error,
            "result": self.result,
            "created_at": self.created_at,
            "finished_at": self.finished_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Job":
        return cls(
            id=data["_id"],
            queue=data["queue"],
            name=data["name"],
            payload=data.get("payload") or {},
            status=JobStatus(data["status"]),
            attempts=data.get("attempts", DEFAULT_ATTEMPTS),
            attempts_made=data.get("attempts_made", 0),
            backoff_ms=data.get("backoff_ms", DEFAULT_BACKOFF_MS),
            delay_ms=data.get("delay_ms", 0),
            available_at=data["available_at"],
            locked_until=data.get("locked_until"),
            lock_token=data.get("lock_token"),
            last_error=data.get("last_error"),
            result=data.get("result"),
            created_at=data["created_at"],
            finished_at=data.get("finished_at"),
        )


def retry_delay_ms(backoff_ms: int, attempts_made: int) -> int:
    """Exponential backoff: base, 2x base, 4x base, ..."""
    return backoff_ms * (2 ** max(attempts_made - 1, 0))


class JobQueue:
    """Queue client over the ``jobs`` collection of a document store."""

    def __init__(
        self,
        store: DocumentStore,
        default_attempts: int = DEFAULT_ATTEMPTS,
        default_backoff_ms: int = DEFAULT_BACKOFF_MS,
        visibility_timeout: float = DEFAULT_VISIBILITY_TIMEOUT,
    ):
        self.store = store
        self.default_attempts = default_attempts
        self.default_backoff_ms = default_backoff_ms
        self.visibility_timeout = visibility_timeout

    def enqueue(
        self,
        queue_name: str,
        job_type: str,
        payload: Dict[str, Any],
        delay_ms: int = 0,
        attempts: Optional[int] = None,
        backoff_ms: Optional[int] = None,
        session=None,
        now: Optional[datetime] = None,
    ) -> Job:
        """Add a job; it becomes claimable ``delay_ms`` after ``now``."""
        created = now or now_utc()
        job = Job(
            id=new_id(),
            queue=queue_name,
            name=job_type,
            payload=payload,
            attempts=attempts or self.default_attempts,
            backoff_ms=self.default_backoff_ms if backoff_ms is None else backoff_ms,
            delay_ms=max(delay_ms, 0),
            available_at=created + timedelta(milliseconds=max(delay_ms, 0)),
            created_at=created,
        )
        self.store.insert_one(JOBS, job.to_dict(), session=session)
        logger.debug("Enqueued %s/%s job %s (delay %sms)", queue_name, job_type, job.id, job.delay_ms)
        return job

    def claim(self, queue_name: str, visibility_timeout: Optional[float] = None,
              now: Optional[datetime] = None) -> Optional[Job]:
        """Take the next deliverable job, or None when the queue is idle."""
        current = now or now_utc()
        timeout = self.visibility_timeout if visibility_timeout is None else visibility_timeout
        update = {
            "$set": {
                "status": JobStatus.ACTIVE.value,
                "locked_until": current + timedelta(seconds=timeout),
                "lock_token": uuid.uuid4().hex,
            },
            "$inc": {"attempts_made": 1},
        }
        doc = self.store.find_one_and_update(
            JOBS,
            {"queue": queue_name, "status": JobStatus.WAITING.value, "available_at": {"$lte": current}},
            update,
            sort=[("available_at", 1), ("created_at", 1)],
        )
        if doc is None:
            doc = self._claim_stalled(queue_name, update, current)
        return Job.from_dict(doc) if doc else None

    def _claim_stalled(self, queue_name: str, update: Dict[str, Any], current: datetime) -> Optional[dict]:
        """Redeliver a job whose consumer died; park it once its attempts are spent."""
        while True:
            # A claim whose visibility deadline passed belongs to a dead consumer
            stalled = self.store.find_one(
                JOBS,
                {"queue": queue_name, "status": JobStatus.ACTIVE.value, "locked_until": {"$lte": current}},
                sort=[("locked_until", 1)],
            )
            if stalled is None:
                return None
            held = {"_id": stalled["_id"], "status": JobStatus.ACTIVE.value, "lock_token": stalled.get("lock_token")}
            if stalled.get("attempts_made", 0) >= stalled.get("attempts", DEFAULT_ATTEMPTS):
                parked = self.store.update_one(JOBS, held, {"$set": {
                    "status": JobStatus.FAILED.value,
                    "finished_at": current,
                    "locked_until": None,
                    "last_error": "stalled",
                }})
                if parked:
                    logger.error("Job %s (%s) stalled on its last attempt, moved to failed set",
                                 stalled["_id"], stalled["name"])
                continue
            doc = self.store.find_one_and_update(JOBS, held, update)
            if doc is not None:
                logger.warning("Redelivering stalled job %s (%s) on %s", doc["_id"], doc["name"], queue_name)
                return doc

    def complete(self, job: Job, result: Any = None, now: Optional[datetime] = None) -> bool:
        matched = self.store.update_one(
            JOBS,
            {"_id": job.id, "lock_token": job.lock_token, "status": JobStatus.ACTIVE.value},
            {"$set": {
                "status": JobStatus.COMPLETED.value,
                "result": result,
                "finished_at": now or now_utc(),
                "locked_until": None,
            }},
        )
        if not matched:
            logger.warning("Job %s lost its claim before completion", job.id)
        return bool(matched)

    def fail(self, job: Job, error: str, retriable: bool = True, now: Optional[datetime] = None) -> JobStatus:
        """Record a failed delivery; schedule a retry or park the job."""
        current = now or now_utc()
        if retriable and job.attempts_made < job.attempts:
            delay = retry_delay_ms(job.backoff_ms, job.attempts_made)
            update = {"$set": {
                "status": JobStatus.WAITING.value,
                "available_at": current + timedelta(milliseconds=delay),
                "locked_until": None,
                "last_error": error,
            }}
            outcome = JobStatus.WAITING
            logger.warning("Job %s (%s) failed attempt %d/%d, retrying in %dms: %s",
                           job.id, job.name, job.attempts_made, job.attempts, delay, error)
        else:
            update = {"$set": {
                "status": JobStatus.FAILED.value,
                "finished_at": current,
                "locked_until": None,
                "last_error": error,
            }}
            outcome = JobStatus.FAILED
            logger.error("Job %s (%s) moved to failed set after %d attempt(s): %s",
                         job.id, job.name, job.attempts_made, error)
        matched = self.store.update_one(
            JOBS, {"_id": job.id, "lock_token": job.lock_token, "status": JobStatus.ACTIVE.value}, update,
        )
        if not matched:
            logger.warning("Job %s lost its claim before failure was recorded", job.id)
        return outcome

    def get(self, job_id: str) -> Optional[Job]:
        doc = self.store.find_one(JOBS, {"_id": job_id})
        return Job.from_dict(doc) if doc else None

    def list_jobs(self, queue_name: Optional[str] = None, status: Optional[JobStatus] = None,
                  limit: int = 100) -> List[Job]:
        filter: Dict[str, Any] = {}
        if queue_name:
            filter["queue"] = queue_name
        if status:
            filter["status"] = status.value
        docs = self.store.find(JOBS, filter, sort=[("created_at", -1)], limit=limit)
        return [Job.from_dict(d) for d in docs]

    def counts(self, queue_name: str) -> Dict[str, int]:
        return {
            status.value: self.store.count_documents(JOBS, {"queue": queue_name, "status": status.value})
            for status in JobStatus
        }

    def retry(self, job_id: str, now: Optional[datetime] = None) -> bool:
        """Put a failed job back in the waiting set with a fresh attempt budget."""
        matched = self.store.update_one(
            JOBS,
            {"_id": job_id, "status": JobStatus.FAILED.value},
            {"$set": {
                "status": JobStatus.WAITING.value,
                "attempts_made": 0,
                "available_at": now or now_utc(),
                "finished_at": None,
                "lock_token": None,
            }},
        )
        return bool(matched)

    def retry_failed(self, queue_name: str) -> int:
        count = 0
        for job in self.list_jobs(queue_name, JobStatus.FAILED, limit=0):
            if self.retry(job.id):
                count += 1
        if count:
            logger.info("Requeued %d failed job(s) on %s", count, queue_name)
        return count

    def clean(self, older_than: timedelta, now: Optional[datetime] = None) -> int:
        """Remove completed and failed jobs that finished before the cutoff."""
        cutoff = (now or now_utc()) - older_than
        return self.store.delete_many(JOBS, {
            "status": {"$in": [JobStatus.COMPLETED.value, JobStatus.FAILED.value]},
            "finished_at": {"$lt": cutoff},
        })
