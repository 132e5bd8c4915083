"""
Process wiring.

Everything a request handler or worker needs is constructed once from the
Settings and handed around explicitly as a Services bundle.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import List, Optional

from database import DocumentStore, connect, ensure_indexes
from jobqueue import ALL_QUEUES, MEDIA_QUEUE, NOTIFICATION_QUEUE, ORDER_QUEUE, JobQueue
from media import MEDIA_JOB, MediaProcessor
from notifications import NotificationHandler, Notifier
from object_store import ObjectStore, make_object_store
from orders import ADVANCE_JOB, OrderService
from outbox import Outbox
from settings import Settings
from worker import Worker

logger = logging.getLogger(__name__)


@dataclass
class Services:
    settings: Settings
    store: DocumentStore
    objects: ObjectStore
    queue: JobQueue
    outbox: Outbox
    orders: OrderService
    media: MediaProcessor
    notifications: NotificationHandler

    def prepare(self) -> None:
        ensure_indexes(self.store)
        self.objects.ensure_bucket()

    def recover_failed_jobs(self) -> int:
        """Requeue jobs parked by an earlier run (e.g. a crash mid-job)."""
        requeued = sum(self.queue.retry_failed(name) for name in ALL_QUEUES)
        if requeued:
            logger.warning("Found %d failed job(s) from a previous run, requeued", requeued)
        return requeued

    def workers(self) -> List[Worker]:
        common = dict(concurrency=self.settings.worker_concurrency,
                      poll_interval=self.settings.worker_poll_interval)
        return [
            Worker(self.queue, MEDIA_QUEUE, {MEDIA_JOB: self.media}, **common),
            Worker(self.queue, NOTIFICATION_QUEUE, self.notifications.handlers(), **common),
            Worker(self.queue, ORDER_QUEUE, {ADVANCE_JOB: self.orders.advance}, **common),
        ]

    async def run_workers(self, shutdown_event: asyncio.Event) -> None:
        async with asyncio.TaskGroup() as tg:
            for worker in self.workers():
                tg.create_task(worker.run(shutdown_event))
            tg.create_task(self.outbox.run(shutdown_event, self.settings.worker_poll_interval))


def build_services(settings: Settings, store: Optional[DocumentStore] = None,
                   objects: Optional[ObjectStore] = None, notifier: Optional[Notifier] = None) -> Services:
    store = store if store is not None else connect(settings)
    objects = objects if objects is not None else make_object_store(settings)
    queue = JobQueue(
        store,
        default_attempts=settings.job_attempts,
        default_backoff_ms=settings.job_backoff_ms,
        visibility_timeout=settings.job_visibility_timeout,
    )
    outbox = Outbox(store, queue)
    return Services(
        settings=settings,
        store=store,
        objects=objects,
        queue=queue,
        outbox=outbox,
        orders=OrderService(store, outbox, advance_delay_ms=settings.order_advance_delay_ms,
                            staff_roles=settings.staff_roles),
        media=MediaProcessor(store, objects, settings.upload_dir, public_prefix=settings.public_prefix),
        notifications=NotificationHandler(notifier),
    )
