"""End-to-end tests of the worker process wiring."""

from __future__ import annotations

import asyncio

from conftest import PRODUCT_ID, USER_ID, order_request, seed_product, seed_user
from database import LocalStore
from jobqueue import MEDIA_QUEUE, NOTIFICATION_QUEUE, ORDER_QUEUE, JobStatus
from object_store import LocalObjectStore
from services import build_services
from settings import Settings


class TestServices:
    def test_recover_failed_jobs(self, settings: Settings, store: LocalStore, objects: LocalObjectStore) -> None:
        services = build_services(settings, store=store, objects=objects)
        for queue_name in (MEDIA_QUEUE, ORDER_QUEUE):
            services.queue.enqueue(queue_name, "any", {}, attempts=1)
            services.queue.fail(services.queue.claim(queue_name), "crashed", retriable=False)

        assert services.recover_failed_jobs() == 2
        assert services.queue.counts(MEDIA_QUEUE)["waiting"] == 1
        assert services.queue.counts(ORDER_QUEUE)["waiting"] == 1

    def test_order_flows_through_workers(self, settings: Settings, store: LocalStore,
                                         objects: LocalObjectStore) -> None:
        seed_user(store)
        seed_product(store)
        services = build_services(settings.model_copy(update={"order_advance_delay_ms": 0}),
                                  store=store, objects=objects)
        services.prepare()
        order = services.orders.place_order(USER_ID, order_request((PRODUCT_ID, "Red", "M", 1)))

        def settled() -> bool:
            current = store.find_one("order", {"_id": order["_id"]})
            return (current["status"] == "Processing"
                    and services.queue.counts(NOTIFICATION_QUEUE)["completed"] == 3)

        async def scenario() -> None:
            shutdown = asyncio.Event()
            task = asyncio.create_task(services.run_workers(shutdown))
            for _ in range(500):
                if settled():
                    break
                await asyncio.sleep(0.01)
            shutdown.set()
            await asyncio.wait_for(task, timeout=5)

        asyncio.run(scenario())

        assert settled()
        [advance] = services.queue.list_jobs(ORDER_QUEUE)
        assert advance.status is JobStatus.COMPLETED
        assert advance.result is True
