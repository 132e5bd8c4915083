import asyncio
import logging
import os
import uuid
from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import Depends, FastAPI, File, Header, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from starlette.concurrency import run_in_threadpool

from errors import InvalidInput, NotAuthorized, NotFound, StorefrontError
from jobqueue import ALL_QUEUES, JobStatus
from logging_config import configure_logging
from media import UploadedFile, abandon_gallery_job, create_gallery_uploads, gallery_listing, submit_media
from object_store import LocalObjectStore
from orders import Actor
from schemas import (
    CancelOrderRequest,
    MediaOperation,
    MediaTarget,
    PlaceOrderRequest,
    StatusUpdateRequest,
    TargetCollection,
)
from services import Services, build_services
from settings import Settings

logger = logging.getLogger("main")


def serialize_doc(doc: Optional[dict]) -> Optional[dict]:
    if not doc:
        return doc
    d = dict(doc)
    if "_id" in d:
        d["id"] = str(d.pop("_id"))
    return d


def create_app(services: Optional[Services] = None, run_workers: Optional[bool] = None) -> FastAPI:
    if services is None:
        settings = Settings.from_env()
        configure_logging(settings.log_level, settings.log_file)
        services = build_services(settings)
    settings = services.settings
    # Without MongoDB the queue only exists inside this process
    in_process_workers = (not settings.use_mongo) if run_workers is None else run_workers

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        services.prepare()
        shutdown = asyncio.Event()
        task = None
        if in_process_workers:
            logger.info("Running workers inside the API process")
            task = asyncio.create_task(services.run_workers(shutdown))
        yield
        shutdown.set()
        if task is not None:
            await task

    app = FastAPI(title="Storefront API", lifespan=lifespan)
    app.state.services = services

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    temp_dir = os.path.join(settings.upload_dir, "temp")
    os.makedirs(temp_dir, exist_ok=True)

    @app.exception_handler(StorefrontError)
    async def storefront_error(request: Request, exc: StorefrontError):
        return JSONResponse(status_code=exc.status_code, content={"success": False, "message": exc.message})

    # Authentication lives in front of this service; it forwards the caller here
    def current_actor(
        x_user_id: str = Header(...),
        x_user_role: str = Header("customer"),
        x_user_name: str = Header(""),
    ) -> Actor:
        return Actor(id=x_user_id, role=x_user_role, name=x_user_name)

    def staff_actor(actor: Actor = Depends(current_actor)) -> Actor:
        if not actor.is_staff:
            raise NotAuthorized("Not authorized")
        return actor

    async def save_upload(f: UploadFile) -> UploadedFile:
        name = os.path.basename(f.filename or "upload")
        dest = os.path.join(temp_dir, f"{uuid.uuid4().hex}_{name}")
        content = await f.read()
        with open(dest, "wb") as out:
            out.write(content)
        return UploadedFile(path=dest, original_name=name, mime_type=f.content_type, size=len(content))

    @app.get("/")
    def root():
        return {"message": "Storefront API"}

    # ---------- Orders ----------

    @app.post("/api/orders", status_code=201)
    def create_order(body: PlaceOrderRequest, actor: Actor = Depends(current_actor)):
        order = services.orders.place_order(actor.id, body)
        return {"success": True, "message": "Order placed successfully",
                "orderId": order["order_id"], "order": serialize_doc(order)}

    @app.get("/api/orders/mine")
    def my_orders(actor: Actor = Depends(current_actor)):
        orders = [serialize_doc(o) for o in services.orders.list_orders_for_user(actor.id)]
        return {"success": True, "count": len(orders), "orders": orders}

    @app.get("/api/orders/{order_id}")
    def get_order(order_id: str, actor: Actor = Depends(current_actor)):
        return {"success": True, "order": serialize_doc(services.orders.get_order_for(order_id, actor))}

    @app.post("/api/orders/{order_id}/cancel")
    def cancel_order(order_id: str, body: CancelOrderRequest, actor: Actor = Depends(current_actor)):
        order = services.orders.cancel_order(order_id, actor, body.reason)
        message = "Order cancelled." if order["status"] == "Cancelled" else "Cancellation requested."
        return {"success": True, "message": message, "order": serialize_doc(order)}

    @app.get("/api/admin/orders")
    def all_orders(actor: Actor = Depends(staff_actor)):
        orders = [serialize_doc(o) for o in services.orders.list_all_orders()]
        return {"success": True, "count": len(orders), "orders": orders}

    @app.put("/api/admin/orders/{order_id}/status")
    def update_order_status(order_id: str, body: StatusUpdateRequest, actor: Actor = Depends(staff_actor)):
        order = services.orders.admin_update_status(order_id, actor, body)
        return {"success": True, "message": "Order Updated", "order": serialize_doc(order)}

    # ---------- Media ----------

    @app.post("/api/profile/picture", status_code=202)
    async def upload_profile_picture(file: UploadFile = File(...), actor: Actor = Depends(current_actor)):
        upload = await save_upload(file)
        target = MediaTarget(collection=TargetCollection.USER, document_id=actor.id, field="profile_picture")
        job = await run_in_threadpool(submit_media, services.queue, services.store, target, upload,
                                      settings.upload_dir, MediaOperation.REPLACE)
        return {"success": True, "jobId": job.id,
                "message": "Profile picture upload started. Processing in background..."}

    @app.post("/api/gallery", status_code=201)
    async def upload_gallery(files: List[UploadFile] = File(...), actor: Actor = Depends(current_actor)):
        uploads = [await save_upload(f) for f in files]
        ids = await run_in_threadpool(create_gallery_uploads, services.store, services.outbox,
                                      actor.id, uploads, settings.upload_dir)
        return {"message": "Uploads started. Images are processing.", "ids": ids}

    @app.get("/api/gallery")
    def public_gallery():
        return [serialize_doc(d) for d in gallery_listing(services.store, admin=False)]

    @app.get("/api/admin/gallery")
    def admin_gallery(actor: Actor = Depends(staff_actor)):
        return [serialize_doc(d) for d in gallery_listing(services.store, admin=True)]

    @app.post("/api/admin/products/{product_id}/visuals/{index}/images", status_code=202)
    async def upload_product_images(product_id: str, index: int, files: List[UploadFile] = File(...),
                                    actor: Actor = Depends(staff_actor)):
        target = MediaTarget(collection=TargetCollection.PRODUCT, document_id=product_id,
                             field="images", array_field="visuals", array_index=index)
        job_ids = []
        for f in files:
            upload = await save_upload(f)
            job = await run_in_threadpool(submit_media, services.queue, services.store, target, upload,
                                          settings.upload_dir, MediaOperation.PUSH)
            job_ids.append(job.id)
        return {"success": True, "jobIds": job_ids}

    @app.post("/api/admin/banners/{banner_id}/image", status_code=202)
    async def upload_banner_image(banner_id: str, file: UploadFile = File(...), actor: Actor = Depends(staff_actor)):
        upload = await save_upload(file)
        target = MediaTarget(collection=TargetCollection.BANNER, document_id=banner_id, field="image")
        job = await run_in_threadpool(submit_media, services.queue, services.store, target, upload,
                                      settings.upload_dir, MediaOperation.REPLACE)
        return {"success": True, "jobId": job.id}

    @app.get("/uploads/{key:path}")
    def serve_upload(key: str):
        if not services.objects.stat_exists(key):
            logger.warning("Object proxy: file not found: %s", key)
            raise NotFound("File not found")
        chunks, content_type = services.objects.get_stream(key)
        return StreamingResponse(chunks, media_type=content_type,
                                 headers={"Cache-Control": settings.cache_control})

    # ---------- Operator ----------

    @app.get("/api/admin/jobs/failed")
    def failed_jobs(queue: Optional[str] = None, actor: Actor = Depends(staff_actor)):
        if queue is not None and queue not in ALL_QUEUES:
            raise InvalidInput(f"Unknown queue {queue}")
        jobs = services.queue.list_jobs(queue, JobStatus.FAILED)
        return [
            {"id": j.id, "queue": j.queue, "name": j.name, "payload": j.payload,
             "attemptsMade": j.attempts_made, "error": j.last_error, "finishedAt": j.finished_at}
            for j in jobs
        ]

    @app.post("/api/admin/jobs/{job_id}/retry")
    def retry_job(job_id: str, actor: Actor = Depends(staff_actor)):
        if not services.queue.retry(job_id):
            raise NotFound("No failed job with that id")
        return {"success": True}

    @app.post("/api/admin/jobs/{job_id}/abandon")
    def abandon_job(job_id: str, actor: Actor = Depends(staff_actor)):
        return {"success": abandon_gallery_job(services.queue, services.store, job_id)}

    @app.get("/test")
    def test_database():
        response = {
            "backend": "✅ Running",
            "database": "❌ Not Available",
            "database_name": None,
            "storage": "local" if isinstance(services.objects, LocalObjectStore) else "s3",
            "collections": [],
            "queues": {},
        }
        try:
            services.store.ping()
            response["database"] = "✅ Connected & Working"
            response["database_name"] = services.store.name
            response["collections"] = services.store.collection_names()[:10]
            response["queues"] = {name: services.queue.counts(name) for name in ALL_QUEUES}
        except Exception as e:
            response["database"] = f"❌ Error: {str(e)[:50]}"
        return response

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
