"""
Image pipeline: request-side submission and the media worker.

Uploads are written to a local upload directory by the API and described by
a MediaJob. The worker transcodes the file according to the profile of the
owning collection, uploads the result to the object store, points the owning
document at it and cleans up local files.

Supported targets form a closed set. Each collection carries its transcode
profile, its object key prefix and the fields a job may write:

    user     profile_picture          500x500 cover crop      replace
    product  visuals.<i>.images       fit 1200x1200           push
    gallery  url                      fit 1920x1080           replace (+ status)
    banner   image                    original size           replace

All output is WebP at quality 80.
"""
from __future__ import annotations

import logging
import os
import uuid
from dataclasses import dataclass, field
from typing import Callable, Dict, FrozenSet, List, Optional, Tuple

from PIL import Image, ImageOps, UnidentifiedImageError

from database import DocumentStore, create_document, now_utc
from errors import InvalidMediaTarget, NotFound, SourceFileMissing, TranscodeFailure, UploadFailure
from jobqueue import MEDIA_QUEUE, Job, JobQueue
from object_store import PUBLIC_PREFIX, ObjectStore, key_from_public_path, public_path
from outbox import Outbox
from schemas import Gallery, MediaJob, MediaOperation, MediaStatus, MediaTarget, TargetCollection

logger = logging.getLogger(__name__)

MEDIA_JOB = "process-media"
REPLACE_ATTEMPTS = 3


@dataclass(frozen=True)
class TranscodeProfile:
    max_size: Optional[Tuple[int, int]] = None
    crop: bool = False
    quality: int = 80
    format: str = "WEBP"
    extension: str = "webp"
    content_type: str = "image/webp"


@dataclass(frozen=True)
class CollectionMedia:
    collection: TargetCollection
    key_prefix: str
    profile: TranscodeProfile
    # (array_field, field) pairs a job may address
    fields: FrozenSet[Tuple[Optional[str], str]] = field(default_factory=frozenset)
    marks_completed: bool = False

    @property
    def default_operation(self) -> MediaOperation:
        array_only = all(array_field for array_field, _ in self.fields)
        return MediaOperation.PUSH if array_only else MediaOperation.REPLACE


COLLECTIONS: Dict[TargetCollection, CollectionMedia] = {
    TargetCollection.USER: CollectionMedia(
        TargetCollection.USER, "user",
        TranscodeProfile(max_size=(500, 500), crop=True),
        frozenset({(None, "profile_picture")}),
    ),
    TargetCollection.PRODUCT: CollectionMedia(
        TargetCollection.PRODUCT, "product",
        TranscodeProfile(max_size=(1200, 1200)),
        frozenset({("visuals", "images")}),
    ),
    TargetCollection.GALLERY: CollectionMedia(
        TargetCollection.GALLERY, "gallery",
        TranscodeProfile(max_size=(1920, 1080)),
        frozenset({(None, "url")}),
        marks_completed=True,
    ),
    TargetCollection.BANNER: CollectionMedia(
        TargetCollection.BANNER, "banner",
        TranscodeProfile(),
        frozenset({(None, "image")}),
    ),
}


@dataclass
class UploadedFile:
    path: str
    original_name: str = ""
    mime_type: Optional[str] = None
    size: Optional[int] = None


# ---------------------
# Request side
# ---------------------

def validate_target(store: DocumentStore, target: MediaTarget, operation: MediaOperation, session=None) -> dict:
    """Check a target before a job is queued for it; returns the owning document."""
    config = COLLECTIONS[target.collection]
    if (target.array_field, target.field) not in config.fields:
        raise InvalidMediaTarget(f"{target.path} is not an image field of {target.collection.value}")
    if operation.appends and target.array_field is None:
        raise InvalidMediaTarget(f"cannot push onto scalar field {target.path}")
    doc = store.find_one(target.collection.value, {"_id": target.document_id}, session=session)
    if doc is None:
        raise NotFound(f"{target.collection.value} {target.document_id} not found")
    if target.array_field is not None:
        elements = doc.get(target.array_field) or []
        if target.array_index >= len(elements):
            raise InvalidMediaTarget(
                f"{target.array_field} has no element {target.array_index} "
                f"({len(elements)} present) on {target.collection.value} {target.document_id}"
            )
    return doc


def submit_media(queue: JobQueue, store: DocumentStore, target: MediaTarget, upload: UploadedFile,
                 output_dir: str, operation: Optional[MediaOperation] = None) -> Job:
    operation = operation or COLLECTIONS[target.collection].default_operation
    validate_target(store, target, operation)
    job = MediaJob(target=target, file_path=upload.path, mime_type=upload.mime_type,
                   output_dir=output_dir, operation=operation)
    queued = queue.enqueue(MEDIA_QUEUE, MEDIA_JOB, job.to_payload())
    logger.info("Queued %s image for %s %s (job %s)", operation.value,
                target.collection.value, target.document_id, queued.id)
    return queued


def create_gallery_uploads(store: DocumentStore, outbox: Outbox, uploader_id: Optional[str],
                           uploads: List[UploadedFile], output_dir: str) -> List[str]:
    """Create one ``processing`` gallery entry per file and queue its media job.

    Entries are ordered after the uploader's current last image. Documents and
    jobs are written in one transaction.
    """
    if not uploads:
        raise InvalidMediaTarget("No files uploaded")

    def txn(session) -> List[str]:
        last = store.find_one("gallery", {"uploaded_by": uploader_id}, sort=[("order", -1)], session=session)
        next_order = last["order"] + 1 if last else 0
        ids = []
        for offset, upload in enumerate(uploads):
            entry = Gallery(
                uploaded_by=uploader_id,
                title=upload.original_name,
                file_type=upload.mime_type,
                size=upload.size,
                order=next_order + offset,
            )
            gallery_id = create_document(store, "gallery", entry, session=session)
            job = MediaJob(
                target=MediaTarget(collection=TargetCollection.GALLERY, document_id=gallery_id, field="url"),
                file_path=upload.path, mime_type=upload.mime_type, output_dir=output_dir,
                operation=MediaOperation.SET,
            )
            outbox.add(session, MEDIA_QUEUE, MEDIA_JOB, job.to_payload())
            ids.append(gallery_id)
        return ids

    ids = store.transaction(txn)
    outbox.flush_quietly()
    return ids


def gallery_listing(store: DocumentStore, admin: bool = False) -> List[dict]:
    """Admins see every entry; everyone else only finished images."""
    if admin:
        return store.find("gallery", {}, sort=[("order", 1)])
    return store.find(
        "gallery", {"status": MediaStatus.COMPLETED.value},
        sort=[("order", 1)], projection={"order": 1, "url": 1, "title": 1},
    )


def abandon_gallery_job(queue: JobQueue, store: DocumentStore, job_id: str) -> bool:
    """Operator decision for a parked gallery job: mark its entry ``failed``."""
    job = queue.get(job_id)
    if job is None:
        raise NotFound(f"Job {job_id} not found")
    media = MediaJob.model_validate(job.payload)
    if media.target.collection is not TargetCollection.GALLERY:
        raise InvalidMediaTarget("Only gallery jobs have a visible status to fail")
    matched = store.update_one(
        "gallery",
        {"_id": media.target.document_id, "status": MediaStatus.PROCESSING.value},
        {"$set": {"status": MediaStatus.FAILED.value, "updated_at": now_utc()}},
    )
    return bool(matched)


# ---------------------
# Worker side
# ---------------------

def transcode(source: str, dest: str, profile: TranscodeProfile) -> None:
    try:
        with Image.open(source) as opened:
            img = ImageOps.exif_transpose(opened)
            img = img.convert("RGBA" if img.mode in ("RGBA", "LA", "P", "PA") else "RGB")
            if profile.max_size and profile.crop:
                img = ImageOps.fit(img, profile.max_size, Image.Resampling.LANCZOS)
            elif profile.max_size:
                # thumbnail only ever shrinks
                img.thumbnail(profile.max_size, Image.Resampling.LANCZOS)
            img.save(dest, profile.format, quality=profile.quality)
    except (UnidentifiedImageError, OSError, ValueError) as e:
        raise TranscodeFailure(f"Could not transcode {source}: {e}") from e
    if not os.path.exists(dest) or os.path.getsize(dest) == 0:
        raise TranscodeFailure(f"Transcode of {source} produced no output")


class MediaProcessor:
    """Handler for ``process-media`` jobs."""

    def __init__(self, store: DocumentStore, objects: ObjectStore, upload_root: str,
                 public_prefix: str = PUBLIC_PREFIX, clock: Callable = now_utc):
        self.store = store
        self.objects = objects
        self.upload_root = upload_root
        self.public_prefix = public_prefix
        self.clock = clock

    def __call__(self, payload: dict) -> Optional[str]:
        return self.process(MediaJob.model_validate(payload))

    def process(self, job: MediaJob) -> Optional[str]:
        target = job.target
        config = COLLECTIONS[target.collection]
        source = self.resolve_source(job.file_path)
        logger.info("Processing %s image for %s %s from %s", job.operation.value,
                    target.collection.value, target.document_id, source)

        os.makedirs(job.output_dir, exist_ok=True)
        stamp = int(self.clock().timestamp() * 1000)
        filename = (f"{config.key_prefix}-{target.document_id}-{stamp}-{uuid.uuid4().hex[:6]}"
                    f".{config.profile.extension}")
        temp_output = os.path.join(job.output_dir, filename)
        key = f"{config.key_prefix}/{filename}"
        try:
            transcode(source, temp_output, config.profile)
            try:
                self.objects.put(key, temp_output, config.profile.content_type)
            except Exception as e:
                raise UploadFailure(f"Upload of {key} failed: {e}") from e
            stored = public_path(key, self.public_prefix)
            try:
                patched = self._patch(job, config, key, stored)
            except Exception:
                # Nothing references the new object yet; a retry uploads under a fresh key
                self.objects.remove(key)
                raise
            if not patched:
                logger.warning("%s %s vanished before its image was ready; discarding %s",
                               target.collection.value, target.document_id, key)
                self.objects.remove(key)
                stored = None
        finally:
            _remove_quietly(temp_output)
        _remove_quietly(source)
        if stored:
            logger.info("Image for %s %s stored at %s", target.collection.value, target.document_id, stored)
        return stored

    def resolve_source(self, file_path: str) -> str:
        candidates = [os.path.abspath(file_path)]
        if not os.path.isabs(file_path):
            candidates.append(os.path.abspath(os.path.join(self.upload_root, file_path)))
        for candidate in candidates:
            if os.path.isfile(candidate):
                return candidate
        raise SourceFileMissing(f"Input file missing: {file_path}")

    def _patch(self, job: MediaJob, config: CollectionMedia, key: str, stored: str) -> bool:
        target = job.target
        collection = target.collection.value
        if job.operation.appends:
            # $push keeps concurrent uploads to the same array from clobbering each other
            filter = {"_id": target.document_id, f"{target.array_field}.{target.array_index}": {"$exists": True}}
            return bool(self.store.update_one(
                collection, filter, {"$push": {target.path: stored}, "$set": {"updated_at": self.clock()}},
            ))

        for _ in range(REPLACE_ATTEMPTS):
            doc = self.store.find_one(collection, {"_id": target.document_id})
            if doc is None:
                return False
            previous = _value_at(doc, target.path)
            changes = {target.path: stored, "updated_at": self.clock()}
            if config.marks_completed:
                changes["status"] = MediaStatus.COMPLETED.value
            # Compare-and-set on the value read so a racing replace cannot orphan an object
            matched = self.store.update_one(
                collection, {"_id": target.document_id, target.path: previous}, {"$set": changes},
            )
            if matched:
                old_key = key_from_public_path(previous, self.public_prefix)
                if old_key and old_key != key:
                    logger.info("Removing superseded object %s", old_key)
                    self.objects.remove(old_key)
                return True
        raise UploadFailure(f"{collection} {target.document_id} kept changing under replace of {target.path}")


def _value_at(doc: dict, path: str):
    current = doc
    for part in path.split("."):
        if isinstance(current, list) and part.isdigit() and int(part) < len(current):
            current = current[int(part)]
        elif isinstance(current, dict):
            current = current.get(part)
        else:
            return None
    return current


def _remove_quietly(path: str) -> None:
    try:
        if os.path.exists(path):
            os.remove(path)
    except OSError as e:
        logger.warning("Could not remove %s: %s", path, e)
