"""Tests for media submission and the media worker."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Callable
from unittest.mock import MagicMock

import pytest
from PIL import Image
from pydantic import ValidationError

from conftest import PRODUCT_ID, USER_ID, seed_product, seed_user, stored_keys
from database import LocalStore
from errors import InvalidMediaTarget, NotFound, SourceFileMissing, TranscodeFailure, UploadFailure
from jobqueue import MEDIA_QUEUE, JobQueue, JobStatus
from media import (
    COLLECTIONS,
    MEDIA_JOB,
    MediaProcessor,
    UploadedFile,
    abandon_gallery_job,
    create_gallery_uploads,
    gallery_listing,
    submit_media,
    transcode,
)
from object_store import LocalObjectStore, public_path
from outbox import Outbox
from schemas import MediaJob, MediaOperation, MediaTarget, TargetCollection


def profile_job(path: str, output_dir: Path, user_id: str = USER_ID) -> dict:
    return MediaJob(
        target=MediaTarget(collection=TargetCollection.USER, document_id=user_id, field="profile_picture"),
        file_path=path, mime_type="image/jpeg", output_dir=str(output_dir),
    ).to_payload()


def product_job(path: str, output_dir: Path, index: int = 0) -> dict:
    return MediaJob(
        target=MediaTarget(collection=TargetCollection.PRODUCT, document_id=PRODUCT_ID, field="images",
                           array_field="visuals", array_index=index),
        file_path=path, mime_type="image/jpeg", output_dir=str(output_dir), operation=MediaOperation.PUSH,
    ).to_payload()


class TestTranscode:
    def test_profile_picture_is_cover_cropped(self, make_image: Callable, tmp_path: Path) -> None:
        dest = tmp_path / "out.webp"
        transcode(make_image(size=(800, 600)), str(dest), COLLECTIONS[TargetCollection.USER].profile)

        with Image.open(dest) as img:
            assert img.format == "WEBP"
            assert img.size == (500, 500)

    def test_product_fits_inside_box(self, make_image: Callable, tmp_path: Path) -> None:
        dest = tmp_path / "out.webp"
        transcode(make_image(size=(2400, 1200)), str(dest), COLLECTIONS[TargetCollection.PRODUCT].profile)

        with Image.open(dest) as img:
            assert img.size == (1200, 600)

    def test_small_gallery_image_not_enlarged(self, make_image: Callable, tmp_path: Path) -> None:
        dest = tmp_path / "out.webp"
        transcode(make_image(size=(640, 480)), str(dest), COLLECTIONS[TargetCollection.GALLERY].profile)

        with Image.open(dest) as img:
            assert img.size == (640, 480)

    def test_banner_keeps_size(self, make_image: Callable, tmp_path: Path) -> None:
        dest = tmp_path / "out.webp"
        transcode(make_image(size=(3000, 900), fmt="PNG", mode="RGBA", color=(0, 0, 255, 128)), str(dest),
                  COLLECTIONS[TargetCollection.BANNER].profile)

        with Image.open(dest) as img:
            assert img.size == (3000, 900)

    def test_unreadable_input(self, tmp_path: Path) -> None:
        source = tmp_path / "notes.jpg"
        source.write_text("not an image")

        with pytest.raises(TranscodeFailure):
            transcode(str(source), str(tmp_path / "out.webp"), COLLECTIONS[TargetCollection.USER].profile)


class TestReplace:
    def test_second_profile_picture_leaves_one_object(self, store: LocalStore, objects: LocalObjectStore,
                                                      processor: MediaProcessor, make_image: Callable,
                                                      upload_dir: Path) -> None:
        seed_user(store)

        first = processor(profile_job(make_image(), upload_dir))
        second = processor(profile_job(make_image(color="blue"), upload_dir))

        assert first != second
        user = store.find_one("user", {"_id": USER_ID})
        assert user["profile_picture"] == second
        keys = stored_keys(objects)
        assert len(keys) == 1
        assert public_path(keys[0]) == second
        assert keys[0].startswith("user/user-u1-")

    def test_local_files_cleaned_after_success(self, store: LocalStore, processor: MediaProcessor,
                                               make_image: Callable, upload_dir: Path) -> None:
        seed_user(store)
        source = make_image()

        processor(profile_job(source, upload_dir))

        assert not os.path.exists(source)
        assert not [f for f in os.listdir(upload_dir) if f.endswith(".webp")]

    def test_relative_source_resolves_against_upload_root(self, store: LocalStore, processor: MediaProcessor,
                                                          make_image: Callable, upload_dir: Path) -> None:
        seed_user(store)
        source = make_image()
        relative = os.path.relpath(source, upload_dir)

        assert processor(profile_job(relative, upload_dir)).startswith("/uploads/user/")

    def test_gallery_entry_marked_completed(self, store: LocalStore, outbox: Outbox, queue: JobQueue,
                                            processor: MediaProcessor, make_image: Callable,
                                            upload_dir: Path) -> None:
        uploads = [UploadedFile(make_image(), "beach.jpg", "image/jpeg", 100),
                   UploadedFile(make_image(), "hills.jpg", "image/jpeg", 120)]
        ids = create_gallery_uploads(store, outbox, "admin1", uploads, str(upload_dir))

        assert [d["order"] for d in gallery_listing(store, admin=True)] == [0, 1]
        assert gallery_listing(store) == []

        job = queue.claim(MEDIA_QUEUE)
        assert job.name == MEDIA_JOB
        processor(job.payload)

        public = gallery_listing(store)
        assert len(public) == 1
        assert set(public[0]) == {"_id", "order", "url", "title"}
        assert public[0]["_id"] in ids
        assert public[0]["url"].startswith("/uploads/gallery/gallery-")

    def test_gallery_order_continues_after_last_image(self, store: LocalStore, outbox: Outbox,
                                                      make_image: Callable, upload_dir: Path) -> None:
        create_gallery_uploads(store, outbox, "admin1", [UploadedFile(make_image(), "a.jpg")], str(upload_dir))
        create_gallery_uploads(store, outbox, "admin1", [UploadedFile(make_image(), "b.jpg")], str(upload_dir))

        assert [d["title"] for d in gallery_listing(store, admin=True)] == ["a.jpg", "b.jpg"]
        assert [d["order"] for d in gallery_listing(store, admin=True)] == [0, 1]

    def test_vanished_document_discards_object(self, store: LocalStore, objects: LocalObjectStore,
                                               processor: MediaProcessor, make_image: Callable,
                                               upload_dir: Path) -> None:
        assert processor(profile_job(make_image(), upload_dir, user_id="gone")) is None
        assert stored_keys(objects) == []


class TestPush:
    def test_images_appended_to_visual(self, store: LocalStore, processor: MediaProcessor,
                                       make_image: Callable, upload_dir: Path) -> None:
        seed_product(store)

        first = processor(product_job(make_image(), upload_dir))
        second = processor(product_job(make_image(), upload_dir))

        images = store.find_one("product", {"_id": PRODUCT_ID})["visuals"][0]["images"]
        assert images[-2:] == [first, second]
        assert len(images) == 3


class TestFailures:
    def test_missing_source_is_not_retriable(self, store: LocalStore, processor: MediaProcessor,
                                             upload_dir: Path) -> None:
        seed_user(store)
        with pytest.raises(SourceFileMissing) as excinfo:
            processor(profile_job(str(upload_dir / "temp" / "nope.jpg"), upload_dir))
        assert excinfo.value.retriable is False

    def test_upload_failure_keeps_source_for_retry(self, store: LocalStore, make_image: Callable,
                                                   upload_dir: Path) -> None:
        seed_user(store)
        objects = MagicMock()
        objects.put.side_effect = ConnectionError("endpoint unreachable")
        processor = MediaProcessor(store, objects, str(upload_dir))
        source = make_image()

        with pytest.raises(UploadFailure) as excinfo:
            processor(profile_job(source, upload_dir))

        assert excinfo.value.retriable is True
        assert os.path.exists(source)
        assert not [f for f in os.listdir(upload_dir) if f.endswith(".webp")]
        assert "profile_picture" not in store.find_one("user", {"_id": USER_ID})


    def test_failed_patch_removes_uploaded_object(self, store: LocalStore, objects: LocalObjectStore,
                                                  processor: MediaProcessor, make_image: Callable,
                                                  upload_dir: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        seed_user(store)

        def unavailable(*args, **kwargs):
            raise ConnectionError("primary stepped down")

        monkeypatch.setattr(store, "update_one", unavailable)
        source = make_image()
        for _ in range(3):
            with pytest.raises(ConnectionError):
                processor(profile_job(source, upload_dir))

        assert stored_keys(objects) == []
        assert os.path.exists(source)

    def test_exhausted_replace_removes_uploaded_object(self, store: LocalStore, objects: LocalObjectStore,
                                                       processor: MediaProcessor, make_image: Callable,
                                                       upload_dir: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        seed_user(store)
        monkeypatch.setattr(store, "update_one", lambda *args, **kwargs: 0)

        with pytest.raises(UploadFailure):
            processor(profile_job(make_image(), upload_dir))

        assert stored_keys(objects) == []


class TestSubmission:
    def test_submit_queues_job(self, store: LocalStore, queue: JobQueue, make_image: Callable,
                               upload_dir: Path) -> None:
        seed_product(store)
        target = MediaTarget(collection=TargetCollection.PRODUCT, document_id=PRODUCT_ID, field="images",
                             array_field="visuals", array_index=0)

        job = submit_media(queue, store, target, UploadedFile(make_image()), str(upload_dir))

        assert job.queue == MEDIA_QUEUE
        assert job.payload["operation"] == "push"
        assert job.payload["target"] == {"collection": "product", "documentId": PRODUCT_ID,
                                         "field": "images", "arrayField": "visuals", "arrayIndex": 0}

    def test_unknown_field_rejected(self, store: LocalStore, queue: JobQueue, upload_dir: Path) -> None:
        seed_user(store)
        target = MediaTarget(collection=TargetCollection.USER, document_id=USER_ID, field="password")

        with pytest.raises(InvalidMediaTarget):
            submit_media(queue, store, target, UploadedFile("x.jpg"), str(upload_dir))
        assert queue.counts(MEDIA_QUEUE)["waiting"] == 0

    def test_array_index_out_of_range(self, store: LocalStore, queue: JobQueue, upload_dir: Path) -> None:
        seed_product(store)
        target = MediaTarget(collection=TargetCollection.PRODUCT, document_id=PRODUCT_ID, field="images",
                             array_field="visuals", array_index=4)

        with pytest.raises(InvalidMediaTarget):
            submit_media(queue, store, target, UploadedFile("x.jpg"), str(upload_dir))

    def test_missing_document(self, store: LocalStore, queue: JobQueue, upload_dir: Path) -> None:
        target = MediaTarget(collection=TargetCollection.BANNER, document_id="b9", field="image")

        with pytest.raises(NotFound):
            submit_media(queue, store, target, UploadedFile("x.jpg"), str(upload_dir))

    def test_push_onto_scalar_rejected(self, store: LocalStore, queue: JobQueue, upload_dir: Path) -> None:
        seed_user(store)
        target = MediaTarget(collection=TargetCollection.USER, document_id=USER_ID, field="profile_picture")

        with pytest.raises(InvalidMediaTarget):
            submit_media(queue, store, target, UploadedFile("x.jpg"), str(upload_dir), MediaOperation.PUSH)

    def test_array_field_requires_index(self) -> None:
        with pytest.raises(ValidationError):
            MediaTarget.model_validate({"collection": "product", "documentId": "p1", "field": "images",
                                        "arrayField": "visuals"})

    def test_collection_is_closed(self) -> None:
        with pytest.raises(ValidationError):
            MediaTarget.model_validate({"collection": "employee", "documentId": "e1", "field": "photo"})


class TestAbandon:
    def test_parked_gallery_job_marks_entry_failed(self, store: LocalStore, outbox: Outbox, queue: JobQueue,
                                                   make_image: Callable, upload_dir: Path) -> None:
        [gallery_id] = create_gallery_uploads(store, outbox, "admin1", [UploadedFile(make_image(), "a.jpg")],
                                              str(upload_dir))
        job = queue.claim(MEDIA_QUEUE)
        queue.fail(job, "SourceFileMissing: gone", retriable=False)

        assert abandon_gallery_job(queue, store, job.id) is True
        assert store.find_one("gallery", {"_id": gallery_id})["status"] == "failed"
        assert queue.get(job.id).status is JobStatus.FAILED
