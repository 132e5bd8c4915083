"""
Blob storage for processed media.

Objects are addressed by ``{collection}/{filename}`` keys inside one bucket.
Documents store the public reference ``/uploads/{key}``; the API proxies
that path back to the store.

Two backends share the same surface:
- S3ObjectStore: any S3-compatible service (AWS S3, MinIO) through boto3.
- LocalObjectStore: a directory on disk, for development and tests.

``remove`` never raises for a missing object: deletion is cleanup, not a
correctness requirement.
"""
from __future__ import annotations

import logging
import mimetypes
import os
import shutil
from typing import Iterator, Optional, Tuple, Union

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from errors import NotFound

logger = logging.getLogger(__name__)

CHUNK_SIZE = 64 * 1024
PUBLIC_PREFIX = "/uploads"
_MISSING_CODES = {"404", "NoSuchKey", "NotFound"}

mimetypes.add_type("image/webp", ".webp")


def public_path(key: str, prefix: str = PUBLIC_PREFIX) -> str:
    return f"{prefix.rstrip('/')}/{key}"


def key_from_public_path(path: Optional[str], prefix: str = PUBLIC_PREFIX) -> Optional[str]:
    """Map a stored reference back to its object key; None for foreign values."""
    if not path:
        return None
    marker = prefix.rstrip("/") + "/"
    if path.startswith(marker):
        return path[len(marker):] or None
    return None


class S3ObjectStore:
    """S3-compatible object storage."""

    def __init__(self, bucket: str, endpoint_url: Optional[str] = None, access_key: Optional[str] = None,
                 secret_key: Optional[str] = None, region: str = "us-east-1", client=None):
        self.bucket = bucket
        self._client = client or boto3.client(
            "s3",
            endpoint_url=endpoint_url,
            aws_access_key_id=access_key,
            aws_secret_access_key=secret_key,
            region_name=region,
            config=Config(signature_version="s3v4", s3={"addressing_style": "path"}),
        )

    def ensure_bucket(self) -> None:
        try:
            self._client.head_bucket(Bucket=self.bucket)
        except ClientError:
            logger.info("Creating bucket %s", self.bucket)
            self._client.create_bucket(Bucket=self.bucket)

    def put(self, key: str, local_path: str, content_type: str) -> None:
        self._client.upload_file(local_path, self.bucket, key, ExtraArgs={"ContentType": content_type})

    def stat_exists(self, key: str) -> bool:
        try:
            self._client.head_object(Bucket=self.bucket, Key=key)
            return True
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") in _MISSING_CODES:
                return False
            raise

    def get_stream(self, key: str) -> Tuple[Iterator[bytes], str]:
        try:
            response = self._client.get_object(Bucket=self.bucket, Key=key)
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") in _MISSING_CODES:
                raise NotFound(f"Object {key} not found") from e
            raise
        content_type = response.get("ContentType") or _guess_type(key)
        return response["Body"].iter_chunks(CHUNK_SIZE), content_type

    def remove(self, key: str) -> None:
        try:
            self._client.delete_object(Bucket=self.bucket, Key=key)
        except (ClientError, BotoCoreError) as e:
            logger.warning("Object %s could not be removed (ignored): %s", key, e)


class LocalObjectStore:
    """Objects kept as files under ``root/bucket``."""

    def __init__(self, root: str, bucket: str = "storefront"):
        self.bucket = bucket
        self.root = os.path.abspath(os.path.join(root, bucket))
        os.makedirs(self.root, exist_ok=True)

    def ensure_bucket(self) -> None:
        os.makedirs(self.root, exist_ok=True)

    def _path(self, key: str) -> str:
        path = os.path.abspath(os.path.join(self.root, key))
        if os.path.commonpath([self.root, path]) != self.root or path == self.root:
            raise NotFound(f"Object {key} not found")
        return path

    def put(self, key: str, local_path: str, content_type: str) -> None:
        dest = self._path(key)
        os.makedirs(os.path.dirname(dest), exist_ok=True)
        shutil.copyfile(local_path, dest)

    def stat_exists(self, key: str) -> bool:
        try:
            return os.path.isfile(self._path(key))
        except NotFound:
            return False

    def get_stream(self, key: str) -> Tuple[Iterator[bytes], str]:
        path = self._path(key)
        if not os.path.isfile(path):
            raise NotFound(f"Object {key} not found")
        return _iter_file(path), _guess_type(key)

    def remove(self, key: str) -> None:
        try:
            os.remove(self._path(key))
        except (OSError, NotFound) as e:
            logger.debug("Object %s could not be removed (ignored): %s", key, e)


ObjectStore = Union[S3ObjectStore, LocalObjectStore]


def make_object_store(settings) -> ObjectStore:
    if settings.storage_backend == "s3":
        return S3ObjectStore(
            settings.bucket_name,
            endpoint_url=settings.s3_endpoint_url,
            access_key=settings.s3_access_key,
            secret_key=settings.s3_secret_key,
            region=settings.s3_region,
        )
    return LocalObjectStore(settings.local_storage_dir, settings.bucket_name)


def _iter_file(path: str) -> Iterator[bytes]:
    with open(path, "rb") as f:
        while True:
            chunk = f.read(CHUNK_SIZE)
            if not chunk:
                break
            yield chunk


def _guess_type(key: str) -> str:
    return mimetypes.guess_type(key)[0] or "application/octet-stream"
