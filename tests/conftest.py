"""Shared fixtures: an in-process database, a directory-backed object store
and a seeded catalog."""

from __future__ import annotations

import os
import tempfile
from pathlib import Path
from typing import Callable, List

import pytest
from PIL import Image

# main builds a default app at import; keep it off real services and the cwd
_SCRATCH = tempfile.mkdtemp(prefix="storefront-tests-")
for _var in ("DATABASE_URL", "DATABASE_NAME"):
    os.environ.pop(_var, None)
os.environ["STORAGE_BACKEND"] = "local"
os.environ["UPLOAD_DIR"] = os.path.join(_SCRATCH, "uploads")
os.environ["LOCAL_STORAGE_DIR"] = os.path.join(_SCRATCH, "objects")

from database import LocalStore, ensure_indexes  # noqa: E402
from jobqueue import JobQueue  # noqa: E402
from media import MediaProcessor  # noqa: E402
from object_store import LocalObjectStore  # noqa: E402
from orders import OrderService  # noqa: E402
from outbox import Outbox  # noqa: E402
from schemas import OrderLine, PlaceOrderRequest, Product, StockEntry, Visual  # noqa: E402
from settings import Settings  # noqa: E402

USER_ID = "u1"
OTHER_USER_ID = "u2"
ADDRESS_ID = "a1"
PRODUCT_ID = "p1"


def seed_user(store: LocalStore, user_id: str = USER_ID, phone: str = "555-0101") -> None:
    doc = {
        "_id": user_id,
        "fullname": f"Customer {user_id}",
        "role": "customer",
        "addresses": [{
            "_id": ADDRESS_ID, "door": "12", "street": "Main St", "city": "Pune",
            "state": "MH", "zip": "411001", "country": "IN",
        }],
    }
    if phone:
        doc["phone"] = phone
    store.insert_one("user", doc)
    store.insert_one("cart", {"user": user_id, "items": [{"product": PRODUCT_ID, "quantity": 1}]})


def seed_product(store: LocalStore, product_id: str = PRODUCT_ID, stock=None, price: float = 40.0,
                 discount_price=35.0) -> None:
    product = Product(
        title="Linen Shirt",
        price=price,
        discount_price=discount_price,
        visuals=[Visual(color_name="Red", images=["/uploads/product/product-p1-1-aaaaaa.webp"])],
        stock=stock if stock is not None else [StockEntry(color_name="Red", size="M", quantity=2)],
    )
    doc = product.model_dump()
    doc["_id"] = product_id
    store.insert_one("product", doc)


def order_request(*lines, total: float = 70.0, **kwargs) -> PlaceOrderRequest:
    items = [OrderLine(product=p, color=c, size=s, quantity=q) for p, c, s, q in lines]
    return PlaceOrderRequest(items=items, address_id=ADDRESS_ID, total_amount=total, **kwargs)


def stored_keys(objects: LocalObjectStore) -> List[str]:
    keys = []
    for dirpath, _, files in os.walk(objects.root):
        for name in files:
            keys.append(os.path.relpath(os.path.join(dirpath, name), objects.root).replace(os.sep, "/"))
    return sorted(keys)


@pytest.fixture
def store() -> LocalStore:
    """Create an indexed in-process store."""
    store = LocalStore()
    ensure_indexes(store)
    return store


@pytest.fixture
def queue(store: LocalStore) -> JobQueue:
    return JobQueue(store, default_attempts=3, default_backoff_ms=1000, visibility_timeout=30)


@pytest.fixture
def outbox(store: LocalStore, queue: JobQueue) -> Outbox:
    return Outbox(store, queue)


@pytest.fixture
def orders(store: LocalStore, outbox: Outbox) -> OrderService:
    return OrderService(store, outbox)


@pytest.fixture
def shop(store: LocalStore) -> LocalStore:
    """Store seeded with one customer (with a cart) and one product (Red/M x2)."""
    seed_user(store)
    seed_product(store)
    return store


@pytest.fixture
def upload_dir(tmp_path: Path) -> Path:
    path = tmp_path / "uploads"
    (path / "temp").mkdir(parents=True)
    return path


@pytest.fixture
def objects(tmp_path: Path) -> LocalObjectStore:
    return LocalObjectStore(str(tmp_path / "objects"), "test-bucket")


@pytest.fixture
def processor(store: LocalStore, objects: LocalObjectStore, upload_dir: Path) -> MediaProcessor:
    return MediaProcessor(store, objects, str(upload_dir))


@pytest.fixture
def settings(tmp_path: Path, upload_dir: Path) -> Settings:
    return Settings(
        upload_dir=str(upload_dir),
        local_storage_dir=str(tmp_path / "objects"),
        bucket_name="test-bucket",
        worker_poll_interval=0.01,
        worker_concurrency=1,
    )


@pytest.fixture
def make_image(upload_dir: Path) -> Callable[..., str]:
    """Factory writing a solid-colour image into the upload temp directory."""
    counter = {"n": 0}

    def _make(size=(800, 600), color="red", fmt="JPEG", mode="RGB") -> str:
        counter["n"] += 1
        path = upload_dir / "temp" / f"upload-{counter['n']}.{fmt.lower()}"
        Image.new(mode, size, color).save(path, fmt)
        return str(path)

    return _make
