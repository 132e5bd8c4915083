"""
Database Schemas

Pydantic models for the MongoDB collections this service writes and for the
JSON payloads carried by queue jobs.
Collection names are the lowercase model name (e.g. Order -> "order").
Queue payloads serialize with camelCase aliases (``model_dump(by_alias=True)``).
"""
from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


class DocumentModel(BaseModel):
    model_config = ConfigDict(use_enum_values=True)


class PayloadModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    def to_payload(self) -> dict:
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")


# ---------------------
# Orders
# ---------------------

class OrderStatus(str, Enum):
    PENDING = "Pending"
    PROCESSING = "Processing"
    SHIPPED = "Shipped"
    DELIVERED = "Delivered"
    CANCELLED = "Cancelled"
    CANCELLATION_REQUESTED = "Cancellation Requested"


class PaymentStatus(str, Enum):
    PENDING = "Pending"
    PAID = "Paid"
    FAILED = "Failed"
    REFUNDED = "Refunded"


class OrderStep(DocumentModel):
    status: OrderStatus
    date: datetime
    description: str = ""
    processed_by: str = Field("System", description="Customer, System Worker, Admin (name), Staff (name)")


class OrderItem(DocumentModel):
    product: str = Field(..., description="Referenced product _id")
    title: str = Field(..., description="Snapshot of title at purchase time")
    price: float = Field(..., ge=0, description="Unit price at purchase time")
    quantity: int = Field(..., ge=1)
    color: Optional[str] = None
    size: Optional[str] = None
    image: Optional[str] = None


class ShippingAddress(DocumentModel):
    name: str
    door: Optional[str] = None
    street: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    zip: Optional[str] = None
    country: Optional[str] = None
    phone: Optional[str] = None


class Order(DocumentModel):
    """
    Orders schema
    Collection: "order"
    """
    order_id: str = Field(..., description="Human readable id, ORD-{ms}-{random}")
    user: str
    items: List[OrderItem]
    shipping_address: ShippingAddress
    total_amount: float = Field(..., ge=0, description="Stored at creation, never recomputed")
    payment_method: str = "COD"
    payment_status: PaymentStatus = PaymentStatus.PENDING
    status: OrderStatus = OrderStatus.PENDING
    steps: List[OrderStep] = Field(default_factory=list)
    cancellation_reason: Optional[str] = None
    cancelled_at: Optional[datetime] = None
    processed_by_worker: bool = False
    tracking_number: Optional[str] = None


class OrderLine(BaseModel):
    product: str
    color: str = ""
    size: str = ""
    quantity: int = Field(..., ge=1)
    image: Optional[str] = None


class PlaceOrderRequest(BaseModel):
    items: List[OrderLine] = Field(..., min_length=1)
    address_id: str
    payment_method: str = "COD"
    total_amount: float = Field(..., ge=0)
    phone: Optional[str] = None


class CancelOrderRequest(BaseModel):
    reason: Optional[str] = None


class StatusUpdateRequest(BaseModel):
    status: Optional[OrderStatus] = None
    tracking_number: Optional[str] = None
    description: Optional[str] = None
    payment_status: Optional[PaymentStatus] = None


class StockEntry(DocumentModel):
    color_name: str
    size: str
    quantity: int = Field(0, ge=0)
    sku: Optional[str] = None


class Visual(DocumentModel):
    color_name: str = ""
    hex_code: Optional[str] = None
    images: List[str] = Field(default_factory=list)


class Product(DocumentModel):
    """
    Product catalog schema
    Collection: "product"
    """
    title: str
    description: str = ""
    category: str = ""
    price: float = Field(..., ge=0)
    discount_price: Optional[float] = Field(None, ge=0)
    visuals: List[Visual] = Field(default_factory=list)
    stock: List[StockEntry] = Field(default_factory=list)


# ---------------------
# Media documents
# ---------------------

class MediaStatus(str, Enum):
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class Gallery(DocumentModel):
    """
    Gallery image schema
    Collection: "gallery"
    """
    uploaded_by: Optional[str] = None
    url: str = Field("", description="Filled in by the media worker")
    title: str = ""
    category: str = "Upload"
    status: MediaStatus = MediaStatus.PROCESSING
    order: int = 0
    file_type: Optional[str] = None
    size: Optional[int] = None


class Banner(DocumentModel):
    """
    Banner schema
    Collection: "banner"
    """
    title: str = ""
    subtitle: str = ""
    image: Optional[str] = None
    page: str = Field("home", description="home | shop")
    order: int = 0


# ---------------------
# Queue payloads
# ---------------------

class TargetCollection(str, Enum):
    USER = "user"
    PRODUCT = "product"
    GALLERY = "gallery"
    BANNER = "banner"


class MediaOperation(str, Enum):
    PUSH = "push"
    REPLACE = "replace"
    SET = "set"

    @property
    def appends(self) -> bool:
        return self is MediaOperation.PUSH


class MediaTarget(PayloadModel):
    """Address of the image reference a media job writes."""

    collection: TargetCollection
    document_id: str = Field(..., alias="documentId", min_length=1)
    field: str = Field(..., min_length=1)
    array_field: Optional[str] = Field(None, alias="arrayField")
    array_index: Optional[int] = Field(None, alias="arrayIndex", ge=0)

    @model_validator(mode="after")
    def _array_pair(self) -> "MediaTarget":
        if (self.array_field is None) != (self.array_index is None):
            raise ValueError("arrayField and arrayIndex must be given together")
        return self

    @property
    def path(self) -> str:
        if self.array_field is not None:
            return f"{self.array_field}.{self.array_index}.{self.field}"
        return self.field


class MediaJob(PayloadModel):
    target: MediaTarget
    file_path: str = Field(..., alias="filePath")
    mime_type: Optional[str] = Field(None, alias="mimeType")
    output_dir: str = Field(..., alias="outputDir")
    operation: MediaOperation = MediaOperation.REPLACE


class NotificationData(BaseModel):
    title: str
    message: str
    url: str = ""


class NotifyJob(PayloadModel):
    type: str = Field(..., description="push-user | notify-roles")
    recipient_id: Optional[str] = Field(None, alias="recipientId")
    roles: Optional[List[str]] = None
    data: NotificationData


class AdvanceJob(PayloadModel):
    order_id: str = Field(..., alias="orderId")
    user_id: str = Field(..., alias="userId")
