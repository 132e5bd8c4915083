"""
Order fulfillment.

Placing an order is one multi-document transaction: stock is decremented,
the order is written with its first timeline step, the cart is deleted and
the follow-up jobs are recorded in the outbox. Either all of it commits or
none of it does.

After placement an order moves through:

    Pending ──(worker, delayed)──→ Processing ──→ Shipped ──→ Delivered
       │                              │
       └──(customer)──→ Cancelled     └──(customer)──→ Cancellation Requested
                            ↑                               │
                            └──────(staff approves)─────────┤
                                   Processing ←─(rejects)───┘

Every transition appends to the order's ``steps`` log and is applied with a
filter on the status it was decided from, so concurrent actors cannot both
win.
"""
from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass
from typing import Callable, Dict, FrozenSet, List, Optional

from database import DocumentStore, create_document, now_utc
from errors import (
    Conflict,
    InsufficientStock,
    InvalidInput,
    InvalidTransition,
    NotAuthorized,
    NotFound,
    VariantUnavailable,
)
from jobqueue import ORDER_QUEUE
from notifications import queue_notification, role_notification, user_notification
from outbox import Outbox
from schemas import (
    AdvanceJob,
    Order,
    OrderItem,
    OrderStatus,
    OrderStep,
    PaymentStatus,
    PlaceOrderRequest,
    ShippingAddress,
    StatusUpdateRequest,
)

logger = logging.getLogger(__name__)

ORDERS = "order"
ADVANCE_JOB = "process-order"
MANUAL_SETTLEMENT = "COD"
STAFF_ROLES = ("admin", "staff")

# Direct staff overrides. Delivered and Cancelled are terminal; Cancellation
# Requested is handled as approve/reject.
STAFF_TRANSITIONS: Dict[OrderStatus, FrozenSet[OrderStatus]] = {
    OrderStatus.PENDING: frozenset({OrderStatus.PROCESSING, OrderStatus.SHIPPED,
                                    OrderStatus.DELIVERED, OrderStatus.CANCELLED}),
    OrderStatus.PROCESSING: frozenset({OrderStatus.SHIPPED, OrderStatus.DELIVERED, OrderStatus.CANCELLED}),
    OrderStatus.SHIPPED: frozenset({OrderStatus.DELIVERED}),
}


@dataclass
class Actor:
    id: str
    role: str = "customer"
    name: str = ""

    @property
    def is_staff(self) -> bool:
        return self.role in STAFF_ROLES

    @property
    def label(self) -> str:
        kind = "Admin" if self.role == "admin" else "Staff"
        return f"{kind} ({self.name or self.id})"


def normalize(value) -> str:
    return str(value or "").strip().lower()


def find_variant(stock: List[dict], color: str, size: str) -> Optional[int]:
    """Index of the stock entry for color/size, compared trimmed and case-insensitively."""
    for index, entry in enumerate(stock or []):
        if normalize(entry.get("color_name")) == normalize(color) and normalize(entry.get("size")) == normalize(size):
            return index
    return None


def generate_order_id(clock: Callable = now_utc) -> str:
    return f"ORD-{int(clock().timestamp() * 1000)}-{secrets.randbelow(1_000_000):06d}"


def step(status: OrderStatus, description: str, processed_by: str, when=None) -> dict:
    return OrderStep(status=status, date=when or now_utc(), description=description,
                     processed_by=processed_by).model_dump()


class OrderService:
    """Order placement, customer and staff transitions, and the advancement job."""

    def __init__(self, store: DocumentStore, outbox: Outbox, advance_delay_ms: int = 5000,
                 staff_roles=STAFF_ROLES, clock: Callable = now_utc):
        self.store = store
        self.outbox = outbox
        self.advance_delay_ms = advance_delay_ms
        self.staff_roles = list(staff_roles)
        self.clock = clock

    # ---------------------
    # Placement
    # ---------------------

    def place_order(self, user_id: str, request: PlaceOrderRequest) -> dict:
        order = self.store.transaction(lambda session: self._place(session, user_id, request))
        logger.info("Order %s placed by %s for %.2f", order["order_id"], user_id, order["total_amount"])
        self.outbox.flush_quietly()
        return order

    def _place(self, session, user_id: str, request: PlaceOrderRequest) -> dict:
        user = self.store.find_one("user", {"_id": user_id}, session=session)
        if not user:
            raise InvalidInput("User not found")

        address = next((a for a in user.get("addresses") or [] if str(a.get("_id")) == request.address_id), None)
        if address is None:
            raise InvalidInput("Invalid address ID selected")

        phone = request.phone or user.get("phone") or user.get("mobile")
        if not phone:
            raise InvalidInput("Phone number is required to place an order.")
        if not user.get("phone") and not user.get("mobile"):
            self.store.update_one("user", {"_id": user_id}, {"$set": {"phone": phone}}, session=session)

        items = [self._reserve(session, line) for line in request.items]

        now = self.clock()
        customer_name = user.get("fullname") or user.get("username") or ""
        order = Order(
            order_id=generate_order_id(self.clock),
            user=user_id,
            items=items,
            shipping_address=ShippingAddress(
                name=customer_name,
                door=address.get("door"),
                street=address.get("street"),
                city=address.get("city"),
                state=address.get("state"),
                zip=address.get("zip"),
                country=address.get("country"),
                phone=phone,
            ),
            total_amount=request.total_amount,
            payment_method=request.payment_method,
            payment_status=PaymentStatus.PENDING if request.payment_method == MANUAL_SETTLEMENT else PaymentStatus.PAID,
            status=OrderStatus.PENDING,
            steps=[OrderStep(status=OrderStatus.PENDING, date=now,
                             description="Order placed successfully.", processed_by="Customer")],
        )
        doc = order.model_dump()
        create_document(self.store, ORDERS, doc, session=session)
        doc = self.store.find_one(ORDERS, {"order_id": order.order_id}, session=session)
        self.store.delete_one("cart", {"user": user_id}, session=session)

        queue_notification(self.outbox, session, role_notification(
            self.staff_roles, "New Order Received",
            f"Order #{order.order_id} placed by {customer_name} for ${request.total_amount}.",
            url=f"/admin/orders/{doc['_id']}",
        ))
        queue_notification(self.outbox, session, user_notification(
            user_id, "Order Placed", f"We received your order #{order.order_id}.",
        ))
        self.outbox.add(session, ORDER_QUEUE, ADVANCE_JOB,
                        AdvanceJob(order_id=order.order_id, user_id=user_id).to_payload(),
                        delay_ms=self.advance_delay_ms, now=now)
        return doc

    def _reserve(self, session, line) -> OrderItem:
        product = self.store.find_one("product", {"_id": line.product}, session=session)
        if not product:
            raise NotFound(f"Product ID {line.product} not found")

        index = find_variant(product.get("stock"), line.color, line.size)
        if index is None:
            raise VariantUnavailable(f"Variant {line.color}/{line.size} unavailable for {product['title']}")
        if product["stock"][index].get("quantity", 0) < line.quantity:
            raise InsufficientStock(f"Insufficient stock for {product['title']}")

        quantity_path = f"stock.{index}.quantity"
        matched = self.store.update_one(
            "product",
            {"_id": product["_id"], quantity_path: {"$gte": line.quantity}},
            {"$inc": {quantity_path: -line.quantity}},
            session=session,
        )
        if not matched:
            raise InsufficientStock(f"Insufficient stock for {product['title']}")

        visuals = product.get("visuals") or []
        first_image = visuals[0]["images"][0] if visuals and visuals[0].get("images") else None
        return OrderItem(
            product=product["_id"],
            title=product["title"],
            price=product.get("discount_price") or product["price"],
            quantity=line.quantity,
            color=line.color,
            size=line.size,
            image=line.image or first_image,
        )

    # ---------------------
    # Advancement (delayed job)
    # ---------------------

    def advance(self, payload: dict) -> bool:
        """Promote a still-Pending order to Processing; a no-op on redelivery."""
        job = AdvanceJob.model_validate(payload)

        def txn(session) -> bool:
            order = self.store.find_one_and_update(
                ORDERS,
                {"order_id": job.order_id, "status": OrderStatus.PENDING.value},
                {
                    "$set": {"status": OrderStatus.PROCESSING.value, "processed_by_worker": True,
                             "updated_at": self.clock()},
                    "$push": {"steps": step(OrderStatus.PROCESSING, "Order picked up by warehouse.",
                                            "System Worker", self.clock())},
                },
                session=session,
            )
            if order is None:
                return False
            queue_notification(self.outbox, session, user_notification(
                job.user_id, "Order Processing", f"Your order #{job.order_id} is being packed.",
            ))
            return True

        advanced = self.store.transaction(txn)
        if advanced:
            logger.info("Order %s moved to Processing", job.order_id)
            self.outbox.flush_quietly()
        else:
            logger.info("Order %s skipped (not Pending)", job.order_id)
        return advanced

    # ---------------------
    # Customer cancellation
    # ---------------------

    def cancel_order(self, order_ref: str, actor: Actor, reason: Optional[str] = None) -> dict:
        order = self._load(order_ref)
        if order["user"] != actor.id:
            raise NotAuthorized("Not authorized")
        current = OrderStatus(order["status"])
        if current in (OrderStatus.SHIPPED, OrderStatus.DELIVERED):
            raise InvalidTransition("Cannot cancel shipped order.")

        now = self.clock()
        if current is OrderStatus.PENDING:
            changes = {
                "status": OrderStatus.CANCELLED.value,
                "cancelled_at": now,
                "cancellation_reason": reason or "User cancelled",
            }
            entry = step(OrderStatus.CANCELLED, "Order cancelled by user.", "Customer", now)
            notification = None
        elif current is OrderStatus.PROCESSING:
            changes = {"status": OrderStatus.CANCELLATION_REQUESTED.value, "cancellation_reason": reason}
            entry = step(OrderStatus.CANCELLATION_REQUESTED,
                         f"User requested cancellation. Reason: {reason}", "Customer", now)
            notification = role_notification(
                self.staff_roles, "Cancellation Request",
                f"User requested cancellation for Order #{order['order_id']}",
                url=f"/admin/orders/{order['_id']}",
            )
        else:
            raise InvalidTransition(f"Order is already {current.value}.")

        updated = self._transition(order, current, changes, entry, notification)
        logger.info("Order %s: %s -> %s by customer", order["order_id"], current.value, updated["status"])
        return updated

    # ---------------------
    # Staff
    # ---------------------

    def admin_update_status(self, order_ref: str, actor: Actor, update: StatusUpdateRequest) -> dict:
        if not actor.is_staff:
            raise NotAuthorized("Not authorized")
        order = self._load(order_ref)
        current = OrderStatus(order["status"])
        target = update.status
        now = self.clock()

        changes: dict = {}
        entry = None
        notification = None
        order_no = order["order_id"]

        if target is not None and current is OrderStatus.CANCELLATION_REQUESTED:
            if target is OrderStatus.CANCELLED:
                changes.update(status=target.value, cancelled_at=now)
                entry = step(target, "Cancellation Request Approved.", actor.label, now)
                notification = user_notification(
                    order["user"], "Order Cancelled",
                    f"Your cancellation request for #{order_no} was approved.",
                )
            elif target is OrderStatus.PROCESSING:
                changes.update(status=target.value)
                entry = step(target, "Cancellation Rejected. Order processing continues.", actor.label, now)
                notification = user_notification(
                    order["user"], "Cancellation Rejected",
                    f"Your request for #{order_no} was rejected. Processing continues.",
                )
            else:
                raise InvalidTransition(
                    f"A cancellation request must be approved (Cancelled) or rejected (Processing), not {target.value}."
                )
        elif target is not None:
            if target not in STAFF_TRANSITIONS.get(current, frozenset()):
                raise InvalidTransition(f"Cannot move order from {current.value} to {target.value}.")
            changes["status"] = target.value
            if target is OrderStatus.CANCELLED:
                changes["cancelled_at"] = now
            if update.description:
                description = update.description
            elif target is OrderStatus.SHIPPED and update.tracking_number:
                description = f"Shipped with tracking: {update.tracking_number}"
            else:
                description = f"Order status updated to {target.value}"
            entry = step(target, description, actor.label, now)
            notification = user_notification(order["user"], *_status_copy(target, order_no))

        if update.tracking_number:
            changes["tracking_number"] = update.tracking_number
        if update.payment_status is not None:
            changes["payment_status"] = update.payment_status.value

        if not changes:
            raise InvalidInput("Nothing to update")

        updated = self._transition(order, current, changes, entry, notification)
        logger.info("Order %s updated by %s: %s", order_no, actor.label, changes)
        return updated

    # ---------------------
    # Reads
    # ---------------------

    def get_order_for(self, order_ref: str, actor: Actor) -> dict:
        order = self._load(order_ref)
        if order["user"] != actor.id and not actor.is_staff:
            raise NotAuthorized("Not authorized")
        return order

    def list_orders_for_user(self, user_id: str) -> List[dict]:
        orders = self.store.find(ORDERS, {"user": user_id}, sort=[("created_at", -1)])
        for order in orders:
            for entry in order.get("steps", []):
                entry.pop("processed_by", None)
        return orders

    def list_all_orders(self) -> List[dict]:
        return self.store.find(ORDERS, {}, sort=[("created_at", -1)])

    # ---------------------
    # Helpers
    # ---------------------

    def _load(self, order_ref: str) -> dict:
        order = self.store.find_one(ORDERS, {"$or": [{"_id": order_ref}, {"order_id": order_ref}]})
        if order is None:
            raise NotFound("Order not found")
        return order

    def _transition(self, order: dict, expected: OrderStatus, changes: dict, entry: Optional[dict],
                    notification) -> dict:
        update: dict = {"$set": dict(changes, updated_at=self.clock())}
        if entry is not None:
            update["$push"] = {"steps": entry}

        def txn(session) -> Optional[dict]:
            updated = self.store.find_one_and_update(
                ORDERS, {"_id": order["_id"], "status": expected.value}, update, session=session,
            )
            if updated is not None and notification is not None:
                queue_notification(self.outbox, session, notification)
            return updated

        updated = self.store.transaction(txn)
        if updated is None:
            raise Conflict(f"Order {order['order_id']} changed concurrently, reload and retry")
        if notification is not None:
            self.outbox.flush_quietly()
        return updated


def _status_copy(status: OrderStatus, order_no: str):
    if status is OrderStatus.SHIPPED:
        return "Order Shipped", f"Your order #{order_no} is on its way!"
    if status is OrderStatus.DELIVERED:
        return "Order Delivered", f"Order #{order_no} has been delivered. Enjoy!"
    return "Order Status Update", f"Your order #{order_no} is now {status.value}."
