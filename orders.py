"""
Order aggregate: creation from catalog snapshots, the status and payment state
machines, and the scoped views customers, merchants and admins get.

Every mutation is a compare-and-swap on the order's ``version`` field, so two
writers racing on the same order cannot silently overwrite each other; the
loser gets Conflict and may retry.
"""
import logging
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, List, Optional

from pymongo import ReturnDocument
from pymongo.database import Database

from catalog import require_owned_restaurant
from errors import Conflict, FailedPrecondition, Forbidden, InvalidArgument, NotFound
from notifications import ORDER_CREATED, ORDER_UPDATED, OrderEventBus
from schemas import CurrentUser, LineItem, Order, OrderCreate, OrderOut, Payment
from security import to_object_id

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")

ORDER_STATUSES = ("pending", "preparing", "on_the_way", "delivered", "cancelled")
# merchant dashboards say "accepted"; only the canonical value is stored
STATUS_SYNONYMS = {"accepted": "preparing"}
ORDER_TRANSITIONS = {
    "pending": {"preparing", "cancelled"},
    "preparing": {"on_the_way", "delivered", "cancelled"},
    "on_the_way": {"delivered", "cancelled"},
    "delivered": set(),
    "cancelled": set(),
}
PAYMENT_TRANSITIONS = {
    "pending": {"paid", "failed", "cancelled"},
    "failed": {"paid", "cancelled"},
    "paid": {"refunded"},
    "refunded": set(),
    # a capture that lands after cancellation is still recorded so it can be refunded
    "cancelled": {"paid"},
}


def to_money(value: Any) -> Decimal:
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)


def to_minor_units(amount: Any) -> int:
    return int((Decimal(str(amount)) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def serialize_order(doc: Dict[str, Any]) -> Dict[str, Any]:
    """Order document -> camelCase JSON-ready dict, the shape clients and streams see."""
    doc = dict(doc)
    doc["id"] = str(doc.pop("_id"))
    return OrderOut.model_validate(doc).model_dump(mode="json", by_alias=True)


def normalize_status(raw: str) -> str:
    status = STATUS_SYNONYMS.get(raw, raw)
    if status not in ORDER_STATUSES:
        allowed = ", ".join(ORDER_STATUSES + tuple(STATUS_SYNONYMS))
        raise InvalidArgument(f"status must be one of: {allowed}")
    return status


def check_payment_transition(current: str, target: str) -> None:
    if target not in PAYMENT_TRANSITIONS.get(current, set()):
        raise FailedPrecondition(f"Payment cannot move from {current} to {target}")


# ---------------------- Persistence ----------------------
def load_order(database: Database, order_id: str) -> Dict[str, Any]:
    doc = database["order"].find_one({"_id": to_object_id(order_id)})
    if not doc:
        raise NotFound("Order not found")
    return doc


def save_order(database: Database, doc: Dict[str, Any], changes: Dict[str, Any]) -> Dict[str, Any]:
    """Apply ``changes`` only if nobody else wrote the order since ``doc`` was read."""
    changes = dict(changes)
    changes["updated_at"] = datetime.now(timezone.utc)
    updated = database["order"].find_one_and_update(
        {"_id": doc["_id"], "version": doc.get("version", 0)},
        {"$set": changes, "$inc": {"version": 1}},
        return_document=ReturnDocument.AFTER,
    )
    if updated is None:
        raise Conflict("Order was modified concurrently, reload and retry")
    return updated


def _publish(bus: Optional[OrderEventBus], event_name: str, doc: Dict[str, Any]) -> Dict[str, Any]:
    data = serialize_order(doc)
    if bus is not None:
        bus.publish(event_name, data)
    return data


# ---------------------- Visibility ----------------------
def is_owner(doc: Dict[str, Any], user: CurrentUser) -> bool:
    return doc.get("customer_id") == user.id


def restaurant_ids(doc: Dict[str, Any]) -> set:
    return {item.get("restaurant_id") for item in doc.get("items", [])}


def load_visible_order(database: Database, user: CurrentUser, order_id: str) -> Dict[str, Any]:
    """Owner or admin only; anyone else is told the order does not exist."""
    doc = load_order(database, order_id)
    if not (user.is_admin or is_owner(doc, user)):
        raise NotFound("Order not found")
    return doc


def load_merchant_order(database: Database, user: CurrentUser, order_id: str) -> Dict[str, Any]:
    rest = require_owned_restaurant(database, user)
    doc = database["order"].find_one({"_id": to_object_id(order_id), "items.restaurant_id": str(rest["_id"])})
    if not doc:
        raise NotFound("Order not found")
    if restaurant_ids(doc) != {str(rest["_id"])}:
        # orders spanning other restaurants are advanced by an admin
        raise Forbidden("Order contains items from other restaurants")
    return doc


# ---------------------- Create / read ----------------------
def create_order(database: Database, bus: Optional[OrderEventBus], user: CurrentUser, body: OrderCreate) -> Dict[str, Any]:
    if user.role not in ("customer", "admin"):
        raise Forbidden("Only customers can create orders")
    if not body.items:
        raise InvalidArgument("items is required (non-empty array)")

    # duplicate product ids are merged, keeping first-seen order
    quantities: Dict[str, int] = {}
    for item in body.items:
        if item.qty < 1:
            raise InvalidArgument("qty must be >= 1")
        to_object_id(item.product_id, "productId")
        quantities[item.product_id] = quantities.get(item.product_id, 0) + item.qty

    ids = [to_object_id(pid) for pid in quantities]
    products = {str(p["_id"]): p for p in database["product"].find({"_id": {"$in": ids}, "is_available": True})}

    line_items: List[LineItem] = []
    total = Decimal("0")
    for product_id, qty in quantities.items():
        product = products.get(product_id)
        if product is None:
            raise InvalidArgument(f"Product not found or unavailable: {product_id}")
        unit_price = to_money(product["price"])
        line_items.append(LineItem(
            product_id=product_id,
            restaurant_id=product["restaurant_id"],
            name=product["name"],
            unit_price=float(unit_price),
            quantity=qty,
        ))
        total += unit_price * qty

    order = Order(
        customer_id=user.id,
        items=line_items,
        total_amount=float(to_money(total)),
        payment=Payment(provider="stripe", status="pending"),
        shipping_address=body.shipping_address,
    )
    now = datetime.now(timezone.utc)
    doc = order.model_dump()
    doc.update({"created_at": now, "updated_at": now})
    # a single insert: the order exists with all its snapshots or not at all
    result = database["order"].insert_one(doc)
    doc["_id"] = result.inserted_id
    logger.info("Order %s created by %s: %d items, total %s", result.inserted_id, user.id, len(line_items), order.total_amount)
    return _publish(bus, ORDER_CREATED, doc)


def list_orders(database: Database, user: CurrentUser, status: Optional[str] = None) -> List[Dict[str, Any]]:
    query: Dict[str, Any] = {}
    if not user.is_admin:
        query["customer_id"] = user.id
    if status:
        query["status"] = normalize_status(status)
    cursor = database["order"].find(query).sort([("created_at", -1), ("_id", -1)])
    return [serialize_order(o) for o in cursor]


def list_merchant_orders(database: Database, user: CurrentUser, status: Optional[str] = None) -> List[Dict[str, Any]]:
    rest = require_owned_restaurant(database, user)
    query: Dict[str, Any] = {"items.restaurant_id": str(rest["_id"])}
    if status:
        query["status"] = normalize_status(status)
    cursor = database["order"].find(query).sort([("created_at", -1), ("_id", -1)])
    return [serialize_order(o) for o in cursor]


def get_order(database: Database, user: CurrentUser, order_id: str) -> Dict[str, Any]:
    return serialize_order(load_visible_order(database, user, order_id))


# ---------------------- Cancellation ----------------------
def _cancel(database: Database, bus: Optional[OrderEventBus], gateway, doc: Dict[str, Any]) -> Dict[str, Any]:
    payment = dict(doc.get("payment") or {})
    # a cancelled order is only touched again to refund a late capture
    if doc["status"] == "cancelled" and payment.get("status") != "paid":
        raise FailedPrecondition("Already cancelled")
    if doc["status"] == "delivered":
        raise FailedPrecondition("Cannot cancel delivered order")

    if payment.get("status") == "paid":
        check_payment_transition("paid", "refunded")
        if gateway is None:
            raise FailedPrecondition("Payment processor not configured, cannot refund")
        transaction_id = payment.get("transaction_id")
        if not transaction_id:
            raise FailedPrecondition("Missing payment intent id")
        # refund first: a failed refund leaves the order untouched
        gateway.refund(transaction_id)
        logger.info("Refunded %s for order %s", transaction_id, doc["_id"])
        payment["status"] = "refunded"
    else:
        check_payment_transition(payment.get("status", "pending"), "cancelled")
        payment["status"] = "cancelled"

    updated = save_order(database, doc, {
        "status": "cancelled",
        "payment": payment,
        "cancelled_at": datetime.now(timezone.utc),
    })
    logger.info("Order %s cancelled (payment %s)", doc["_id"], payment["status"])
    return _publish(bus, ORDER_UPDATED, updated)


def cancel_order(database: Database, bus: Optional[OrderEventBus], gateway, user: CurrentUser, order_id: str) -> Dict[str, Any]:
    doc = load_visible_order(database, user, order_id)
    return _cancel(database, bus, gateway, doc)


# ---------------------- Status transitions ----------------------
def _transition(database: Database, bus: Optional[OrderEventBus], gateway, doc: Dict[str, Any], raw_status: str) -> Dict[str, Any]:
    target = normalize_status(raw_status)
    if target == "cancelled":
        return _cancel(database, bus, gateway, doc)
    current = doc["status"]
    if target not in ORDER_TRANSITIONS[current]:
        raise FailedPrecondition(f"Cannot move order from {current} to {target}")
    updated = save_order(database, doc, {"status": target})
    logger.info("Order %s moved %s -> %s", doc["_id"], current, target)
    return _publish(bus, ORDER_UPDATED, updated)


def update_status(database: Database, bus: Optional[OrderEventBus], gateway, user: CurrentUser,
                  order_id: str, raw_status: str) -> Dict[str, Any]:
    """Admin or merchant status change through PATCH /orders/{id}/status."""
    normalize_status(raw_status)
    if user.is_admin:
        doc = load_order(database, order_id)
    elif user.role == "merchant":
        doc = load_merchant_order(database, user, order_id)
    else:
        raise Forbidden("Forbidden")
    return _transition(database, bus, gateway, doc, raw_status)


def merchant_update_status(database: Database, bus: Optional[OrderEventBus], gateway, user: CurrentUser,
                           order_id: str, raw_status: str) -> Dict[str, Any]:
    normalize_status(raw_status)
    doc = load_merchant_order(database, user, order_id)
    return _transition(database, bus, gateway, doc, raw_status)


# ---------------------- Payment reconciliation ----------------------
def confirm_payment(database: Database, bus: Optional[OrderEventBus], doc: Dict[str, Any], transaction_id: str) -> Dict[str, Any]:
    """Record a captured payment and let the order leave ``pending``.

    Replays for the same transaction are no-ops and publish nothing.
    """
    payment = dict(doc.get("payment") or {})
    if payment.get("status") == "paid" and payment.get("transaction_id") == transaction_id:
        return serialize_order(doc)
    check_payment_transition(payment.get("status", "pending"), "paid")

    payment.update({"status": "paid", "transaction_id": transaction_id})
    changes: Dict[str, Any] = {"payment": payment}
    if doc["status"] == "pending":
        changes["status"] = "preparing"
    elif doc["status"] == "cancelled":
        logger.warning("Payment %s captured for cancelled order %s", transaction_id, doc["_id"])

    updated = save_order(database, doc, changes)
    logger.info("Order %s paid with %s", doc["_id"], transaction_id)
    return _publish(bus, ORDER_UPDATED, updated)


def record_payment_failure(database: Database, bus: Optional[OrderEventBus], doc: Dict[str, Any]) -> Dict[str, Any]:
    payment = dict(doc.get("payment") or {})
    if payment.get("status") != "pending":
        return serialize_order(doc)
    payment["status"] = "failed"
    updated = save_order(database, doc, {"payment": payment})
    logger.info("Payment failed for order %s", doc["_id"])
    return _publish(bus, ORDER_UPDATED, updated)


def mark_paid(database: Database, bus: Optional[OrderEventBus], settings, user: CurrentUser,
              order_id: str, transaction_id: Optional[str] = None) -> Dict[str, Any]:
    """Fallback confirmation with a client-supplied transaction id (test/dev only)."""
    if not settings.manual_payment_allowed:
        raise FailedPrecondition("Manual payment confirmation is disabled")
    doc = load_visible_order(database, user, order_id)
    if (doc.get("payment") or {}).get("status") == "paid":
        raise FailedPrecondition("Order already paid")
    if doc["status"] == "cancelled":
        raise FailedPrecondition("Order is cancelled")
    transaction_id = transaction_id or f"SIM-{int(datetime.now(timezone.utc).timestamp() * 1000)}"
    return confirm_payment(database, bus, doc, transaction_id)


def apply_with_retry(fn, attempts: int = 3):
    """Re-run a read-modify-write that lost a version race."""
    for attempt in range(1, attempts + 1):
        try:
            return fn()
        except Conflict:
            if attempt == attempts:
                raise
            logger.info("Version conflict, retrying (%d/%d)", attempt, attempts)

