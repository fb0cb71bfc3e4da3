"""
Order placement, the order status lifecycle, and order lookups.

Placing an order resolves every catalog line against the live product,
snapshots what was bought, reserves stock, and only then inserts the order.
If the insert fails the reservations are released again.
"""
import logging
import re
import secrets
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Union

from bson import ObjectId
from pymongo import ReturnDocument
from pymongo.errors import ConnectionFailure, DuplicateKeyError

import config
import inventory
from auth import is_admin
from database import is_object_id, paginate, parse_object_id, serialize_doc, utcnow
from errors import (
    AdHocItemRejectedError,
    CannotCancelOrderError,
    InsufficientStockError,
    InvalidProductError,
    InvalidStatusTransitionError,
    MinimumOrderNotMetError,
    OrderNotFoundError,
    PermissionDeniedError,
    ProductUnavailableError,
    ServiceUnavailableError,
)
from schemas import (
    ItemKind,
    Order,
    OrderCreateRequest,
    OrderItem,
    OrderItemIn,
    OrderStatus,
    PaymentInfo,
    Settings,
    ShippingInfo,
)
from settings_store import get_settings, shipping_cost_for

logger = logging.getLogger(__name__)

PAYMENT_METHOD_ALIASES = {
    "cod": "cash_on_delivery",
    "card": "stripe",
}

CANCELLABLE_STATUSES = (OrderStatus.PENDING.value, OrderStatus.CONFIRMED.value)

FULFILLMENT_CHAIN = [
    OrderStatus.PENDING.value,
    OrderStatus.CONFIRMED.value,
    OrderStatus.PROCESSING.value,
    OrderStatus.SHIPPED.value,
    OrderStatus.DELIVERED.value,
]

TERMINAL_STATUSES = {OrderStatus.CANCELLED.value, OrderStatus.RETURNED.value}

ORDER_NUMBER_ATTEMPTS = 5


# Line item references

@dataclass(frozen=True)
class CatalogLineItem:
    product_id: ObjectId
    quantity: int


@dataclass(frozen=True)
class AdHocLineItem:
    ref: Optional[str]
    name: Optional[str]
    price: Optional[float]
    quantity: int
    currency: Optional[str] = None
    image: Optional[str] = None
    sku: Optional[str] = None
    specifications: Optional[Dict[str, Any]] = field(default=None, compare=False)


LineItemRequest = Union[CatalogLineItem, AdHocLineItem]


def classify_item(item: OrderItemIn) -> LineItemRequest:
    """Turn a requested line into a catalog reference or an ad-hoc item.

    An explicit ``kind`` wins. Without one, a reference that is a valid
    ObjectId is taken as a catalog id and anything else as ad-hoc.
    """
    ref = item.reference
    kind = item.kind
    if kind is None:
        kind = ItemKind.CATALOG.value if ref and is_object_id(ref) else ItemKind.ADHOC.value

    if kind == ItemKind.CATALOG.value:
        if not ref or not is_object_id(ref):
            raise InvalidProductError(ref)
        return CatalogLineItem(product_id=ObjectId(ref), quantity=item.quantity)

    return AdHocLineItem(
        ref=ref,
        name=item.name,
        price=item.price,
        quantity=item.quantity,
        currency=item.currency,
        image=item.image,
        sku=item.sku,
        specifications=item.specifications,
    )


def normalize_payment_method(method: str) -> str:
    return PAYMENT_METHOD_ALIASES.get(method, method)


def generate_order_number(now: Optional[datetime] = None, prefix: Optional[str] = None) -> str:
    """<prefix><YY><MM><DD><4 random digits>, e.g. VF2510180427."""
    now = now or utcnow()
    prefix = config.ORDER_NUMBER_PREFIX if prefix is None else prefix
    return f"{prefix}{now:%y%m%d}{secrets.randbelow(10000):04d}"


def _product_image(product: dict) -> Optional[str]:
    images = product.get("images") or {}
    gallery = images.get("gallery") or []
    return images.get("main") or (gallery[0] if gallery else None) or product.get("imageUrl")


def _snapshot_catalog_item(db, line: CatalogLineItem) -> OrderItem:
    product = db["product"].find_one({"_id": line.product_id})
    if not product:
        raise InvalidProductError(str(line.product_id))
    name = product.get("name", str(line.product_id))
    if product.get("status") != "active":
        raise ProductUnavailableError(name)
    stock = product.get("stock", 0)
    if stock < line.quantity:
        raise InsufficientStockError(name, stock)
    min_order = product.get("minOrder") or 1
    if line.quantity < min_order:
        raise MinimumOrderNotMetError(name, min_order)

    return OrderItem(
        product_id=product["_id"],
        kind=ItemKind.CATALOG,
        name=name,
        price=float(product.get("price", 0)),
        currency=product.get("currency") or config.STORE_CURRENCY,
        quantity=line.quantity,
        image=_product_image(product),
        sku=product.get("sku"),
        specifications=product.get("specifications"),
    )


def _snapshot_adhoc_item(line: AdHocLineItem) -> OrderItem:
    # Client-described goods are taken at face value
    return OrderItem(
        product_id=line.ref or f"adhoc_{secrets.token_hex(8)}",
        kind=ItemKind.ADHOC,
        name=line.name or "Unknown Product",
        price=float(line.price or 0),
        currency=line.currency or config.STORE_CURRENCY,
        quantity=line.quantity,
        image=line.image,
        sku=line.sku,
        specifications=line.specifications,
    )


def snapshot_items(db, items: List[OrderItemIn], strict: Optional[bool] = None) -> List[OrderItem]:
    """Validate every requested line and snapshot it. Nothing is written."""
    strict = config.STRICT_CATALOG_ITEMS if strict is None else strict
    snapshots = []
    for item in items:
        line = classify_item(item)
        if isinstance(line, CatalogLineItem):
            snapshots.append(_snapshot_catalog_item(db, line))
        elif strict:
            raise AdHocItemRejectedError(line.ref or line.name)
        else:
            snapshots.append(_snapshot_adhoc_item(line))
    return snapshots


def compute_subtotal(items: List[OrderItem]) -> float:
    return round(sum(it.price * it.quantity for it in items), 2)


def build_order(customer_id, request: OrderCreateRequest, items: List[OrderItem],
                shipping_cost: float, now: Optional[datetime] = None) -> Order:
    now = now or utcnow()
    subtotal = compute_subtotal(items)
    tax = 0.0
    total = round(subtotal + tax + shipping_cost, 2)
    return Order(
        order_number=generate_order_number(now),
        customer_id=customer_id,
        customer_info=request.customer_info,
        items=items,
        subtotal=subtotal,
        tax=tax,
        shipping=ShippingInfo(method=request.shipping.method, cost=shipping_cost),
        payment=PaymentInfo(
            method=normalize_payment_method(request.payment.method),
            status=request.payment.status,
            amount=total,
            currency=config.STORE_CURRENCY,
            transaction_id=request.payment.transaction_id,
        ),
        total_amount=total,
        currency=config.STORE_CURRENCY,
        notes=request.notes,
        priority=request.priority,
        estimated_delivery=now + timedelta(days=config.ESTIMATED_DELIVERY_DAYS),
    )


def _insert_order(db, order: Order, now: datetime) -> dict:
    doc = order.model_dump(by_alias=True, exclude_none=True)
    doc["createdAt"] = now
    doc["updatedAt"] = now
    attempts = 0
    while True:
        try:
            db["order"].insert_one(doc)
            return doc
        except DuplicateKeyError:
            attempts += 1
            if attempts >= ORDER_NUMBER_ATTEMPTS:
                raise
            # insert_one stamped an _id on the failed attempt
            doc.pop("_id", None)
            doc["orderNumber"] = generate_order_number(now)
            logger.info("Order number collision, retrying with %s", doc["orderNumber"])


def place_order(db, customer: dict, request: OrderCreateRequest) -> dict:
    """Validate, price, reserve stock for, and persist a new order."""
    items = snapshot_items(db, request.items)
    subtotal = compute_subtotal(items)

    shipping_cost = request.shipping.cost
    if shipping_cost is None:
        shipping_cost = shipping_cost_for(get_settings(db), subtotal, request.shipping.method)

    now = utcnow()
    order = build_order(customer["_id"], request, items, float(shipping_cost), now)

    item_docs = [it.model_dump(by_alias=True) for it in items]
    reserved = inventory.reserve_items(db, item_docs)
    try:
        doc = _insert_order(db, order, now)
    except Exception:
        try:
            inventory.release_items(db, reserved)
        except Exception:
            logger.exception("Could not release stock after failed insert of %s", order.order_number)
        raise

    logger.info("Order %s placed by %s: %d items, total %.2f %s", doc["orderNumber"], customer["_id"],
                len(items), doc["totalAmount"], doc["currency"])
    return doc


def build_mock_order(customer: dict, request: OrderCreateRequest) -> dict:
    """Locally computed order returned when the datastore is unreachable. Not persisted."""
    now = utcnow()
    items = []
    for item in request.items:
        items.append(OrderItem(
            product_id=item.reference or f"adhoc_{secrets.token_hex(8)}",
            kind=item.kind or (ItemKind.CATALOG if item.reference and is_object_id(item.reference)
                               else ItemKind.ADHOC),
            name=item.name or "Unknown Product",
            price=float(item.price or 0),
            currency=item.currency or config.STORE_CURRENCY,
            quantity=item.quantity,
            image=item.image,
        ))
    shipping_cost = request.shipping.cost
    if shipping_cost is None:
        # Stored settings are out of reach, so the defaults apply
        shipping_cost = shipping_cost_for(Settings().model_dump(by_alias=True), compute_subtotal(items),
                                          request.shipping.method)
    order = build_order(customer["_id"], request, items, float(shipping_cost), now)
    doc = order.model_dump(by_alias=True, exclude_none=True)
    doc["_id"] = f"mock-{int(now.timestamp() * 1000)}"
    doc["createdAt"] = now
    doc["updatedAt"] = now
    doc["mock"] = True
    return doc


def create_order(db, customer: dict, request: OrderCreateRequest) -> tuple[dict, bool]:
    """Place an order, falling back to a mock order in degraded mode.

    Returns (order document, mocked).
    """
    try:
        if db is None:
            raise ServiceUnavailableError()
        return place_order(db, customer, request), False
    except (ServiceUnavailableError, ConnectionFailure) as e:
        if not config.DEGRADED_MODE:
            if isinstance(e, ServiceUnavailableError):
                raise
            raise ServiceUnavailableError() from e
        logger.warning("Datastore unreachable, returning a mock order (%s)", e)
        return build_mock_order(customer, request), True


# Status lifecycle

def allowed_transitions(current: str) -> set:
    if current in TERMINAL_STATUSES:
        return set()
    if current == OrderStatus.DELIVERED.value:
        return {OrderStatus.RETURNED.value}
    if current not in FULFILLMENT_CHAIN:
        return set()
    allowed = set(FULFILLMENT_CHAIN[FULFILLMENT_CHAIN.index(current) + 1:])
    allowed.add(OrderStatus.RETURNED.value)
    if current in CANCELLABLE_STATUSES:
        allowed.add(OrderStatus.CANCELLED.value)
    return allowed


def can_transition(current: str, new: str) -> bool:
    return new in allowed_transitions(current)


def _load_order(db, order_id) -> dict:
    oid = parse_object_id(order_id, "Order ID")
    order = db["order"].find_one({"_id": oid})
    if not order:
        raise OrderNotFoundError(order_id)
    return order


def update_order_status(db, order_id, new_status: str, admin_id, note: Optional[str] = None) -> dict:
    order = _load_order(db, order_id)
    current = order["orderStatus"]
    if not can_transition(current, new_status):
        raise InvalidStatusTransitionError(current, new_status)

    now = utcnow()
    changes: Dict[str, Any] = {"orderStatus": new_status, "updatedAt": now}
    if new_status == OrderStatus.SHIPPED.value:
        changes["shipping.status"] = "shipped"
    elif new_status == OrderStatus.DELIVERED.value:
        changes["shipping.status"] = "delivered"
        changes["actualDelivery"] = now
    elif new_status == OrderStatus.RETURNED.value:
        changes["shipping.status"] = "returned"
        if note:
            changes["returnReason"] = note
    elif new_status == OrderStatus.CANCELLED.value and note:
        changes["cancellationReason"] = note

    update: Dict[str, Any] = {"$set": changes}
    if note:
        update["$push"] = {"adminNotes": {
            "note": f"Status changed from {current} to {new_status}: {note}",
            "adminId": admin_id,
            "timestamp": now,
        }}

    updated = db["order"].find_one_and_update(
        {"_id": order["_id"], "orderStatus": current},
        update,
        return_document=ReturnDocument.AFTER,
    )
    if updated is None:
        latest = _load_order(db, order["_id"])
        raise InvalidStatusTransitionError(latest["orderStatus"], new_status)

    if new_status == OrderStatus.CANCELLED.value:
        inventory.release_items(db, updated["items"])

    logger.info("Order %s status %s -> %s by %s", updated["orderNumber"], current, new_status, admin_id)
    return updated


def cancel_order(db, order_id, user: dict, reason: Optional[str] = None) -> dict:
    """Customer self-service cancellation; only pending or confirmed orders qualify."""
    order = _load_order(db, order_id)
    if str(order["customerId"]) != str(user["_id"]):
        raise PermissionDeniedError("You can only cancel your own orders")
    if order["orderStatus"] not in CANCELLABLE_STATUSES:
        raise CannotCancelOrderError(order["orderStatus"])

    changes: Dict[str, Any] = {"orderStatus": OrderStatus.CANCELLED.value, "updatedAt": utcnow()}
    if reason:
        changes["cancellationReason"] = reason
    updated = db["order"].find_one_and_update(
        {"_id": order["_id"], "orderStatus": {"$in": list(CANCELLABLE_STATUSES)}},
        {"$set": changes},
        return_document=ReturnDocument.AFTER,
    )
    if updated is None:
        # Lost a race with another cancel or an admin status change
        latest = _load_order(db, order["_id"])
        raise CannotCancelOrderError(latest["orderStatus"])

    inventory.release_items(db, updated["items"])
    logger.info("Order %s cancelled by customer %s", updated["orderNumber"], user["_id"])
    return updated


def update_payment_status(db, order_id, payment_status: str, admin_id, note: Optional[str] = None) -> dict:
    order = _load_order(db, order_id)
    now = utcnow()
    update: Dict[str, Any] = {"$set": {
        "paymentStatus": payment_status,
        "payment.status": payment_status,
        "updatedAt": now,
    }}
    if note:
        update["$push"] = {"adminNotes": {"note": note, "adminId": admin_id, "timestamp": now}}
    updated = db["order"].find_one_and_update(
        {"_id": order["_id"]}, update, return_document=ReturnDocument.AFTER
    )
    logger.info("Order %s payment status %s -> %s by %s", order["orderNumber"], order.get("paymentStatus"),
                payment_status, admin_id)
    return updated


def order_summary(order: dict, *fields: str) -> dict:
    """Small projection returned by the mutation endpoints."""
    out = {"id": str(order["_id"]), "orderNumber": order["orderNumber"]}
    for name in fields:
        out[name] = order.get(name)
    out["updatedAt"] = order.get("updatedAt")
    return out


# Lookups

def _check_access(order: dict, user: dict) -> None:
    if str(order["customerId"]) != str(user["_id"]) and not is_admin(user):
        raise PermissionDeniedError("You can only view your own orders")


def get_order(db, order_id, user: dict) -> dict:
    order = _load_order(db, order_id)
    _check_access(order, user)
    return order


def get_order_by_number(db, order_number: str, user: dict) -> dict:
    order = db["order"].find_one({"orderNumber": order_number})
    if not order:
        raise OrderNotFoundError(order_number)
    _check_access(order, user)
    return order


def _status_condition(value: Optional[str]):
    if not value or value == "all":
        return None
    values = [v.strip() for v in value.split(",") if v.strip()]
    if len(values) == 1:
        return values[0]
    return {"$in": values}


def build_order_filter(customer_id=None, status: Optional[str] = None, payment_status: Optional[str] = None,
                       search: Optional[str] = None) -> Dict[str, Any]:
    filt: Dict[str, Any] = {}
    if customer_id is not None:
        filt["customerId"] = customer_id
    cond = _status_condition(status)
    if cond is not None:
        filt["orderStatus"] = cond
    cond = _status_condition(payment_status)
    if cond is not None:
        filt["paymentStatus"] = cond
    if search:
        pattern = {"$regex": re.escape(search), "$options": "i"}
        filt["$or"] = [
            {"orderNumber": pattern},
            {"customerInfo.firstName": pattern},
            {"customerInfo.lastName": pattern},
            {"customerInfo.email": pattern},
            {"customerInfo.phone": pattern},
        ]
    return filt


def list_orders(db, filt: Dict[str, Any], page: int, limit: int) -> tuple[list, dict]:
    orders, pagination = paginate(db["order"], filt, page, limit, [("createdAt", -1)])
    return [serialize_doc(o) for o in orders], pagination
