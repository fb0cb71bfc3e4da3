"""
Stock ledger: per-product available quantity.

Every mutation is a single atomic update on the product document. Decrements
carry the availability check in the update filter (``stock >= quantity``), so
two concurrent orders can never drive stock below zero.
"""
import logging
from typing import Iterable, List, Optional

from bson import ObjectId
from pymongo import ReturnDocument

from database import parse_object_id, utcnow
from errors import InsufficientStockError, ProductNotFoundError, ValidationFailed
from schemas import ProductStatus, StockOperation

logger = logging.getLogger(__name__)


def status_for_stock(stock: int, current_status: Optional[str]) -> str:
    """Status a product should carry after its stock became ``stock``.

    Zero stock always means out_of_stock, whatever the previous status was.
    Only out_of_stock is lifted back to active; inactive and discontinued are
    left to administrators.
    """
    if stock == 0:
        return ProductStatus.OUT_OF_STOCK.value
    if current_status == ProductStatus.OUT_OF_STOCK.value:
        return ProductStatus.ACTIVE.value
    return current_status or ProductStatus.ACTIVE.value


def _sync_status(products, oid: ObjectId) -> Optional[dict]:
    # Conditional on the stock value, so a racing adjustment re-syncs on its own
    products.update_one(
        {"_id": oid, "stock": 0, "status": {"$ne": ProductStatus.OUT_OF_STOCK.value}},
        {"$set": {"status": ProductStatus.OUT_OF_STOCK.value, "updatedAt": utcnow()}},
    )
    products.update_one(
        {"_id": oid, "stock": {"$gt": 0}, "status": ProductStatus.OUT_OF_STOCK.value},
        {"$set": {"status": ProductStatus.ACTIVE.value, "updatedAt": utcnow()}},
    )
    return products.find_one({"_id": oid})


def _decrement(products, oid: ObjectId, quantity: int, count_order: bool = False) -> Optional[dict]:
    inc = {"stock": -quantity}
    if count_order:
        inc["analytics.orders"] = 1
    return products.find_one_and_update(
        {"_id": oid, "stock": {"$gte": quantity}},
        {"$inc": inc, "$set": {"updatedAt": utcnow()}},
        return_document=ReturnDocument.AFTER,
    )


def _increment(products, oid: ObjectId, quantity: int, uncount_order: bool = False) -> Optional[dict]:
    inc = {"stock": quantity}
    if uncount_order:
        inc["analytics.orders"] = -1
    return products.find_one_and_update(
        {"_id": oid},
        {"$inc": inc, "$set": {"updatedAt": utcnow()}},
        return_document=ReturnDocument.AFTER,
    )


def adjust_stock(db, product_id, quantity: int, operation) -> dict:
    """Increase or decrease a product's stock and re-derive its status.

    Raises ProductNotFoundError for an unknown product and
    InsufficientStockError when a decrease would go below zero; in both
    cases nothing is written.
    """
    if quantity < 1:
        raise ValidationFailed([{"field": "quantity", "message": "Quantity must be a positive integer"}])
    operation = StockOperation(operation)
    oid = parse_object_id(product_id, "Product ID")
    products = db["product"]

    if operation == StockOperation.DECREASE:
        updated = _decrement(products, oid, quantity)
        if updated is None:
            current = products.find_one({"_id": oid}, {"name": 1, "stock": 1})
            if current is None:
                raise ProductNotFoundError(str(oid))
            raise InsufficientStockError(current.get("name", str(oid)), current.get("stock", 0))
    else:
        updated = _increment(products, oid, quantity)
        if updated is None:
            raise ProductNotFoundError(str(oid))

    product = _sync_status(products, oid)
    logger.info("Stock %s by %d for product %s -> %d (%s)", operation.value, quantity, oid,
                product["stock"], product["status"])
    return product


def reserve_items(db, items: Iterable[dict]) -> List[dict]:
    """Take stock for every catalog line of a new order.

    ``items`` are order item snapshots. Either every catalog line is
    reserved, or none is: any failure, a stock shortage or a datastore
    error, releases the lines already taken and re-raises.
    """
    products = db["product"]
    taken = []
    try:
        for item in items:
            if item.get("kind") != "catalog":
                continue
            oid = item["productId"]
            if _decrement(products, oid, item["quantity"], count_order=True) is None:
                current = products.find_one({"_id": oid}, {"stock": 1})
                available = current.get("stock", 0) if current else 0
                raise InsufficientStockError(item["name"], available)
            taken.append(item)
            _sync_status(products, oid)
    except Exception:
        try:
            release_items(db, taken)
        except Exception:
            logger.exception("Could not release %d reserved lines", len(taken))
        raise
    return taken


def release_items(db, items: Iterable[dict]) -> None:
    """Give back stock for catalog lines; products deleted since are skipped."""
    products = db["product"]
    for item in items:
        if item.get("kind") != "catalog":
            continue
        oid = item["productId"]
        if _increment(products, oid, item["quantity"], uncount_order=True) is None:
            logger.warning("Cannot restore %d units of %s: product no longer exists",
                           item["quantity"], oid)
            continue
        _sync_status(products, oid)
