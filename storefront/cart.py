from typing import Any, Dict, Iterable, List, Optional

import structlog
from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ReturnDocument

from storefront.database import now
from storefront.events import EventHub, cart_topic

logger = structlog.get_logger(__name__)

NOT_LOGGED_IN = "You need to be logged in to add items to your cart."


class CartError(Exception):
    def __init__(self, message: str, status_code: int = 400):
        self.status_code = status_code
        super().__init__(message)


def line_id(user_id: str, product_id: str) -> str:
    return f"{user_id}:{product_id}"


def _item(doc: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": doc["product_id"],
        "name": doc["name"],
        "price": doc["price"],
        "image": doc["image"],
        "quantity": doc["quantity"],
    }


def summarize(items: List[Dict[str, Any]], shipping_cost: float) -> Dict[str, Any]:
    """Derived cart values: count, subtotal, shipping and total."""
    count = sum(it["quantity"] for it in items)
    subtotal = sum(it["price"] * it["quantity"] for it in items)
    shipping = shipping_cost if count > 0 else 0
    return {
        "items": items,
        "cart_count": count,
        "cart_subtotal": subtotal,
        "shipping_cost": shipping,
        "cart_total": subtotal + shipping,
    }


async def get_items(db: AsyncIOMotorDatabase, user_id: str) -> List[Dict[str, Any]]:
    items = []
    async for doc in db["cart"].find({"user_id": user_id}).sort("added_at", 1):
        items.append(_item(doc))
    return items


async def get_cart(db: AsyncIOMotorDatabase, user_id: str, shipping_cost: float) -> Dict[str, Any]:
    return summarize(await get_items(db, user_id), shipping_cost)


async def _publish(db: AsyncIOMotorDatabase, hub: Optional[EventHub], user_id: str, shipping_cost: float) -> None:
    if hub is None or not hub.subscriber_count(cart_topic(user_id)):
        return
    hub.publish(cart_topic(user_id), await get_cart(db, user_id, shipping_cost))


async def add_to_cart(
    db: AsyncIOMotorDatabase,
    user: Optional[Dict[str, Any]],
    product_id: str,
    shipping_cost: float = 0,
    hub: Optional[EventHub] = None,
) -> Dict[str, Any]:
    if user is None:
        logger.warning("add_to_cart_rejected", product_id=product_id, reason="not_logged_in")
        raise CartError(NOT_LOGGED_IN, status_code=401)
    product = await db["products"].find_one({"_id": product_id})
    if not product:
        raise CartError("Product not found", status_code=404)

    # one document per line; $inc keeps concurrent adds commutative
    doc = await db["cart"].find_one_and_update(
        {"_id": line_id(user["id"], product_id)},
        {
            "$set": {
                "user_id": user["id"],
                "product_id": product_id,
                "name": product["name"],
                "price": product["price"],
                "image": product["image"],
            },
            "$setOnInsert": {"added_at": now()},
            "$inc": {"quantity": 1},
        },
        upsert=True,
        return_document=ReturnDocument.AFTER,
    )
    logger.info("cart_item_added", user_id=user["id"], product_id=product_id, quantity=doc["quantity"])
    await _publish(db, hub, user["id"], shipping_cost)
    return {
        "item": _item(doc),
        "message": f"{product['name']} has been added to your cart.",
    }


async def decrement_item(
    db: AsyncIOMotorDatabase,
    user_id: str,
    product_id: str,
    shipping_cost: float = 0,
    hub: Optional[EventHub] = None,
) -> Optional[Dict[str, Any]]:
    """Take one unit off a line, removing the line at quantity one. Absent lines are left alone."""
    key = line_id(user_id, product_id)
    doc = await db["cart"].find_one_and_update(
        {"_id": key, "quantity": {"$gt": 1}},
        {"$inc": {"quantity": -1}},
        return_document=ReturnDocument.AFTER,
    )
    if doc is None:
        res = await db["cart"].delete_one({"_id": key, "quantity": {"$lte": 1}})
        if res.deleted_count:
            logger.info("cart_item_removed", user_id=user_id, product_id=product_id)
            await _publish(db, hub, user_id, shipping_cost)
        return None
    logger.info("cart_item_decremented", user_id=user_id, product_id=product_id, quantity=doc["quantity"])
    await _publish(db, hub, user_id, shipping_cost)
    return _item(doc)


async def remove_from_cart(
    db: AsyncIOMotorDatabase,
    user_id: str,
    product_id: str,
    shipping_cost: float = 0,
    hub: Optional[EventHub] = None,
) -> bool:
    res = await db["cart"].delete_one({"_id": line_id(user_id, product_id)})
    logger.info("cart_item_removed", user_id=user_id, product_id=product_id, existed=bool(res.deleted_count))
    await _publish(db, hub, user_id, shipping_cost)
    return bool(res.deleted_count)


async def clear_cart(
    db: AsyncIOMotorDatabase,
    user_id: str,
    product_ids: Optional[Iterable[str]] = None,
    shipping_cost: float = 0,
    hub: Optional[EventHub] = None,
) -> int:
    filter_dict: Dict[str, Any] = {"user_id": user_id}
    if product_ids is not None:
        filter_dict["product_id"] = {"$in": list(product_ids)}
    res = await db["cart"].delete_many(filter_dict)
    logger.info("cart_cleared", user_id=user_id, lines=res.deleted_count)
    await _publish(db, hub, user_id, shipping_cost)
    return res.deleted_count
