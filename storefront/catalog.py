from typing import Any, Dict, List, Optional

import structlog
from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo.errors import DuplicateKeyError

from storefront.access import AccessDenied, has_verified_purchase
from storefront.database import create_document, get_documents, new_id, now, serialize

logger = structlog.get_logger(__name__)


class CatalogError(Exception):
    def __init__(self, message: str, status_code: int = 400):
        self.status_code = status_code
        super().__init__(message)


# ---------- Products ----------

async def list_products(db: AsyncIOMotorDatabase) -> List[Dict[str, Any]]:
    return await get_documents(db, "products", sort=[("name", 1)])


async def get_product(db: AsyncIOMotorDatabase, product_id: str) -> Optional[Dict[str, Any]]:
    return serialize(await db["products"].find_one({"_id": product_id}))


async def create_product(db: AsyncIOMotorDatabase, data: Dict[str, Any]) -> Dict[str, Any]:
    if await db["products"].find_one({"_id": data["id"]}, {"_id": 1}):
        raise CatalogError("Product id already exists", status_code=409)
    try:
        product = await create_document(db, "products", data)
    except DuplicateKeyError:
        raise CatalogError("Product id already exists", status_code=409)
    logger.info("product_created", product_id=product["id"])
    return product


async def update_product(db: AsyncIOMotorDatabase, product_id: str, changes: Dict[str, Any]) -> Dict[str, Any]:
    res = await db["products"].update_one({"_id": product_id}, {"$set": {**changes, "updated_at": now()}})
    if not res.matched_count:
        raise CatalogError("Product not found", status_code=404)
    logger.info("product_updated", product_id=product_id, fields=sorted(changes))
    return await get_product(db, product_id)


async def delete_product(db: AsyncIOMotorDatabase, product_id: str) -> None:
    res = await db["products"].delete_one({"_id": product_id})
    if not res.deleted_count:
        raise CatalogError("Product not found", status_code=404)
    logger.info("product_deleted", product_id=product_id)


# ---------- Reviews ----------

async def list_reviews(db: AsyncIOMotorDatabase, product_id: str) -> List[Dict[str, Any]]:
    return await get_documents(db, "reviews", {"product_id": product_id}, sort=[("created_at", -1)])


async def add_review(db: AsyncIOMotorDatabase, user: Dict[str, Any], product_id: str,
                     rating: int, comment: str) -> Dict[str, Any]:
    if not await db["products"].find_one({"_id": product_id}, {"_id": 1}):
        raise CatalogError("Product not found", status_code=404)
    if not await has_verified_purchase(db, user):
        raise AccessDenied("Only customers with a paid order can review products.")
    if await db["reviews"].find_one({"product_id": product_id, "user_id": user["id"]}, {"_id": 1}):
        raise CatalogError("You have already reviewed this product.", status_code=409)
    review = {
        "_id": new_id(),
        "product_id": product_id,
        "user_id": user["id"],
        "user_name": user.get("display_name"),
        "user_photo_url": user.get("photo_url", ""),
        "rating": rating,
        "comment": comment,
        "created_at": now(),
    }
    await db["reviews"].insert_one(review)
    logger.info("review_added", product_id=product_id, user_id=user["id"], rating=rating)
    return serialize(review)


# ---------- Contact messages ----------

async def add_message(db: AsyncIOMotorDatabase, data: Dict[str, Any]) -> Dict[str, Any]:
    return await create_document(db, "contact_messages", {**data, "read": False})


async def list_messages(db: AsyncIOMotorDatabase) -> List[Dict[str, Any]]:
    return await get_documents(db, "contact_messages", sort=[("created_at", -1)])


async def toggle_message_read(db: AsyncIOMotorDatabase, message_id: str) -> Dict[str, Any]:
    message = await db["contact_messages"].find_one({"_id": message_id})
    if not message:
        raise CatalogError("Message not found", status_code=404)
    await db["contact_messages"].update_one({"_id": message_id}, {"$set": {"read": not message.get("read", False)}})
    return serialize(await db["contact_messages"].find_one({"_id": message_id}))


async def delete_message(db: AsyncIOMotorDatabase, message_id: str) -> None:
    res = await db["contact_messages"].delete_one({"_id": message_id})
    if not res.deleted_count:
        raise CatalogError("Message not found", status_code=404)
