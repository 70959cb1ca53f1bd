from typing import Any, Dict, List, Optional

from motor.motor_asyncio import AsyncIOMotorDatabase

from storefront.database import create_document, get_documents, now, serialize

SNAPSHOT_FIELDS = (
    "name", "phone", "address_line1", "address_line2",
    "city", "state", "postal_code", "country",
)


def snapshot(address: Dict[str, Any]) -> Dict[str, Any]:
    """Copy of the shipping fields; later edits to the address never reach it."""
    out = {f: address.get(f) for f in SNAPSHOT_FIELDS}
    out["address_line2"] = out["address_line2"] or ""
    return out


async def list_addresses(db: AsyncIOMotorDatabase, user_id: str) -> List[Dict[str, Any]]:
    return await get_documents(db, "addresses", {"user_id": user_id}, sort=[("created_at", 1)])


async def get_address(db: AsyncIOMotorDatabase, user_id: str, address_id: str) -> Optional[Dict[str, Any]]:
    return serialize(await db["addresses"].find_one({"_id": address_id, "user_id": user_id}))


async def create_address(db: AsyncIOMotorDatabase, user_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
    return await create_document(db, "addresses", {**data, "user_id": user_id})


async def update_address(db: AsyncIOMotorDatabase, user_id: str, address_id: str,
                         data: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    res = await db["addresses"].update_one(
        {"_id": address_id, "user_id": user_id},
        {"$set": {**data, "updated_at": now()}},
    )
    if not res.matched_count:
        return None
    return await get_address(db, user_id, address_id)


async def delete_address(db: AsyncIOMotorDatabase, user_id: str, address_id: str) -> bool:
    res = await db["addresses"].delete_one({"_id": address_id, "user_id": user_id})
    return bool(res.deleted_count)
