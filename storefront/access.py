from typing import Any, Dict, Optional

from motor.motor_asyncio import AsyncIOMotorDatabase


class AccessDenied(Exception):
    status_code = 403


async def has_verified_purchase(db: AsyncIOMotorDatabase, user: Optional[Dict[str, Any]]) -> bool:
    """
    Purchase gate for tutorials and reviews.

    Administrators always pass. Anyone else needs at least one order of their
    own in status ``paid``. Evaluated on every call, never cached.
    """
    if user is None:
        return False
    if user.get("is_admin"):
        return True
    order = await db["orders"].find_one({"user_id": user["id"], "status": "paid"}, {"_id": 1})
    return order is not None
